"""
Typed generation requests and task handles.

Each request declares the operation it is billed as, the plan feature it
needs, and the restricted parameters the entitlement guard must check.
"""
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator

from soundstage.models.credits import Account, OperationKind
from soundstage.models.plan import Dimension, Feature, ImageEngine, MusicModel, VideoResolution, VocalGender


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETE, TaskStatus.FAILED)


class GenerationRequest(BaseModel):
    """Base for paid requests; subclasses set the billing metadata."""
    model_config = ConfigDict(frozen=True)

    operation_kind: ClassVar[OperationKind]
    required_feature: ClassVar[Feature]

    def entitlement_checks(self) -> List[Tuple[Dimension, Enum]]:
        return []

    def with_account_defaults(self, account: Account) -> "GenerationRequest":
        """Fill fields the caller left unset from the account's saved preferences."""
        return self

    def gateway_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class MusicGenerationRequest(GenerationRequest):
    operation_kind: ClassVar[OperationKind] = OperationKind.MUSIC_GENERATION
    required_feature: ClassVar[Feature] = Feature.MUSIC_GENERATION

    prompt: str = Field(min_length=1, max_length=3000)
    model: MusicModel = MusicModel.V4
    instrumental: bool = False
    vocal_gender: Optional[VocalGender] = None  # None: use the account preference
    custom_mode: bool = False
    title: Optional[str] = Field(default=None, max_length=200)
    style: Optional[str] = Field(default=None, max_length=500)

    @field_validator("prompt")
    @classmethod
    def _strip_prompt(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("prompt must not be blank")
        return value

    def entitlement_checks(self) -> List[Tuple[Dimension, Enum]]:
        return [(Dimension.MUSIC_MODEL, self.model)]

    def with_account_defaults(self, account: Account) -> "MusicGenerationRequest":
        if self.vocal_gender is not None:
            return self
        return self.model_copy(update={"vocal_gender": account.vocal_gender_preference})

    def gateway_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model.value,
            "instrumental": self.instrumental,
            "gender": (self.vocal_gender or VocalGender.MALE).value,
            "custom_mode": self.custom_mode,
            "prompt": self.prompt,
        }
        if self.custom_mode:
            payload["title"] = self.title
            payload["tags"] = self.style
        return payload


class WavConversionRequest(GenerationRequest):
    operation_kind: ClassVar[OperationKind] = OperationKind.WAV_CONVERSION
    required_feature: ClassVar[Feature] = Feature.WAV_CONVERSION

    task_id: str = Field(min_length=1)
    audio_id: str = Field(min_length=1)


class ImageGenerationRequest(GenerationRequest):
    operation_kind: ClassVar[OperationKind] = OperationKind.IMAGE_GENERATION
    required_feature: ClassVar[Feature] = Feature.IMAGE_GENERATION

    prompt: str = Field(min_length=1, max_length=3000)
    engine: ImageEngine = ImageEngine.DALL_E_2

    def entitlement_checks(self) -> List[Tuple[Dimension, Enum]]:
        return [(Dimension.IMAGE_ENGINE, self.engine)]


class VideoGenerationRequest(GenerationRequest):
    operation_kind: ClassVar[OperationKind] = OperationKind.VIDEO_GENERATION
    required_feature: ClassVar[Feature] = Feature.VIDEO_GENERATION

    prompt: str = Field(min_length=1, max_length=3000)
    resolution: VideoResolution = VideoResolution.R720P
    duration_seconds: int = Field(default=5, ge=1, le=30)

    def entitlement_checks(self) -> List[Tuple[Dimension, Enum]]:
        return [(Dimension.VIDEO_RESOLUTION, self.resolution)]


class TaskHandle(BaseModel):
    """What the gateway hands back on submit."""
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[Dict[str, Any]] = None


class GenerationTask(BaseModel):
    task_id: str
    account_id: str
    operation_kind: OperationKind
    status: TaskStatus
    credits_charged: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DispatchResult(BaseModel):
    task_id: str
    status: TaskStatus
    operation_kind: OperationKind
    credits_charged: int
    balance: int
    was_unlimited: bool
