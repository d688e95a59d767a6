"""
Plan tiers and capability definitions.

Plans gate which generation parameters an account may request and whether
its balance is topped up daily. Every restricted dimension is a closed enum so
the entitlement guard never compares raw strings.
"""

from enum import Enum
from typing import FrozenSet, Literal, Union
from pydantic import BaseModel, ConfigDict, Field


class PlanTier(str, Enum):
    FREE = "free"
    STUDIO = "studio"
    CREATOR = "creator"
    ALL_ACCESS = "all_access"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


_TIER_ORDER = [PlanTier.FREE, PlanTier.STUDIO, PlanTier.CREATOR, PlanTier.ALL_ACCESS]


def tiers_in_order() -> list[PlanTier]:
    return list(_TIER_ORDER)


class MusicModel(str, Enum):
    V3_5 = "V3_5"
    V4 = "V4"
    V4_5 = "V4_5"
    V4_5PLUS = "V4_5PLUS"
    V5 = "V5"


class VideoResolution(str, Enum):
    R720P = "720p"
    R1080P = "1080p"
    R4K = "4k"


class ImageEngine(str, Enum):
    DALL_E_2 = "dall-e-2"
    DALL_E_3 = "dall-e-3"
    FLUX = "flux"
    MIDJOURNEY = "midjourney"
    STABLE_DIFFUSION = "stable-diffusion"


class VocalGender(str, Enum):
    """Vocal preference for music generation; not plan-restricted."""
    MALE = "m"
    FEMALE = "f"


class Dimension(str, Enum):
    """Restricted request parameters, each backed by its own enum."""
    MUSIC_MODEL = "music_model"
    VIDEO_RESOLUTION = "video_resolution"
    IMAGE_ENGINE = "image_engine"

    @property
    def value_type(self) -> type:
        return _DIMENSION_TYPES[self]


_DIMENSION_TYPES = {
    Dimension.MUSIC_MODEL: MusicModel,
    Dimension.VIDEO_RESOLUTION: VideoResolution,
    Dimension.IMAGE_ENGINE: ImageEngine,
}


class Feature(str, Enum):
    MUSIC_GENERATION = "music_generation"
    VIDEO_GENERATION = "video_generation"
    IMAGE_GENERATION = "image_generation"
    WAV_CONVERSION = "wav_conversion"
    COMMERCIAL_LICENSE = "commercial_license"
    API_ACCESS = "api_access"


class Metered(BaseModel):
    """Balance is topped back up to `credits` once per reset window."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["metered"] = "metered"
    credits: int = Field(ge=0)


class Unlimited(BaseModel):
    """No daily top-up; metering exemptions come from the cost table."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["unlimited"] = "unlimited"


DailyAllowance = Union[Metered, Unlimited]


class PlanDefinition(BaseModel):
    """Immutable capability set for one plan tier."""
    model_config = ConfigDict(frozen=True)

    tier: PlanTier
    features: FrozenSet[Feature]
    allowed_music_models: FrozenSet[MusicModel]
    allowed_video_resolutions: FrozenSet[VideoResolution]
    allowed_image_engines: FrozenSet[ImageEngine]
    daily_allowance: DailyAllowance = Field(discriminator="kind")

    def allowed_for(self, dimension: Dimension) -> FrozenSet:
        if dimension is Dimension.MUSIC_MODEL:
            return self.allowed_music_models
        if dimension is Dimension.VIDEO_RESOLUTION:
            return self.allowed_video_resolutions
        if dimension is Dimension.IMAGE_ENGINE:
            return self.allowed_image_engines
        raise ValueError(f"Unknown dimension: {dimension}")

    def has_feature(self, feature: Feature) -> bool:
        return feature in self.features


class PlanSummary(BaseModel):
    """Client-facing capability listing (sorted lists instead of sets)."""
    tier: PlanTier
    name: str
    features: dict[str, bool]
    allowed_music_models: list[MusicModel]
    allowed_video_resolutions: list[VideoResolution]
    allowed_image_engines: list[ImageEngine]
    daily_credits: int | None  # None means unlimited
