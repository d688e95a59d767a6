from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, Field

from soundstage.models.plan import PlanTier, VocalGender


class OperationKind(str, Enum):
    """Paid actions with a fixed credit cost."""
    MUSIC_GENERATION = "music_generation"
    WAV_CONVERSION = "wav_conversion"
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"


class ServiceCost(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation_kind: OperationKind
    credits: int = Field(gt=0)
    unlimited_tiers: FrozenSet[PlanTier] = frozenset()


class CreditBundle(BaseModel):
    """Purchasable fixed quantity of credits."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    credits: int = Field(gt=0)
    bonus: int = Field(default=0, ge=0)
    price_cents: int = Field(gt=0)
    popular: bool = False

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus

    @property
    def price_usd(self) -> float:
        return self.price_cents / 100


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    plan_tier: PlanTier
    credit_balance: int
    last_reset_at: datetime
    payment_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    vocal_gender_preference: VocalGender = VocalGender.MALE


class CheckReason(str, Enum):
    UNLIMITED = "unlimited"
    SUCCESS = "success"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class CreditCheckResult(BaseModel):
    """Advisory pre-flight answer; not a reservation."""
    allowed: bool
    reason: CheckReason
    current_balance: int
    required_credits: int
    plan_tier: PlanTier


class DeductionResult(BaseModel):
    success: bool
    new_balance: int
    amount_deducted: int
    was_unlimited: bool
    operation_kind: OperationKind
    error_code: Optional[str] = None
    error: Optional[str] = None


class ResetResult(BaseModel):
    balance: int
    reset_occurred: bool
    hours_until_reset: Optional[float] = None  # None for unlimited tiers


class EntryType(str, Enum):
    DEDUCT = "deduct"
    CREDIT = "credit"
    REFUND = "refund"
    RESET = "reset"
    PAYMENT = "payment"


class LedgerEntry(BaseModel):
    account_id: str
    entry_type: EntryType
    amount: int
    balance_after: int
    operation_kind: Optional[OperationKind] = None
    reference: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
