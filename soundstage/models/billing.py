"""
Billing value objects shared by the payment provider and reconciliation.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from soundstage.models.plan import PlanTier


class PaymentSource(str, Enum):
    WEBHOOK = "webhook"
    CLIENT_CONFIRM = "client_confirm"


@dataclass(frozen=True)
class PaymentIntentInfo:
    """Result of starting a bundle purchase."""
    payment_id: str
    client_secret: str
    amount_cents: int
    currency: str


@dataclass(frozen=True)
class PaymentConfirmation:
    """One confirmed payment, normalized from the processor."""
    payment_id: str  # idempotency key, shared by webhook and client confirm
    status: str  # processor status, "succeeded" when paid
    amount_received_cents: int
    account_id: Optional[str]
    bundle_id: Optional[str]
    provider_event_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class SubscriptionChange:
    subscription_id: str
    status: str  # active, trialing, canceled, past_due, unpaid, ...
    account_id: Optional[str]
    plan_tier: Optional[PlanTier]
    customer_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ("active", "trialing")


@dataclass
class PaymentWebhookResult:
    """Result of verifying and parsing a payment webhook."""
    event_id: str
    event_type: str
    payment: Optional[PaymentConfirmation] = None
    subscription: Optional[SubscriptionChange] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconciliationResult:
    payment_id: str
    account_id: str
    credits_added: int
    new_balance: int
    already_processed: bool
