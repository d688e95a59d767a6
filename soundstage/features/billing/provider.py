"""
Payment provider protocol.

Defines the interface the reconciliation service needs from a payment
processor (Stripe in production, mocks in tests), so business logic never
imports the Stripe SDK directly.
"""
from typing import Dict, Optional, Protocol

from soundstage.models.billing import PaymentConfirmation, PaymentIntentInfo, PaymentWebhookResult


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - One-off payment creation for credit bundles
    - Payment lookup for the client-confirm fallback
    - Webhook signature verification and parsing
    """

    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> PaymentIntentInfo:
        """
        Start a one-off payment.

        Args:
            amount_cents: Amount to charge in the smallest currency unit
            currency: ISO currency code
            metadata: Echoed back on the payment (account_id, bundle_id)

        Raises:
            PaymentProviderError: If the processor rejects the request
        """
        ...

    def retrieve_payment(self, payment_id: str) -> PaymentConfirmation:
        """
        Fetch the current state of a payment.

        Raises:
            PaymentProviderError: If the payment cannot be retrieved
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookResult:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            PaymentWebhookError: If signature invalid or parsing fails
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""

    def __init__(self, message: str, *, payment_id: Optional[str] = None):
        super().__init__(message)
        self.payment_id = payment_id


class PaymentWebhookError(PaymentProviderError):
    """Exception for webhook verification and parsing errors."""
    pass
