"""
Stripe payment provider implementation.

Implements the PaymentProvider protocol with the Stripe API: payment intents
for credit bundles, webhook signature verification, and subscription events
that move an account between plan tiers.
"""
import logging
from typing import Any, Dict, Optional

import stripe

from soundstage.core.config import settings
from soundstage.features.billing.provider import PaymentProviderError, PaymentWebhookError
from soundstage.models.billing import (
    PaymentConfirmation,
    PaymentIntentInfo,
    PaymentWebhookResult,
    SubscriptionChange,
)
from soundstage.models.plan import PlanTier

logger = logging.getLogger("soundstage")

PAYMENT_EVENTS = ("payment_intent.succeeded", "payment_intent.payment_failed")
SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


def _to_plain(obj: Any) -> Dict[str, Any]:
    """StripeObject → dict across SDK versions (older ones subclass dict)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _confirmation_from_intent(intent: Dict[str, Any], event_id: Optional[str] = None) -> PaymentConfirmation:
    metadata = _to_plain(intent.get("metadata"))
    return PaymentConfirmation(
        payment_id=intent["id"],
        status=intent.get("status") or "unknown",
        amount_received_cents=int(intent.get("amount_received") or 0),
        account_id=metadata.get("account_id"),
        bundle_id=metadata.get("bundle_id"),
        provider_event_id=event_id,
    )


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        price_map: Optional[Dict[str, PlanTier]] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            price_map: Stripe price id → plan tier (defaults to STRIPE_PRICE_* settings)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        self.price_map = price_map if price_map is not None else self._price_map_from_settings()
        stripe.api_key = self.secret_key

    @staticmethod
    def _price_map_from_settings() -> Dict[str, PlanTier]:
        configured = {
            settings.STRIPE_PRICE_STUDIO: PlanTier.STUDIO,
            settings.STRIPE_PRICE_CREATOR: PlanTier.CREATOR,
            settings.STRIPE_PRICE_ALL_ACCESS: PlanTier.ALL_ACCESS,
        }
        return {price: tier for price, tier in configured.items() if price}

    def create_payment_intent(self, amount_cents: int, currency: str, metadata: Dict[str, str]) -> PaymentIntentInfo:
        """Create Stripe payment intent."""
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe payment intent creation failed: {e}")
        return PaymentIntentInfo(
            payment_id=intent.id,
            client_secret=intent.client_secret,
            amount_cents=amount_cents,
            currency=currency,
        )

    def retrieve_payment(self, payment_id: str) -> PaymentConfirmation:
        """Fetch a payment intent by id."""
        try:
            intent = stripe.PaymentIntent.retrieve(payment_id)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe payment lookup failed: {e}", payment_id=payment_id)
        return _confirmation_from_intent(_to_plain(intent))

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise PaymentWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise PaymentWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise PaymentWebhookError(f"Invalid signature: {e}")

        return self._parse_event(_to_plain(event))

    def _parse_event(self, event: Dict[str, Any]) -> PaymentWebhookResult:
        """Parse Stripe event into normalized PaymentWebhookResult."""
        event_type = event["type"]
        event_id = event["id"]
        data = _to_plain(_to_plain(event.get("data")).get("object"))

        result = PaymentWebhookResult(
            event_id=event_id,
            event_type=event_type,
            metadata=_to_plain(data.get("metadata")),
        )

        if event_type in PAYMENT_EVENTS:
            result.payment = _confirmation_from_intent(data, event_id)
        elif event_type in SUBSCRIPTION_EVENTS:
            result.subscription = self._subscription_change(event_type, data)

        return result

    def _subscription_change(self, event_type: str, data: Dict[str, Any]) -> SubscriptionChange:
        metadata = _to_plain(data.get("metadata"))
        customer_id = data.get("customer")
        account_id = metadata.get("account_id")
        if not account_id and customer_id:
            account_id = self._account_for_customer(customer_id)

        plan_tier = None
        if metadata.get("plan_tier") in {tier.value for tier in PlanTier}:
            plan_tier = PlanTier(metadata["plan_tier"])
        else:
            items = _to_plain(data.get("items")).get("data") or []
            if items:
                price_id = _to_plain(_to_plain(items[0]).get("price")).get("id")
                plan_tier = self.price_map.get(price_id)

        status = data.get("status") or "unknown"
        if event_type == "customer.subscription.deleted":
            status = "canceled"

        return SubscriptionChange(
            subscription_id=data.get("id"),
            status=status,
            account_id=account_id,
            plan_tier=plan_tier,
            customer_id=customer_id,
        )

    def _account_for_customer(self, customer_id: str) -> Optional[str]:
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            logger.warning(
                "billing.customer_lookup_failed",
                extra={"customer_id": customer_id, "error_message": str(e)},
            )
            return None
        return _to_plain(_to_plain(customer).get("metadata")).get("account_id")
