"""
Payment reconciliation.

Both ways a bundle purchase can reach us (the signed Stripe webhook and the
client-confirm fallback) end in reconcile_payment(), which records the
payment id and credits the account in one transaction. The payment intent id
is the idempotency key, so a webhook redelivery or a webhook racing a client
confirmation credits the account exactly once.
"""
from typing import Any, Dict, Optional

from soundstage.core.config import settings
from soundstage.core.errors import (
    BillingDisabledError,
    ForbiddenError,
    PaymentMismatchError,
    PaymentVerificationError,
)
from soundstage.core.logging import log_event
from soundstage.features.billing.provider import PaymentProvider, PaymentProviderError, PaymentWebhookError
from soundstage.features.billing.stripe_provider import StripeProvider
from soundstage.features.credits.bundles import find_bundle, get_bundle
from soundstage.features.credits.ledger import CreditLedger, get_ledger
from soundstage.models.billing import (
    PaymentConfirmation,
    PaymentIntentInfo,
    PaymentSource,
    ReconciliationResult,
    SubscriptionChange,
)
from soundstage.models.credits import Account
from soundstage.models.plan import PlanTier


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[PaymentProvider]:
    """Get payment provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except PaymentProviderError as e:
        log_event("error", "billing.provider_unavailable", error_code="billing_disabled",
                  extra={"error_message": str(e)})
        return None


def _require_provider(provider: Optional[PaymentProvider]) -> PaymentProvider:
    provider = provider or get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured")
    return provider


def create_payment_intent(
    account_id: str,
    bundle_id: str,
    *,
    ledger: Optional[CreditLedger] = None,
    provider: Optional[PaymentProvider] = None,
) -> PaymentIntentInfo:
    """Start a bundle purchase; the bundle and account ride along in processor metadata."""
    ledger = ledger or get_ledger()
    bundle = get_bundle(bundle_id)
    ledger.get_account(account_id)
    provider = _require_provider(provider)
    try:
        intent = provider.create_payment_intent(
            amount_cents=bundle.price_cents,
            currency=settings.STRIPE_CURRENCY,
            metadata={
                "account_id": account_id,
                "bundle_id": bundle.id,
                "credits": str(bundle.total_credits),
            },
        )
    except PaymentProviderError as e:
        log_event("error", "payment.intent_failed", account_id=account_id, error_code="payment_provider_error",
                  extra={"bundle_id": bundle.id, "error_message": str(e)})
        raise PaymentVerificationError("Could not start payment", details={"bundle_id": bundle.id})
    log_event("info", "payment.intent_created", account_id=account_id, event_type="payment.intent_created",
              extra={"payment_id": intent.payment_id, "bundle_id": bundle.id})
    return intent


def reconcile_payment(
    confirmation: PaymentConfirmation,
    source: PaymentSource,
    *,
    ledger: Optional[CreditLedger] = None,
) -> ReconciliationResult:
    """
    Credit a confirmed bundle payment exactly once.

    Raises:
        PaymentVerificationError: payment not succeeded, or metadata incomplete
        PaymentMismatchError: amount received is below the bundle price
        AccountNotFoundError: the paying account does not exist
    """
    ledger = ledger or get_ledger()
    payment_id = confirmation.payment_id

    if not confirmation.succeeded:
        raise PaymentVerificationError(
            "Payment has not succeeded",
            details={"payment_id": payment_id, "status": confirmation.status},
        )
    if not confirmation.account_id:
        raise PaymentVerificationError("Payment has no account", details={"payment_id": payment_id})

    bundle = find_bundle(confirmation.bundle_id)
    if bundle is None:
        raise PaymentVerificationError(
            "Payment does not reference a known credit bundle",
            details={"payment_id": payment_id, "bundle_id": confirmation.bundle_id},
        )

    if confirmation.amount_received_cents < bundle.price_cents:
        log_event("error", "payment.mismatch", account_id=confirmation.account_id, event_type="payment.mismatch",
                  error_code="payment_mismatch",
                  extra={"payment_id": payment_id, "bundle_id": bundle.id,
                         "amount_received": confirmation.amount_received_cents, "price": bundle.price_cents})
        raise PaymentMismatchError(
            "Amount paid does not cover the bundle price",
            details={
                "payment_id": payment_id,
                "bundle_id": bundle.id,
                "amount_received_cents": confirmation.amount_received_cents,
                "price_cents": bundle.price_cents,
            },
        )

    ledger.get_account(confirmation.account_id)
    applied, balance = ledger.apply_payment(
        payment_id=payment_id,
        account_id=confirmation.account_id,
        credits=bundle.total_credits,
        bundle_id=bundle.id,
        source=PaymentSource(source).value,
        provider_event_id=confirmation.provider_event_id,
    )

    event = "payment.reconciled" if applied else "payment.duplicate"
    log_event("info", event, account_id=confirmation.account_id, event_type=event,
              extra={"payment_id": payment_id, "bundle_id": bundle.id, "source": PaymentSource(source).value,
                     "credits": bundle.total_credits if applied else 0, "balance": balance})

    return ReconciliationResult(
        payment_id=payment_id,
        account_id=confirmation.account_id,
        credits_added=bundle.total_credits if applied else 0,
        new_balance=balance,
        already_processed=not applied,
    )


def apply_subscription_change(
    change: SubscriptionChange,
    *,
    ledger: Optional[CreditLedger] = None,
) -> Optional[Account]:
    """Move the account to the subscribed tier; inactive subscriptions fall back to free."""
    ledger = ledger or get_ledger()
    if not change.account_id:
        log_event("warning", "subscription.unmatched", event_type="subscription.unmatched",
                  extra={"subscription_id": change.subscription_id, "customer_id": change.customer_id})
        return None

    if change.is_active and change.plan_tier is not None:
        tier = change.plan_tier
    elif change.is_active:
        log_event("warning", "subscription.unknown_price", account_id=change.account_id,
                  event_type="subscription.unknown_price", extra={"subscription_id": change.subscription_id})
        return None
    else:
        tier = PlanTier.FREE

    return ledger.set_plan_tier(
        change.account_id,
        tier,
        subscription_id=change.subscription_id,
        customer_id=change.customer_id,
    )


def handle_webhook(
    headers: Dict[str, str],
    body: bytes,
    *,
    ledger: Optional[CreditLedger] = None,
    provider: Optional[PaymentProvider] = None,
) -> Dict[str, Any]:
    """
    Process a payment webhook.

    1. Verify signature (provider SDK)
    2. Reconcile succeeded bundle payments
    3. Apply subscription tier changes

    Raises:
        BillingDisabledError: Stripe not configured
        PaymentVerificationError: signature invalid or payload unparsable
    """
    provider = _require_provider(provider)
    try:
        result = provider.handle_webhook(headers, body)
    except PaymentWebhookError as e:
        log_event("warning", "webhook.rejected", event_type="webhook.rejected",
                  error_code="payment_verification_failed", extra={"error_message": str(e)})
        raise PaymentVerificationError(str(e))

    outcome: Dict[str, Any] = {"received": True, "event_id": result.event_id, "event_type": result.event_type}

    payment = result.payment
    if payment is not None:
        if not payment.succeeded:
            log_event("info", "payment.not_succeeded", account_id=payment.account_id,
                      event_type="payment.not_succeeded",
                      extra={"payment_id": payment.payment_id, "status": payment.status})
        elif not payment.bundle_id:
            # Subscription invoices also raise payment_intent events; they carry no bundle
            log_event("info", "payment.ignored", account_id=payment.account_id, event_type="payment.ignored",
                      extra={"payment_id": payment.payment_id})
        else:
            reconciliation = reconcile_payment(payment, PaymentSource.WEBHOOK, ledger=ledger)
            outcome["credits_added"] = reconciliation.credits_added
            outcome["already_processed"] = reconciliation.already_processed

    if result.subscription is not None:
        account = apply_subscription_change(result.subscription, ledger=ledger)
        if account is not None:
            outcome["plan_tier"] = account.plan_tier.value

    return outcome


def confirm_client_payment(
    account_id: str,
    payment_id: str,
    *,
    ledger: Optional[CreditLedger] = None,
    provider: Optional[PaymentProvider] = None,
) -> ReconciliationResult:
    """Client-side fallback: look the payment up at the processor, then reconcile it."""
    provider = _require_provider(provider)
    try:
        confirmation = provider.retrieve_payment(payment_id)
    except PaymentProviderError as e:
        log_event("warning", "payment.lookup_failed", account_id=account_id, error_code="payment_verification_failed",
                  extra={"payment_id": payment_id, "error_message": str(e)})
        raise PaymentVerificationError("Could not verify payment", details={"payment_id": payment_id})

    if confirmation.account_id != account_id:
        log_event("warning", "payment.owner_mismatch", account_id=account_id, error_code="forbidden",
                  extra={"payment_id": payment_id})
        raise ForbiddenError("Payment belongs to a different account", details={"payment_id": payment_id})

    return reconcile_payment(confirmation, PaymentSource.CLIENT_CONFIRM, ledger=ledger)
