"""
Test payment reconciliation idempotency.

Webhook redelivery and webhook + client confirmation for the same payment
intent must credit the account exactly once.
"""
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import func, select

from soundstage.core.database import get_db_session, payment_events
from soundstage.core.errors import (
    AccountNotFoundError,
    BillingDisabledError,
    ForbiddenError,
    PaymentMismatchError,
    PaymentVerificationError,
    ValidationError,
)
from soundstage.features.billing import reconciliation
from soundstage.features.billing.provider import PaymentProviderError, PaymentWebhookError
from soundstage.models.billing import (
    PaymentConfirmation,
    PaymentIntentInfo,
    PaymentSource,
    PaymentWebhookResult,
    SubscriptionChange,
)
from soundstage.models.plan import PlanTier


def _popular_payment(payment_id="pi_popular", account_id="user_alice", amount=1500, status="succeeded"):
    return PaymentConfirmation(
        payment_id=payment_id,
        status=status,
        amount_received_cents=amount,
        account_id=account_id,
        bundle_id="popular",
        provider_event_id="evt_1",
    )


@pytest.fixture
def provider():
    """Mock provider returned by reconciliation.get_provider."""
    with patch("soundstage.features.billing.reconciliation.get_provider") as mock_get:
        mock_provider = Mock()
        mock_get.return_value = mock_provider
        yield mock_provider


def _payment_rows(payment_id):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(payment_events).where(payment_events.c.payment_id == payment_id)
        ).scalar_one()


def test_reconcile_credits_bundle_total(sql_ledger):
    sql_ledger.ensure_account("user_alice")
    result = reconciliation.reconcile_payment(_popular_payment(), PaymentSource.WEBHOOK, ledger=sql_ledger)
    assert result.already_processed is False
    assert result.credits_added == 400
    assert result.new_balance == 450
    assert _payment_rows("pi_popular") == 1


def test_reconcile_same_payment_twice_credits_once(ledger):
    ledger.ensure_account("user_alice")
    first = reconciliation.reconcile_payment(_popular_payment(), PaymentSource.WEBHOOK, ledger=ledger)
    second = reconciliation.reconcile_payment(_popular_payment(), PaymentSource.WEBHOOK, ledger=ledger)
    assert first.already_processed is False
    assert second.already_processed is True
    assert second.credits_added == 0
    assert second.new_balance == 450
    assert ledger.get_account("user_alice").credit_balance == 450


def test_webhook_then_client_confirm_credits_once(sql_ledger, provider):
    sql_ledger.ensure_account("user_alice")
    provider.handle_webhook.return_value = PaymentWebhookResult(
        event_id="evt_1",
        event_type="payment_intent.succeeded",
        payment=_popular_payment(),
    )
    provider.retrieve_payment.return_value = _popular_payment()

    outcome = reconciliation.handle_webhook({"stripe-signature": "sig"}, b"{}", ledger=sql_ledger)
    assert outcome["credits_added"] == 400

    confirmed = reconciliation.confirm_client_payment("user_alice", "pi_popular", ledger=sql_ledger)
    assert confirmed.already_processed is True
    assert sql_ledger.get_account("user_alice").credit_balance == 450
    assert _payment_rows("pi_popular") == 1


def test_client_confirm_then_webhook_credits_once(sql_ledger, provider):
    sql_ledger.ensure_account("user_alice")
    provider.retrieve_payment.return_value = _popular_payment()
    provider.handle_webhook.return_value = PaymentWebhookResult(
        event_id="evt_2",
        event_type="payment_intent.succeeded",
        payment=_popular_payment(),
    )

    confirmed = reconciliation.confirm_client_payment("user_alice", "pi_popular", ledger=sql_ledger)
    assert confirmed.credits_added == 400
    outcome = reconciliation.handle_webhook({"stripe-signature": "sig"}, b"{}", ledger=sql_ledger)
    assert outcome["already_processed"] is True
    assert sql_ledger.get_account("user_alice").credit_balance == 450


def test_underpayment_is_rejected(sql_ledger):
    sql_ledger.ensure_account("user_alice")
    with pytest.raises(PaymentMismatchError):
        reconciliation.reconcile_payment(_popular_payment(amount=500), PaymentSource.WEBHOOK, ledger=sql_ledger)
    assert sql_ledger.get_account("user_alice").credit_balance == 50
    assert _payment_rows("pi_popular") == 0


def test_unsucceeded_payment_is_rejected(sql_ledger):
    sql_ledger.ensure_account("user_alice")
    with pytest.raises(PaymentVerificationError):
        reconciliation.reconcile_payment(
            _popular_payment(status="requires_payment_method"), PaymentSource.CLIENT_CONFIRM, ledger=sql_ledger
        )
    assert sql_ledger.get_account("user_alice").credit_balance == 50


def test_unknown_bundle_is_rejected(sql_ledger):
    sql_ledger.ensure_account("user_alice")
    payment = PaymentConfirmation(
        payment_id="pi_x", status="succeeded", amount_received_cents=99999, account_id="user_alice", bundle_id="mega"
    )
    with pytest.raises(PaymentVerificationError):
        reconciliation.reconcile_payment(payment, PaymentSource.WEBHOOK, ledger=sql_ledger)


def test_payment_for_missing_account_is_not_found(sql_ledger):
    with pytest.raises(AccountNotFoundError):
        reconciliation.reconcile_payment(_popular_payment(account_id="ghost"), PaymentSource.WEBHOOK, ledger=sql_ledger)
    assert _payment_rows("pi_popular") == 0


def test_client_confirm_rejects_other_accounts_payment(sql_ledger, provider):
    sql_ledger.ensure_account("user_alice")
    sql_ledger.ensure_account("user_mallory")
    provider.retrieve_payment.return_value = _popular_payment(account_id="user_alice")

    with pytest.raises(ForbiddenError):
        reconciliation.confirm_client_payment("user_mallory", "pi_popular", ledger=sql_ledger)
    assert sql_ledger.get_account("user_mallory").credit_balance == 50
    assert sql_ledger.get_account("user_alice").credit_balance == 50


def test_client_confirm_lookup_failure(sql_ledger, provider):
    sql_ledger.ensure_account("user_alice")
    provider.retrieve_payment.side_effect = PaymentProviderError("no such payment_intent")
    with pytest.raises(PaymentVerificationError):
        reconciliation.confirm_client_payment("user_alice", "pi_missing", ledger=sql_ledger)


def test_webhook_signature_failure(sql_ledger, provider):
    provider.handle_webhook.side_effect = PaymentWebhookError("Invalid signature")
    with pytest.raises(PaymentVerificationError):
        reconciliation.handle_webhook({"stripe-signature": "bad"}, b"{}", ledger=sql_ledger)


def test_webhook_ignores_payment_without_bundle(sql_ledger, provider):
    sql_ledger.ensure_account("user_alice")
    provider.handle_webhook.return_value = PaymentWebhookResult(
        event_id="evt_inv",
        event_type="payment_intent.succeeded",
        payment=PaymentConfirmation(
            payment_id="pi_invoice", status="succeeded", amount_received_cents=1999,
            account_id=None, bundle_id=None,
        ),
    )
    outcome = reconciliation.handle_webhook({"stripe-signature": "sig"}, b"{}", ledger=sql_ledger)
    assert "credits_added" not in outcome
    assert sql_ledger.get_account("user_alice").credit_balance == 50


def test_subscription_webhook_sets_plan_tier(sql_ledger, provider):
    sql_ledger.ensure_account("user_alice")
    provider.handle_webhook.return_value = PaymentWebhookResult(
        event_id="evt_sub",
        event_type="customer.subscription.updated",
        subscription=SubscriptionChange(
            subscription_id="sub_1", status="active", account_id="user_alice",
            plan_tier=PlanTier.CREATOR, customer_id="cus_1",
        ),
    )
    outcome = reconciliation.handle_webhook({"stripe-signature": "sig"}, b"{}", ledger=sql_ledger)
    assert outcome["plan_tier"] == "creator"
    account = sql_ledger.get_account("user_alice")
    assert account.plan_tier == PlanTier.CREATOR
    assert account.subscription_id == "sub_1"
    assert account.payment_customer_id == "cus_1"


def test_canceled_subscription_falls_back_to_free(sql_ledger):
    sql_ledger.ensure_account("user_alice")
    sql_ledger.set_plan_tier("user_alice", PlanTier.STUDIO)
    change = SubscriptionChange(
        subscription_id="sub_1", status="canceled", account_id="user_alice", plan_tier=PlanTier.STUDIO
    )
    account = reconciliation.apply_subscription_change(change, ledger=sql_ledger)
    assert account.plan_tier == PlanTier.FREE


def test_subscription_without_account_is_skipped(sql_ledger):
    change = SubscriptionChange(subscription_id="sub_9", status="active", account_id=None, plan_tier=PlanTier.STUDIO)
    assert reconciliation.apply_subscription_change(change, ledger=sql_ledger) is None


def test_create_payment_intent_sends_bundle_metadata(sql_ledger, provider):
    sql_ledger.ensure_account("user_alice")
    provider.create_payment_intent.return_value = PaymentIntentInfo(
        payment_id="pi_new", client_secret="pi_new_secret", amount_cents=4000, currency="usd"
    )

    intent = reconciliation.create_payment_intent("user_alice", "pro", ledger=sql_ledger)

    assert intent.payment_id == "pi_new"
    kwargs = provider.create_payment_intent.call_args.kwargs
    assert kwargs["amount_cents"] == 4000
    assert kwargs["metadata"]["account_id"] == "user_alice"
    assert kwargs["metadata"]["bundle_id"] == "pro"


def test_create_payment_intent_unknown_bundle(sql_ledger, provider):
    sql_ledger.ensure_account("user_alice")
    with pytest.raises(ValidationError):
        reconciliation.create_payment_intent("user_alice", "mega", ledger=sql_ledger)
    provider.create_payment_intent.assert_not_called()


def test_billing_disabled_without_stripe_key(sql_ledger, monkeypatch):
    from soundstage.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    assert reconciliation.billing_enabled() is False
    assert reconciliation.get_provider() is None
    with pytest.raises(BillingDisabledError):
        reconciliation.handle_webhook({}, b"{}", ledger=sql_ledger)
