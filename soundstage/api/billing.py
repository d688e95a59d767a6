"""
Billing API routes.

Minimal surface:
- POST /api/create-payment-intent: Start a credit bundle purchase
- POST /api/confirm-payment: Client-side confirmation fallback
- POST /api/billing/webhook: Handle Stripe webhooks

Webhook and client confirmation both reconcile through the same idempotent
path keyed by the payment intent id.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from soundstage.api.deps import get_current_account
from soundstage.features.billing import reconciliation
from soundstage.features.credits.bundles import get_bundle
from soundstage.features.credits.ledger import CreditLedger, get_ledger
from soundstage.models.credits import Account

router = APIRouter(prefix="/api", tags=["billing"])


class PaymentIntentRequest(BaseModel):
    bundle_id: str = Field(min_length=1)


class PaymentIntentResponse(BaseModel):
    payment_id: str
    client_secret: str
    amount_cents: int
    currency: str
    bundle_id: str
    credits: int


class ConfirmPaymentRequest(BaseModel):
    payment_id: str = Field(min_length=1)


class ConfirmPaymentResponse(BaseModel):
    success: bool
    payment_id: str
    credits_added: int
    new_balance: int
    already_processed: bool


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    body: PaymentIntentRequest,
    account: Account = Depends(get_current_account),
    ledger: CreditLedger = Depends(get_ledger),
):
    """
    Create a Stripe payment intent for a credit bundle.

    Errors:
        400: Unknown bundle
        503: Billing disabled (STRIPE_SECRET_KEY not set)
    """
    bundle = get_bundle(body.bundle_id)
    intent = reconciliation.create_payment_intent(account.account_id, bundle.id, ledger=ledger)
    return PaymentIntentResponse(
        payment_id=intent.payment_id,
        client_secret=intent.client_secret,
        amount_cents=intent.amount_cents,
        currency=intent.currency,
        bundle_id=bundle.id,
        credits=bundle.total_credits,
    )


@router.post("/confirm-payment", response_model=ConfirmPaymentResponse)
def confirm_payment(
    body: ConfirmPaymentRequest,
    account: Account = Depends(get_current_account),
    ledger: CreditLedger = Depends(get_ledger),
):
    """
    Confirm a payment from the client after Stripe.js reports success.

    The payment is re-fetched from Stripe; the client only supplies its id.
    A payment the webhook already credited returns already_processed=true.
    """
    result = reconciliation.confirm_client_payment(account.account_id, body.payment_id, ledger=ledger)
    return ConfirmPaymentResponse(
        success=True,
        payment_id=result.payment_id,
        credits_added=result.credits_added,
        new_balance=result.new_balance,
        already_processed=result.already_processed,
    )


@router.post("/billing/webhook")
async def handle_webhook(request: Request, ledger: CreditLedger = Depends(get_ledger)) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Signature verification uses STRIPE_WEBHOOK_SECRET. Redelivered events
    are acknowledged without crediting again.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)
    return reconciliation.handle_webhook(headers, body, ledger=ledger)
