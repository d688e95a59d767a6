"""
Credit API routes.

- GET  /api/user/credits: balance, plan tier, last reset
- POST /api/user/credits/reset: apply the daily allowance if due
- GET  /api/user/credits/check: advisory pre-flight check for an operation
- GET  /api/user/credits/history: recent ledger entries
- GET  /api/user/preferences: saved vocal gender for music requests
- POST /api/user/preferences: update it
- GET  /api/service-costs: server-side cost table
- GET  /api/credit-bundles: purchasable bundles

There is deliberately no endpoint that deducts an arbitrary amount; paid
endpoints deduct the cost of their own operation.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from soundstage.api.deps import get_current_account
from soundstage.features.credits.bundles import list_bundles
from soundstage.features.credits.costs import list_costs
from soundstage.features.credits.ledger import CreditLedger, get_ledger
from soundstage.features.plans.catalog import daily_credits
from soundstage.models.credits import Account, CheckReason, OperationKind
from soundstage.models.plan import PlanTier, VocalGender

router = APIRouter(prefix="/api", tags=["credits"])


class CreditsResponse(BaseModel):
    account_id: str
    credits: int
    plan_tier: PlanTier
    last_reset_at: datetime
    daily_credits: Optional[int]  # None means unlimited


class ResetResponse(BaseModel):
    credits: int
    plan_tier: PlanTier
    reset_occurred: bool
    hours_until_reset: Optional[float]


class CheckResponse(BaseModel):
    operation: OperationKind
    allowed: bool
    reason: CheckReason
    current_balance: int
    required_credits: int
    plan_tier: PlanTier


class LedgerEntryResponse(BaseModel):
    entry_type: str
    amount: int
    balance_after: int
    operation_kind: Optional[str] = None
    reference: Optional[str] = None
    created_at: Optional[datetime] = None


class HistoryResponse(BaseModel):
    account_id: str
    entries: List[LedgerEntryResponse]


class PreferencesUpdate(BaseModel):
    vocal_gender_preference: VocalGender


class PreferencesResponse(BaseModel):
    vocal_gender_preference: VocalGender
    success: Optional[bool] = None


@router.get("/user/credits", response_model=CreditsResponse)
def get_credits(account: Account = Depends(get_current_account)):
    return CreditsResponse(
        account_id=account.account_id,
        credits=account.credit_balance,
        plan_tier=account.plan_tier,
        last_reset_at=account.last_reset_at,
        daily_credits=daily_credits(account.plan_tier),
    )


@router.post("/user/credits/reset", response_model=ResetResponse)
def reset_credits(
    account: Account = Depends(get_current_account),
    ledger: CreditLedger = Depends(get_ledger),
):
    """
    Apply the daily allowance if the reset window has elapsed.

    Returns reset_occurred=false with hours_until_reset when it has not;
    unlimited tiers never reset and report hours_until_reset=null.
    """
    result = ledger.reset_daily_allowance(account.account_id)
    return ResetResponse(
        credits=result.balance,
        plan_tier=account.plan_tier,
        reset_occurred=result.reset_occurred,
        hours_until_reset=result.hours_until_reset,
    )


@router.get("/user/credits/check", response_model=CheckResponse)
def check_credits(
    operation: OperationKind = Query(..., description="Operation kind to price"),
    account: Account = Depends(get_current_account),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Advisory only: a later deduction re-checks the balance atomically."""
    result = ledger.check_credits(account.account_id, operation)
    return CheckResponse(operation=operation, **result.model_dump())


@router.get("/user/credits/history", response_model=HistoryResponse)
def credit_history(
    limit: int = Query(50, ge=1, le=200),
    account: Account = Depends(get_current_account),
    ledger: CreditLedger = Depends(get_ledger),
):
    entries = ledger.history(account.account_id, limit=limit)
    return HistoryResponse(
        account_id=account.account_id,
        entries=[
            LedgerEntryResponse(
                entry_type=entry.entry_type.value,
                amount=entry.amount,
                balance_after=entry.balance_after,
                operation_kind=entry.operation_kind.value if entry.operation_kind else None,
                reference=entry.reference,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )


@router.get("/user/preferences", response_model=PreferencesResponse, response_model_exclude_none=True)
def get_preferences(account: Account = Depends(get_current_account)):
    return PreferencesResponse(vocal_gender_preference=account.vocal_gender_preference)


@router.post("/user/preferences", response_model=PreferencesResponse)
def update_preferences(
    body: PreferencesUpdate,
    account: Account = Depends(get_current_account),
    ledger: CreditLedger = Depends(get_ledger),
):
    updated = ledger.set_vocal_preference(account.account_id, body.vocal_gender_preference)
    return PreferencesResponse(success=True, vocal_gender_preference=updated.vocal_gender_preference)


@router.get("/service-costs")
def service_costs() -> Dict[str, Any]:
    return {"costs": list_costs()}


@router.get("/credit-bundles")
def credit_bundles() -> Dict[str, Any]:
    return {
        "bundles": [
            {
                "id": bundle.id,
                "name": bundle.name,
                "credits": bundle.credits,
                "bonus": bundle.bonus,
                "total_credits": bundle.total_credits,
                "price_cents": bundle.price_cents,
                "price": bundle.price_usd,
                "popular": bundle.popular,
            }
            for bundle in list_bundles()
        ]
    }
