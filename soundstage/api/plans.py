"""Plan capability listing for clients rendering upgrade prompts."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from soundstage.api.deps import get_current_account
from soundstage.features.plans.catalog import list_plans, summarize
from soundstage.models.credits import Account
from soundstage.models.plan import PlanTier, tiers_in_order

router = APIRouter(prefix="/api/plans", tags=["plans"])


def _next_tier(tier: PlanTier) -> Optional[PlanTier]:
    order = tiers_in_order()
    index = order.index(tier)
    return order[index + 1] if index + 1 < len(order) else None


@router.get("")
def get_plans() -> Dict[str, Any]:
    return {"plans": [plan.model_dump(mode="json") for plan in list_plans()]}


@router.get("/current")
def get_current_plan(account: Account = Depends(get_current_account)) -> Dict[str, Any]:
    upgrade = _next_tier(account.plan_tier)
    return {
        "account_id": account.account_id,
        "plan": summarize(account.plan_tier).model_dump(mode="json"),
        "next_tier": upgrade.value if upgrade else None,
    }
