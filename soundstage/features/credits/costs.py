"""Server-side cost table for paid operations."""
from typing import Dict, List, Union

from soundstage.models.credits import OperationKind, ServiceCost
from soundstage.models.plan import PlanTier

_UNLIMITED_MUSIC_TIERS = frozenset({PlanTier.STUDIO, PlanTier.CREATOR, PlanTier.ALL_ACCESS})

SERVICE_COSTS: Dict[OperationKind, ServiceCost] = {
    OperationKind.MUSIC_GENERATION: ServiceCost(
        operation_kind=OperationKind.MUSIC_GENERATION,
        credits=5,
        unlimited_tiers=_UNLIMITED_MUSIC_TIERS,
    ),
    OperationKind.WAV_CONVERSION: ServiceCost(
        operation_kind=OperationKind.WAV_CONVERSION,
        credits=2,
        unlimited_tiers=_UNLIMITED_MUSIC_TIERS,
    ),
    OperationKind.IMAGE_GENERATION: ServiceCost(
        operation_kind=OperationKind.IMAGE_GENERATION,
        credits=4,
        unlimited_tiers=frozenset({PlanTier.ALL_ACCESS}),
    ),
    OperationKind.VIDEO_GENERATION: ServiceCost(
        operation_kind=OperationKind.VIDEO_GENERATION,
        credits=20,
        unlimited_tiers=frozenset({PlanTier.ALL_ACCESS}),
    ),
}


def get_service_cost(operation_kind: Union[OperationKind, str]) -> ServiceCost:
    return SERVICE_COSTS[OperationKind(operation_kind)]


def cost_of(operation_kind: Union[OperationKind, str]) -> int:
    return get_service_cost(operation_kind).credits


def is_unlimited_for(operation_kind: Union[OperationKind, str], plan_tier: Union[PlanTier, str]) -> bool:
    return PlanTier(plan_tier) in get_service_cost(operation_kind).unlimited_tiers


def list_costs() -> List[dict]:
    return [
        {
            "operation_kind": cost.operation_kind.value,
            "credits": cost.credits,
            "unlimited_tiers": [tier.value for tier in PlanTier if tier in cost.unlimited_tiers],
        }
        for cost in SERVICE_COSTS.values()
    ]
