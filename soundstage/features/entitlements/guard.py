"""
Entitlement guard.

Pure checks of a requested parameter or feature against the caller's plan.
Nothing here touches the ledger; paid endpoints run the guard first and only
then deduct credits.
"""
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional, Union

from soundstage.core.errors import EntitlementDeniedError, FeatureNotAvailableError, ValidationError
from soundstage.core.logging import log_event
from soundstage.features.plans.catalog import (
    allowed_values,
    is_feature_enabled,
    minimum_tier_for_feature,
    minimum_tier_for_value,
)
from soundstage.models.generation import GenerationRequest
from soundstage.models.plan import Dimension, Feature, PlanTier


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    dimension: Dimension
    requested: Enum
    allowed_values: FrozenSet
    required_tier: Optional[PlanTier]

    def allowed_list(self) -> List[str]:
        enum_type = self.dimension.value_type
        return [member.value for member in enum_type if member in self.allowed_values]


def _coerce(dimension: Dimension, requested_value) -> Enum:
    enum_type = dimension.value_type
    if isinstance(requested_value, enum_type):
        return requested_value
    try:
        return enum_type(requested_value)
    except ValueError:
        raise ValidationError(
            f"Unknown {dimension.value}: {requested_value}",
            details={"dimension": dimension.value, "requested": str(requested_value)},
        )


def validate(plan_tier: Union[PlanTier, str], dimension: Dimension, requested_value) -> EntitlementDecision:
    tier = PlanTier(plan_tier)
    value = _coerce(dimension, requested_value)
    allowed = allowed_values(tier, dimension)
    is_allowed = value in allowed
    return EntitlementDecision(
        allowed=is_allowed,
        dimension=dimension,
        requested=value,
        allowed_values=allowed,
        required_tier=None if is_allowed else minimum_tier_for_value(dimension, value),
    )


def enforce(plan_tier: Union[PlanTier, str], dimension: Dimension, requested_value) -> EntitlementDecision:
    """Like validate(), but raises EntitlementDeniedError on denial."""
    decision = validate(plan_tier, dimension, requested_value)
    if decision.allowed:
        return decision
    tier = PlanTier(plan_tier)
    required = decision.required_tier.value if decision.required_tier else None
    log_event(
        "info",
        "entitlement.denied",
        event_type="entitlement.denied",
        error_code="entitlement_denied",
        extra={
            "plan_tier": tier.value,
            "dimension": dimension.value,
            "requested": decision.requested.value,
            "required_tier": required,
        },
    )
    raise EntitlementDeniedError(
        f"{decision.requested.value} is not available on the {tier.display_name} plan",
        dimension=dimension.value,
        requested=decision.requested.value,
        allowed=decision.allowed_list(),
        required_tier=required,
    )


def require_feature(plan_tier: Union[PlanTier, str], feature: Feature) -> None:
    tier = PlanTier(plan_tier)
    if is_feature_enabled(tier, feature):
        return
    required = minimum_tier_for_feature(feature)
    log_event(
        "info",
        "entitlement.feature_denied",
        event_type="entitlement.feature_denied",
        error_code="feature_not_available",
        extra={"plan_tier": tier.value, "feature": feature.value},
    )
    raise FeatureNotAvailableError(
        f"{feature.value} is not available on the {tier.display_name} plan",
        feature=feature.value,
        required_tier=required.value if required else None,
    )


def enforce_request(plan_tier: Union[PlanTier, str], request: GenerationRequest) -> List[EntitlementDecision]:
    """Check the request's feature flag and every restricted parameter it carries."""
    require_feature(plan_tier, request.required_feature)
    return [enforce(plan_tier, dimension, value) for dimension, value in request.entitlement_checks()]
