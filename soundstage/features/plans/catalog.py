"""
Static plan catalog.

Every tier maps to exactly one PlanDefinition. Lookups are total over
PlanTier; a raw string that is not a tier fails with ValueError when it is
coerced, before any catalog lookup happens.
"""
from typing import Dict, FrozenSet, List, Optional, Union

from soundstage.models.plan import (
    Dimension,
    Feature,
    ImageEngine,
    Metered,
    MusicModel,
    PlanDefinition,
    PlanSummary,
    PlanTier,
    Unlimited,
    VideoResolution,
    tiers_in_order,
)

FREE_DAILY_CREDITS = 50

_ALL_MUSIC_MODELS = frozenset(MusicModel)
_ALL_VIDEO_RESOLUTIONS = frozenset(VideoResolution)
_ALL_IMAGE_ENGINES = frozenset(ImageEngine)

_PAID_FEATURES = frozenset({
    Feature.MUSIC_GENERATION,
    Feature.VIDEO_GENERATION,
    Feature.IMAGE_GENERATION,
    Feature.WAV_CONVERSION,
    Feature.COMMERCIAL_LICENSE,
})

PLANS: Dict[PlanTier, PlanDefinition] = {
    PlanTier.FREE: PlanDefinition(
        tier=PlanTier.FREE,
        features=frozenset({
            Feature.MUSIC_GENERATION,
            Feature.VIDEO_GENERATION,
            Feature.IMAGE_GENERATION,
        }),
        allowed_music_models=frozenset({MusicModel.V3_5, MusicModel.V4}),
        allowed_video_resolutions=frozenset({VideoResolution.R720P}),
        allowed_image_engines=frozenset({ImageEngine.DALL_E_2}),
        daily_allowance=Metered(credits=FREE_DAILY_CREDITS),
    ),
    PlanTier.STUDIO: PlanDefinition(
        tier=PlanTier.STUDIO,
        features=_PAID_FEATURES,
        allowed_music_models=_ALL_MUSIC_MODELS,
        allowed_video_resolutions=_ALL_VIDEO_RESOLUTIONS,
        allowed_image_engines=_ALL_IMAGE_ENGINES,
        daily_allowance=Unlimited(),
    ),
    PlanTier.CREATOR: PlanDefinition(
        tier=PlanTier.CREATOR,
        features=_PAID_FEATURES,
        allowed_music_models=_ALL_MUSIC_MODELS,
        allowed_video_resolutions=_ALL_VIDEO_RESOLUTIONS,
        allowed_image_engines=_ALL_IMAGE_ENGINES,
        daily_allowance=Unlimited(),
    ),
    PlanTier.ALL_ACCESS: PlanDefinition(
        tier=PlanTier.ALL_ACCESS,
        features=_PAID_FEATURES | {Feature.API_ACCESS},
        allowed_music_models=_ALL_MUSIC_MODELS,
        allowed_video_resolutions=_ALL_VIDEO_RESOLUTIONS,
        allowed_image_engines=_ALL_IMAGE_ENGINES,
        daily_allowance=Unlimited(),
    ),
}


def capabilities_for(plan_tier: Union[PlanTier, str]) -> PlanDefinition:
    """Return the immutable definition for a tier.

    Raises:
        ValueError: `plan_tier` is not a known tier.
    """
    return PLANS[PlanTier(plan_tier)]


def allowed_values(plan_tier: Union[PlanTier, str], dimension: Dimension) -> FrozenSet:
    return capabilities_for(plan_tier).allowed_for(dimension)


def is_feature_enabled(plan_tier: Union[PlanTier, str], feature: Feature) -> bool:
    return capabilities_for(plan_tier).has_feature(feature)


def minimum_tier_for_value(dimension: Dimension, value) -> Optional[PlanTier]:
    """Lowest tier whose allowed set for `dimension` contains `value`."""
    for tier in tiers_in_order():
        if value in PLANS[tier].allowed_for(dimension):
            return tier
    return None


def minimum_tier_for_feature(feature: Feature) -> Optional[PlanTier]:
    for tier in tiers_in_order():
        if PLANS[tier].has_feature(feature):
            return tier
    return None


def daily_credits(plan_tier: Union[PlanTier, str]) -> Optional[int]:
    """Daily allowance in credits, or None for unlimited tiers."""
    allowance = capabilities_for(plan_tier).daily_allowance
    if isinstance(allowance, Metered):
        return allowance.credits
    return None


def _ordered(values: FrozenSet, enum_type) -> list:
    return [member for member in enum_type if member in values]


def summarize(plan_tier: Union[PlanTier, str]) -> PlanSummary:
    plan = capabilities_for(plan_tier)
    return PlanSummary(
        tier=plan.tier,
        name=plan.tier.display_name,
        features={feature.value: plan.has_feature(feature) for feature in Feature},
        allowed_music_models=_ordered(plan.allowed_music_models, MusicModel),
        allowed_video_resolutions=_ordered(plan.allowed_video_resolutions, VideoResolution),
        allowed_image_engines=_ordered(plan.allowed_image_engines, ImageEngine),
        daily_credits=daily_credits(plan.tier),
    )


def list_plans() -> List[PlanSummary]:
    return [summarize(tier) for tier in tiers_in_order()]
