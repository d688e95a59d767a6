"""
Test the plan catalog, service cost table and credit bundles.
"""
import pytest

from soundstage.core.errors import ValidationError
from soundstage.features.credits.bundles import get_bundle, list_bundles
from soundstage.features.credits.costs import cost_of, is_unlimited_for, list_costs
from soundstage.features.plans.catalog import (
    allowed_values,
    capabilities_for,
    daily_credits,
    is_feature_enabled,
    list_plans,
    minimum_tier_for_feature,
    minimum_tier_for_value,
)
from soundstage.models.credits import OperationKind
from soundstage.models.plan import (
    Dimension,
    Feature,
    ImageEngine,
    Metered,
    MusicModel,
    PlanTier,
    Unlimited,
    VideoResolution,
)


def test_every_tier_has_a_definition():
    """capabilities_for is total over the tier enum."""
    for tier in PlanTier:
        assert capabilities_for(tier).tier == tier


def test_unknown_tier_fails_fast():
    with pytest.raises(ValueError):
        capabilities_for("platinum")


def test_free_plan_restrictions():
    plan = capabilities_for(PlanTier.FREE)
    assert plan.allowed_music_models == {MusicModel.V3_5, MusicModel.V4}
    assert plan.allowed_video_resolutions == {VideoResolution.R720P}
    assert plan.allowed_image_engines == {ImageEngine.DALL_E_2}
    assert plan.daily_allowance == Metered(credits=50)
    assert not plan.has_feature(Feature.WAV_CONVERSION)
    assert not plan.has_feature(Feature.COMMERCIAL_LICENSE)
    assert not plan.has_feature(Feature.API_ACCESS)


@pytest.mark.parametrize("tier", [PlanTier.STUDIO, PlanTier.CREATOR, PlanTier.ALL_ACCESS])
def test_paid_plans_allow_everything(tier):
    plan = capabilities_for(tier)
    assert plan.allowed_music_models == frozenset(MusicModel)
    assert plan.allowed_video_resolutions == frozenset(VideoResolution)
    assert plan.allowed_image_engines == frozenset(ImageEngine)
    assert isinstance(plan.daily_allowance, Unlimited)
    assert plan.has_feature(Feature.WAV_CONVERSION)
    assert plan.has_feature(Feature.COMMERCIAL_LICENSE)


def test_only_all_access_has_api_access():
    assert [tier for tier in PlanTier if is_feature_enabled(tier, Feature.API_ACCESS)] == [PlanTier.ALL_ACCESS]


def test_minimum_tier_helpers():
    assert minimum_tier_for_value(Dimension.MUSIC_MODEL, MusicModel.V4) == PlanTier.FREE
    assert minimum_tier_for_value(Dimension.MUSIC_MODEL, MusicModel.V5) == PlanTier.STUDIO
    assert minimum_tier_for_value(Dimension.VIDEO_RESOLUTION, VideoResolution.R4K) == PlanTier.STUDIO
    assert minimum_tier_for_feature(Feature.WAV_CONVERSION) == PlanTier.STUDIO
    assert minimum_tier_for_feature(Feature.API_ACCESS) == PlanTier.ALL_ACCESS


def test_upgrade_hint_is_the_cheapest_tier_that_unlocks_the_value():
    """Studio already unlocks every resolution and engine, so no hint points past it."""
    assert minimum_tier_for_value(Dimension.VIDEO_RESOLUTION, VideoResolution.R1080P) == PlanTier.STUDIO
    for engine in ImageEngine:
        expected = PlanTier.FREE if engine == ImageEngine.DALL_E_2 else PlanTier.STUDIO
        assert minimum_tier_for_value(Dimension.IMAGE_ENGINE, engine) == expected
    assert minimum_tier_for_feature(Feature.VIDEO_GENERATION) == PlanTier.FREE


def test_allowed_values_by_dimension():
    assert allowed_values(PlanTier.FREE, Dimension.IMAGE_ENGINE) == {ImageEngine.DALL_E_2}
    assert allowed_values("studio", Dimension.IMAGE_ENGINE) == frozenset(ImageEngine)


def test_list_plans_is_ordered_and_serializable():
    plans = list_plans()
    assert [plan.tier for plan in plans] == [PlanTier.FREE, PlanTier.STUDIO, PlanTier.CREATOR, PlanTier.ALL_ACCESS]
    free = plans[0]
    assert free.allowed_music_models == [MusicModel.V3_5, MusicModel.V4]
    assert free.daily_credits == 50
    assert plans[1].daily_credits is None
    assert daily_credits(PlanTier.ALL_ACCESS) is None


def test_service_costs():
    assert cost_of(OperationKind.MUSIC_GENERATION) == 5
    assert cost_of(OperationKind.WAV_CONVERSION) == 2
    assert cost_of(OperationKind.IMAGE_GENERATION) == 4
    assert cost_of("video_generation") == 20


@pytest.mark.parametrize(
    "kind,unlimited",
    [
        (OperationKind.MUSIC_GENERATION, {PlanTier.STUDIO, PlanTier.CREATOR, PlanTier.ALL_ACCESS}),
        (OperationKind.WAV_CONVERSION, {PlanTier.STUDIO, PlanTier.CREATOR, PlanTier.ALL_ACCESS}),
        (OperationKind.IMAGE_GENERATION, {PlanTier.ALL_ACCESS}),
        (OperationKind.VIDEO_GENERATION, {PlanTier.ALL_ACCESS}),
    ],
)
def test_unlimited_tiers(kind, unlimited):
    for tier in PlanTier:
        assert is_unlimited_for(kind, tier) is (tier in unlimited)


def test_list_costs_covers_every_operation():
    listed = {cost["operation_kind"]: cost for cost in list_costs()}
    assert set(listed) == {kind.value for kind in OperationKind}
    assert listed["image_generation"]["unlimited_tiers"] == ["all_access"]


def test_bundle_catalog():
    bundles = {bundle.id: bundle for bundle in list_bundles()}
    assert bundles["starter"].total_credits == 100
    assert bundles["popular"].total_credits == 400
    assert bundles["popular"].popular is True
    assert bundles["pro"].total_credits == 1200
    assert bundles["pro"].price_cents == 4000
    assert bundles["starter"].price_usd == 5.0


def test_unknown_bundle_is_validation_error():
    with pytest.raises(ValidationError):
        get_bundle("mega")
