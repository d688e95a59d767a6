"""
Test the entitlement guard.

Covers every tier x dimension x value combination against the catalog and
checks that a denied request never reaches the ledger.
"""
from unittest.mock import Mock

import pytest

from soundstage.core.errors import EntitlementDeniedError, FeatureNotAvailableError, ValidationError
from soundstage.features.entitlements.guard import enforce, enforce_request, require_feature, validate
from soundstage.features.generation.dispatch import GenerationDispatcher
from soundstage.features.plans.catalog import capabilities_for
from soundstage.models.credits import Account
from soundstage.models.generation import (
    ImageGenerationRequest,
    MusicGenerationRequest,
    VideoGenerationRequest,
    WavConversionRequest,
)
from soundstage.models.plan import Dimension, Feature, ImageEngine, MusicModel, PlanTier, VideoResolution

COMBINATIONS = [
    (tier, dimension, value)
    for tier in PlanTier
    for dimension in Dimension
    for value in dimension.value_type
]


@pytest.mark.parametrize("tier,dimension,value", COMBINATIONS)
def test_validate_matches_catalog(tier, dimension, value):
    """Allowed exactly when the value is in the plan's allowed set."""
    expected = value in capabilities_for(tier).allowed_for(dimension)
    decision = validate(tier, dimension, value)
    assert decision.allowed is expected
    if expected:
        enforce(tier, dimension, value)
    else:
        with pytest.raises(EntitlementDeniedError) as excinfo:
            enforce(tier, dimension, value)
        details = excinfo.value.details
        assert details["dimension"] == dimension.value
        assert details["requested"] == value.value
        assert value.value not in details["allowed"]


def test_denial_carries_upgrade_hint():
    with pytest.raises(EntitlementDeniedError) as excinfo:
        enforce(PlanTier.FREE, Dimension.MUSIC_MODEL, MusicModel.V5)
    err = excinfo.value
    assert err.status_code == 403
    assert err.code == "entitlement_denied"
    assert err.details["allowed"] == ["V3_5", "V4"]
    assert err.details["required_tier"] == "studio"


def test_raw_strings_are_coerced_to_enums():
    assert validate("free", Dimension.VIDEO_RESOLUTION, "720p").allowed is True
    assert validate("free", Dimension.VIDEO_RESOLUTION, "4k").allowed is False


def test_unknown_value_is_validation_error():
    with pytest.raises(ValidationError):
        validate(PlanTier.STUDIO, Dimension.IMAGE_ENGINE, "crayon")


def test_require_feature():
    require_feature(PlanTier.STUDIO, Feature.WAV_CONVERSION)
    with pytest.raises(FeatureNotAvailableError) as excinfo:
        require_feature(PlanTier.FREE, Feature.WAV_CONVERSION)
    assert excinfo.value.details == {"feature": "wav_conversion", "required_tier": "studio"}


def test_enforce_request_checks_declared_dimensions():
    enforce_request(PlanTier.FREE, MusicGenerationRequest(prompt="lofi beat", model=MusicModel.V3_5))
    enforce_request(PlanTier.FREE, ImageGenerationRequest(prompt="cover art"))
    with pytest.raises(EntitlementDeniedError):
        enforce_request(PlanTier.FREE, VideoGenerationRequest(prompt="clip", resolution=VideoResolution.R1080P))
    with pytest.raises(EntitlementDeniedError):
        enforce_request(PlanTier.FREE, ImageGenerationRequest(prompt="cover art", engine=ImageEngine.FLUX))
    with pytest.raises(FeatureNotAvailableError):
        enforce_request(PlanTier.FREE, WavConversionRequest(task_id="t1", audio_id="a1"))


@pytest.mark.parametrize(
    "request_obj",
    [
        MusicGenerationRequest(prompt="song", model=MusicModel.V5),
        MusicGenerationRequest(prompt="song", model=MusicModel.V4_5PLUS),
        VideoGenerationRequest(prompt="clip", resolution=VideoResolution.R4K),
        ImageGenerationRequest(prompt="art", engine=ImageEngine.MIDJOURNEY),
        WavConversionRequest(task_id="t1", audio_id="a1"),
    ],
)
def test_denied_request_never_deducts(request_obj):
    """The dispatcher raises before any ledger mutation or gateway call."""
    ledger = Mock()
    ledger.get_account.return_value = Account(
        account_id="user_free",
        plan_tier=PlanTier.FREE,
        credit_balance=50,
        last_reset_at="2026-01-01T00:00:00Z",
    )
    gateway = Mock()
    dispatcher = GenerationDispatcher(ledger, gateway, Mock())

    with pytest.raises((EntitlementDeniedError, FeatureNotAvailableError)):
        dispatcher.dispatch_generation("user_free", request_obj)

    ledger.deduct_credits.assert_not_called()
    ledger.refund_credits.assert_not_called()
    gateway.submit.assert_not_called()
