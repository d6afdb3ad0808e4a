"""Model catalog tests: credit formula, time estimate, request validation."""

import pytest

from clipforge.models.video import GenerationRequest, VideoModel, VideoQuality
from clipforge.services.exceptions import GenerationValidationError
from clipforge.services.video import catalog


def test_credit_formula_examples():
    assert catalog.calculate_credits(VideoModel.WAN2, 5, VideoQuality.STANDARD) == 5
    assert catalog.calculate_credits(VideoModel.SORA, 5, VideoQuality.ULTRA) == 30
    assert catalog.calculate_credits(VideoModel.GEN2, 3, VideoQuality.HIGH) == 9


def test_credit_formula_rounds_up():
    # 1 credit/s * 3 s * 1.5 = 4.5
    assert catalog.calculate_credits(VideoModel.WAN2, 3, VideoQuality.HIGH) == 5


def test_quality_defaults_to_standard():
    assert catalog.calculate_credits("wan2", 15) == 15


@pytest.mark.parametrize("model", list(VideoModel))
def test_credits_monotonic_in_duration_and_quality(model):
    qualities = [VideoQuality.STANDARD, VideoQuality.HIGH, VideoQuality.ULTRA]
    for quality in qualities:
        costs = [catalog.calculate_credits(model, d, quality) for d in (3, 5, 15)]
        assert costs == sorted(costs)
    for duration in (3, 5, 15):
        costs = [catalog.calculate_credits(model, duration, q) for q in qualities]
        assert costs == sorted(costs)


def test_unknown_model_rejected():
    with pytest.raises(GenerationValidationError, match="Unknown model"):
        catalog.calculate_credits("veo", 5)


def test_estimate_time_scales_with_duration():
    assert catalog.estimate_time(VideoModel.WAN2, 5) == 150
    assert catalog.estimate_time(VideoModel.SORA, 15) == 900


def test_validate_request_duration_over_model_max():
    request = GenerationRequest(prompt="a fox", duration=15, model=VideoModel.GEN2)
    with pytest.raises(GenerationValidationError, match="exceeds max 10s"):
        catalog.validate_request(request)


def test_validate_request_unsupported_quality():
    request = GenerationRequest(prompt="a fox", model=VideoModel.SORA, quality=VideoQuality.STANDARD)
    with pytest.raises(GenerationValidationError, match="not supported by sora"):
        catalog.validate_request(request)


def test_validate_request_unsupported_aspect_ratio():
    request = GenerationRequest(prompt="a fox", model=VideoModel.GEN2, aspect_ratio="1:1")
    with pytest.raises(GenerationValidationError, match="Aspect ratio"):
        catalog.validate_request(request)


def test_request_rejects_duration_outside_allowed_set():
    with pytest.raises(ValueError):
        GenerationRequest(prompt="a fox", duration=7)


def test_request_rejects_blank_prompt():
    with pytest.raises(ValueError):
        GenerationRequest(prompt="   ")


def test_prediction_cache_key_normalizes_prompt():
    a = GenerationRequest(prompt="  A Fox in the snow ")
    b = GenerationRequest(prompt="a fox in the snow")
    c = GenerationRequest(prompt="a fox in the snow", duration=3)

    assert catalog.prediction_cache_key(a) == catalog.prediction_cache_key(b)
    assert catalog.prediction_cache_key(a) != catalog.prediction_cache_key(c)
    assert catalog.prediction_cache_key(a).startswith("replicate:prediction:")
