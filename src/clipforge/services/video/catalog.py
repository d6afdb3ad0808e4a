"""Model catalog rules: credit cost, time estimate, request validation, cache key.

These are the only implementations of the pricing formula; admission,
settlement and refund all go through ``calculate_credits``.
"""

import hashlib
import json
import math

from clipforge.models.video import (
    VIDEO_MODELS,
    GenerationRequest,
    ModelInfo,
    VideoModel,
    VideoQuality,
)
from clipforge.services.exceptions import GenerationValidationError

QUALITY_MULTIPLIERS: dict[VideoQuality, float] = {
    VideoQuality.STANDARD: 1.0,
    VideoQuality.HIGH: 1.5,
    VideoQuality.ULTRA: 2.0,
}

PREDICTION_CACHE_PREFIX = "replicate:prediction:"


def get_model_info(model: VideoModel | str) -> ModelInfo:
    try:
        return VIDEO_MODELS[VideoModel(model)]
    except ValueError as e:
        raise GenerationValidationError(f"Unknown model: {model}") from e


def calculate_credits(
    model: VideoModel | str,
    duration: int,
    quality: VideoQuality | str | None = None,
) -> int:
    """Credits for one generation.

    Formula: ceil(credits_per_second * duration * multiplier[quality]).
    Monotonically non-decreasing in both duration and quality tier.

    Examples:
        wan2, 5 s, standard -> 5
        sora, 5 s, ultra -> 30
    """
    info = get_model_info(model)
    multiplier = QUALITY_MULTIPLIERS[VideoQuality(quality or VideoQuality.STANDARD)]
    return math.ceil(info.credits_per_second * duration * multiplier)


def estimate_time(model: VideoModel | str, duration: int) -> int:
    """Estimated generation wall time in seconds."""
    return get_model_info(model).avg_generation_time * duration


def validate_request(request: GenerationRequest) -> ModelInfo:
    """Check the request against the selected model's capabilities.

    Raises:
        GenerationValidationError: duration, quality or aspect ratio not supported
    """
    info = get_model_info(request.model)

    if not request.prompt or not request.prompt.strip():
        raise GenerationValidationError("Prompt cannot be empty")

    if request.duration > info.max_duration:
        raise GenerationValidationError(
            f"Duration {request.duration}s exceeds max {info.max_duration}s "
            f"for {request.model.value}"
        )

    if request.quality not in info.quality_levels:
        supported = ", ".join(q.value for q in info.quality_levels)
        raise GenerationValidationError(
            f"Quality {request.quality.value} not supported by {request.model.value} "
            f"(supported: {supported})"
        )

    if request.aspect_ratio is not None and request.aspect_ratio not in info.aspect_ratios:
        supported = ", ".join(a.value for a in info.aspect_ratios)
        raise GenerationValidationError(
            f"Aspect ratio {request.aspect_ratio.value} not supported by {request.model.value} "
            f"(supported: {supported})"
        )

    return info


def prediction_cache_key(request: GenerationRequest) -> str:
    """Deterministic key for identical requests (prompt is trimmed and lowercased)."""
    normalized = json.dumps(
        {
            "prompt": request.prompt.strip().lower(),
            "duration": request.duration,
            "model": request.model.value,
            "quality": request.quality.value,
            "style": request.style.value if request.style else None,
        },
        sort_keys=True,
    )
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]
    return f"{PREDICTION_CACHE_PREFIX}{digest}"
