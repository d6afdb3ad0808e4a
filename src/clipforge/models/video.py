"""Video generation domain types: models, request payload, provider prediction."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROMPT_MAX_LENGTH = 1000
ALLOWED_DURATIONS = (3, 5, 15)


class VideoModel(str, Enum):
    """Provider models available for text-to-video."""

    WAN2 = "wan2"
    GEN2 = "gen2"
    SORA = "sora"


class VideoQuality(str, Enum):
    """Quality tier; each tier is a credit multiplier."""

    STANDARD = "standard"
    HIGH = "high"
    ULTRA = "ultra"


class VideoStyle(str, Enum):
    CINEMATIC = "cinematic"
    ANIME = "anime"
    REALISTIC = "realistic"
    ARTISTIC = "artistic"
    DOCUMENTARY = "documentary"
    COMMERCIAL = "commercial"
    SOCIAL_MEDIA = "social-media"
    CUSTOM = "custom"


class AspectRatio(str, Enum):
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    SQUARE = "1:1"
    CLASSIC = "4:3"


@dataclass(frozen=True)
class ModelInfo:
    """Cost and capability profile of a provider model."""

    name: str
    version: str
    display_name: str
    credits_per_second: int
    max_duration: int
    quality_levels: tuple[VideoQuality, ...]
    aspect_ratios: tuple[AspectRatio, ...]
    avg_generation_time: int  # seconds of compute per second of video


VIDEO_MODELS: dict[VideoModel, ModelInfo] = {
    VideoModel.WAN2: ModelInfo(
        name="lucataco/wan2.1",
        version="wan2.1-t2v-1.3b",
        display_name="Wan 2.1",
        credits_per_second=1,
        max_duration=15,
        quality_levels=(VideoQuality.STANDARD, VideoQuality.HIGH),
        aspect_ratios=(AspectRatio.LANDSCAPE, AspectRatio.PORTRAIT, AspectRatio.SQUARE),
        avg_generation_time=30,
    ),
    VideoModel.GEN2: ModelInfo(
        name="runwayml/gen-2",
        version="gen2-t2v",
        display_name="Gen-2",
        credits_per_second=2,
        max_duration=10,
        quality_levels=(VideoQuality.STANDARD, VideoQuality.HIGH, VideoQuality.ULTRA),
        aspect_ratios=(AspectRatio.LANDSCAPE, AspectRatio.PORTRAIT),
        avg_generation_time=45,
    ),
    VideoModel.SORA: ModelInfo(
        name="openai/sora",
        version="sora-1.0",
        display_name="Sora",
        credits_per_second=3,
        max_duration=30,
        quality_levels=(VideoQuality.HIGH, VideoQuality.ULTRA),
        aspect_ratios=(AspectRatio.LANDSCAPE, AspectRatio.PORTRAIT, AspectRatio.SQUARE),
        avg_generation_time=60,
    ),
}


class GenerationRequest(BaseModel):
    """User-submitted intent for a single video generation.

    Field-level bounds are checked here; model-specific constraints
    (max duration, supported quality) are checked by
    ``clipforge.services.video.catalog.validate_request``.
    """

    model_config = ConfigDict(use_enum_values=False, extra="ignore")

    prompt: str = Field(..., min_length=1, max_length=PROMPT_MAX_LENGTH)
    duration: int = Field(default=5)
    model: VideoModel = Field(default=VideoModel.WAN2)
    quality: VideoQuality = Field(default=VideoQuality.STANDARD)
    style: Optional[VideoStyle] = None
    aspect_ratio: Optional[AspectRatio] = None
    negative_prompt: Optional[str] = Field(default=None, max_length=PROMPT_MAX_LENGTH)
    seed: Optional[int] = Field(default=None, ge=0)
    enhance_prompt: bool = True

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Prompt cannot be empty")
        return v

    @field_validator("duration")
    @classmethod
    def duration_allowed(cls, v: int) -> int:
        if v not in ALLOWED_DURATIONS:
            raise ValueError(f"Duration must be one of {list(ALLOWED_DURATIONS)} seconds")
        return v


class PredictionStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PredictionStatus.SUCCEEDED,
            PredictionStatus.FAILED,
            PredictionStatus.CANCELED,
        )


class Prediction(BaseModel):
    """Provider-side handle for a single inference execution."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: PredictionStatus
    version: Optional[str] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    logs: Optional[str] = None
    metrics: Optional[dict[str, Any]] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def output_url(self) -> Optional[str]:
        """First artifact URL (output format varies by model)."""
        if isinstance(self.output, list) and len(self.output) > 0:
            return str(self.output[0])
        if isinstance(self.output, str) and self.output:
            return self.output
        return None
