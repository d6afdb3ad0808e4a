"""Progress event types.

Every message on the wire is an envelope ``{generationId, event, payload}``.
``event`` is the discriminator of a closed union so consumers can dispatch on
it without guessing at payload shapes.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class ProgressStage(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    VALIDATING = "validating"
    ENHANCING = "enhancing"
    CREATING_PREDICTION = "creating-prediction"
    GENERATING = "generating"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STAGE_PERCENT: dict[ProgressStage, int] = {
    ProgressStage.QUEUED: 0,
    ProgressStage.PROCESSING: 5,
    ProgressStage.VALIDATING: 10,
    ProgressStage.ENHANCING: 15,
    ProgressStage.CREATING_PREDICTION: 20,
    ProgressStage.GENERATING: 30,
    ProgressStage.UPLOADING: 85,
    ProgressStage.FINALIZING: 95,
    ProgressStage.COMPLETED: 100,
}

GENERATING_MAX_PERCENT = 80


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QueuedPayload(_CamelModel):
    generation_id: str
    position: Optional[int] = None


class StartedPayload(_CamelModel):
    generation_id: str
    worker_id: str


class ProgressPayload(_CamelModel):
    generation_id: str
    percent: int = Field(ge=0, le=100)
    stage: ProgressStage
    message: str = ""


class CompletedPayload(_CamelModel):
    generation_id: str
    video_url: str


class FailedPayload(_CamelModel):
    generation_id: str
    error: str
    retry_in: Optional[int] = None  # seconds until the next attempt, None = final


class CancelledPayload(_CamelModel):
    generation_id: str


class ErrorPayload(_CamelModel):
    generation_id: Optional[str] = None
    error: str


class _Envelope(_CamelModel):
    generation_id: str

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class JobQueued(_Envelope):
    event: Literal["job:queued"] = "job:queued"
    payload: QueuedPayload


class JobStarted(_Envelope):
    event: Literal["job:started"] = "job:started"
    payload: StartedPayload


class JobProgress(_Envelope):
    event: Literal["job:progress"] = "job:progress"
    payload: ProgressPayload


class JobCompleted(_Envelope):
    event: Literal["job:completed"] = "job:completed"
    payload: CompletedPayload


class JobFailed(_Envelope):
    event: Literal["job:failed"] = "job:failed"
    payload: FailedPayload


class JobCancelled(_Envelope):
    event: Literal["job:cancelled"] = "job:cancelled"
    payload: CancelledPayload


class SubscriptionError(_Envelope):
    """Sent directly to one connection (never published)."""

    generation_id: str = ""
    event: Literal["error"] = "error"
    payload: ErrorPayload


ProgressEvent = Annotated[
    Union[JobQueued, JobStarted, JobProgress, JobCompleted, JobFailed, JobCancelled],
    Field(discriminator="event"),
]

_EVENT_ADAPTER: TypeAdapter[ProgressEvent] = TypeAdapter(ProgressEvent)


def parse_event(raw: str | bytes) -> ProgressEvent:
    """Decode a published envelope.

    Raises:
        pydantic.ValidationError: Unknown event tag or malformed payload
    """
    return _EVENT_ADAPTER.validate_json(raw)


def channel_for(generation_id: str) -> str:
    return f"video:job:{generation_id}"


def snapshot_key(generation_id: str) -> str:
    return f"video:status:{generation_id}"


CHANNEL_PATTERN = "video:job:*"
