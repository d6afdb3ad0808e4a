"""Generation entity - durable record of a queued video generation job."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationStatus(str, Enum):
    """Generation lifecycle status."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {GenerationStatus.COMPLETED, GenerationStatus.FAILED, GenerationStatus.CANCELLED}
)

# target status -> statuses it may be entered from
TRANSITIONS: dict[GenerationStatus, tuple[GenerationStatus, ...]] = {
    GenerationStatus.PROCESSING: (GenerationStatus.QUEUED,),
    GenerationStatus.QUEUED: (GenerationStatus.PROCESSING,),  # retry / stall recovery
    GenerationStatus.COMPLETED: (GenerationStatus.PROCESSING, GenerationStatus.QUEUED),
    GenerationStatus.FAILED: (GenerationStatus.QUEUED, GenerationStatus.PROCESSING),
    GenerationStatus.CANCELLED: (GenerationStatus.QUEUED, GenerationStatus.PROCESSING),
}


class CreditStatus(str, Enum):
    """State of the credits debited at admission."""

    RESERVED = "reserved"  # debited, outcome pending
    SETTLED = "settled"  # generation succeeded, debit confirmed
    REFUNDED = "refunded"  # generation failed or was cancelled, debit reversed
    UNMETERED = "unmetered"  # unlimited balance, nothing was debited


class Generation(SQLModel, table=True):
    """Generation tracks one video job from admission to a terminal state."""

    __tablename__ = "generations"  # type: ignore[assignment]

    id: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(index=True, max_length=64)
    prompt: str = Field(max_length=1000)
    request: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: GenerationStatus = Field(default=GenerationStatus.QUEUED, index=True)
    priority: int = Field(default=10)
    trace_id: str = Field(max_length=64)
    retry_count: int = Field(default=0, ge=0)
    prediction_id: Optional[str] = Field(default=None, index=True, max_length=255)
    result_url: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None, max_length=1000)
    credits_charged: int = Field(default=0, ge=0)
    credit_status: CreditStatus = Field(default=CreditStatus.RESERVED)
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow)
