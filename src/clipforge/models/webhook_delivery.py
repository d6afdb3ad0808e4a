"""WebhookDelivery entity - marker for provider terminal statuses already applied."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class WebhookDelivery(SQLModel, table=True):
    """Records that a provider terminal status was applied to a generation.

    Unique on (generation_id, status) so duplicate webhook deliveries are
    detected before any side effect runs.
    """

    __tablename__ = "webhook_deliveries"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("generation_id", "status", name="uq_webhook_generation_status"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    generation_id: str = Field(foreign_key="generations.id", index=True, max_length=64)
    prediction_id: str = Field(max_length=255)
    status: str = Field(max_length=32)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
