"""WebhookDelivery repository for clipforge.

Deduplicates provider webhook deliveries by (generation_id, status).
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.models.webhook_delivery import WebhookDelivery


class WebhookDeliveryRepository:
    """Repository for WebhookDelivery entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def exists(self, generation_id: str, status: str) -> bool:
        """Check if a delivery for this generation and status was already processed."""
        result = await self.session.execute(
            select(WebhookDelivery.id).where(  # type: ignore[call-overload]
                WebhookDelivery.generation_id == generation_id,  # type: ignore[arg-type]
                WebhookDelivery.status == status,  # type: ignore[arg-type]
            )
        )
        return result.first() is not None

    async def add(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """Persist delivery marker.

        Raises:
            IntegrityError: If the (generation_id, status) pair already exists
        """
        self.session.add(delivery)
        await self.session.flush()
        return delivery
