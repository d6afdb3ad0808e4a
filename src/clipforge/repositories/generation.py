"""Generation repository for clipforge.

State changes that race between the worker, the webhook receiver and user
cancellation go through compare-and-set UPDATEs: the row only changes if it is
still in one of the allowed source states, and the caller learns whether it won.
"""

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.models.generation import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    CreditStatus,
    Generation,
    GenerationStatus,
    utcnow,
)


class GenerationRepository:
    """Repository for Generation entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, generation_id: str) -> Generation | None:
        """Retrieve generation by id.

        Args:
            generation_id: Generation identifier (gen_<ms>_<rand>)

        Returns:
            Generation if found, None otherwise
        """
        result = await self.session.execute(
            select(Generation).where(Generation.id == generation_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, generation_id: str, user_id: str) -> Generation | None:
        """Retrieve generation only if it belongs to ``user_id``."""
        result = await self.session.execute(
            select(Generation).where(
                Generation.id == generation_id,  # type: ignore[arg-type]
                Generation.user_id == user_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def add(self, generation: Generation) -> Generation:
        """Persist new generation to database.

        Args:
            generation: Generation entity to persist

        Returns:
            Persisted generation
        """
        self.session.add(generation)
        await self.session.flush()
        return generation

    async def list_for_user(self, user_id: str, limit: int = 20) -> list[Generation]:
        """Retrieve the most recent generations of a user (newest first).

        Args:
            user_id: Owner of the generations
            limit: Maximum number of rows to return (default: 20)

        Returns:
            List of generations ordered by created_at descending
        """
        result = await self.session.execute(
            select(Generation)
            .where(Generation.user_id == user_id)  # type: ignore[arg-type]
            .order_by(Generation.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_active_by_prediction_id(self, prediction_id: str) -> Generation | None:
        """Find the non-terminal generation bound to a provider prediction."""
        result = await self.session.execute(
            select(Generation)
            .where(
                Generation.prediction_id == prediction_id,  # type: ignore[arg-type]
                Generation.status.notin_(TERMINAL_STATUSES),  # type: ignore[union-attr]
            )
            .order_by(Generation.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(
        self, generation_id: str, target: GenerationStatus, **values: Any
    ) -> bool:
        """Compare-and-set status change.

        Query:
            UPDATE generations SET status = :target, ...
            WHERE id = :id AND status IN (:allowed_sources)

        Args:
            generation_id: Generation to update
            target: New status; allowed sources come from TRANSITIONS
            **values: Extra columns to set in the same statement

        Returns:
            True if this call performed the transition, False if the row was
            missing or already left the allowed source states
        """
        result = await self.session.execute(
            update(Generation)
            .where(
                Generation.id == generation_id,  # type: ignore[arg-type]
                Generation.status.in_(TRANSITIONS[target]),  # type: ignore[union-attr]
            )
            .values(status=target, updated_at=utcnow(), **values)
            .returning(Generation.id)
        )
        return result.scalar_one_or_none() is not None

    async def set_prediction_id(self, generation_id: str, prediction_id: str) -> None:
        await self.session.execute(
            update(Generation)
            .where(Generation.id == generation_id)  # type: ignore[arg-type]
            .values(prediction_id=prediction_id, updated_at=utcnow())
        )

    async def settle_credits(self, generation_id: str) -> bool:
        """Confirm a reserved debit after a successful generation."""
        result = await self.session.execute(
            update(Generation)
            .where(
                Generation.id == generation_id,  # type: ignore[arg-type]
                Generation.credit_status == CreditStatus.RESERVED,  # type: ignore[arg-type]
            )
            .values(credit_status=CreditStatus.SETTLED)
            .returning(Generation.id)
        )
        return result.scalar_one_or_none() is not None

    async def release_credit_reservation(self, generation_id: str) -> bool:
        """Flip a reserved debit to refunded.

        Only the caller that wins this compare-and-set may credit the balance
        back, so a refund happens at most once per generation.

        Returns:
            True if the reservation was released by this call
        """
        result = await self.session.execute(
            update(Generation)
            .where(
                Generation.id == generation_id,  # type: ignore[arg-type]
                Generation.credit_status == CreditStatus.RESERVED,  # type: ignore[arg-type]
            )
            .values(credit_status=CreditStatus.REFUNDED)
            .returning(Generation.id)
        )
        return result.scalar_one_or_none() is not None

    async def update_details(self, generation: Generation, **details: Any) -> None:
        """Merge provider metadata (model, version, enhanced prompt) into details."""
        merged = dict(generation.details or {})
        merged.update(details)
        generation.details = merged
        generation.updated_at = utcnow()
        self.session.add(generation)
        await self.session.flush()
