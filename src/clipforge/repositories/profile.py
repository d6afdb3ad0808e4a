"""Profile repository for clipforge.

Credit balance mutations are single conditional UPDATE statements so concurrent
jobs for the same user cannot lose updates.
"""

from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.models.generation import utcnow
from clipforge.models.profile import UNLIMITED_CREDITS, Profile


@dataclass(frozen=True)
class DebitResult:
    """Outcome of an atomic decrement-if-sufficient."""

    success: bool
    remaining: int | None  # balance after the debit; -1 if unlimited
    unlimited: bool = False


class ProfileRepository:
    """Repository for Profile entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, user_id: str) -> Profile | None:
        result = await self.session.execute(select(Profile).where(Profile.id == user_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def add(self, profile: Profile) -> Profile:
        self.session.add(profile)
        await self.session.flush()
        return profile

    async def debit(self, user_id: str, amount: int) -> DebitResult:
        """Atomically decrement the balance if it covers ``amount``.

        Query:
            UPDATE profiles SET credits = credits - :amount
            WHERE id = :user_id AND credits <> -1 AND credits >= :amount
            RETURNING credits

        Unlimited balances (-1) are never mutated and always succeed.

        Args:
            user_id: Profile id
            amount: Credits to debit (must be positive)

        Returns:
            DebitResult with the remaining balance. ``success`` is False when
            the balance is insufficient or the profile does not exist.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        result = await self.session.execute(
            update(Profile)
            .where(
                Profile.id == user_id,  # type: ignore[arg-type]
                Profile.credits != UNLIMITED_CREDITS,  # type: ignore[arg-type]
                Profile.credits >= amount,  # type: ignore[arg-type]
            )
            .values(credits=Profile.credits - amount, updated_at=utcnow())
            .returning(Profile.credits)
        )
        remaining = result.scalar_one_or_none()
        if remaining is not None:
            return DebitResult(success=True, remaining=remaining)

        profile = await self.get_by_id(user_id)
        if profile is not None and profile.is_unlimited:
            return DebitResult(success=True, remaining=UNLIMITED_CREDITS, unlimited=True)

        return DebitResult(success=False, remaining=profile.credits if profile else None)

    async def refund(self, user_id: str, amount: int) -> int | None:
        """Atomically add ``amount`` back to a metered balance.

        Returns:
            New balance, or None if the profile is unlimited or missing
        """
        if amount <= 0:
            return None

        result = await self.session.execute(
            update(Profile)
            .where(
                Profile.id == user_id,  # type: ignore[arg-type]
                Profile.credits != UNLIMITED_CREDITS,  # type: ignore[arg-type]
            )
            .values(credits=Profile.credits + amount, updated_at=utcnow())
            .returning(Profile.credits)
        )
        return result.scalar_one_or_none()
