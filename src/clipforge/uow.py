"""Unit of Work for clipforge.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipforge.repositories.generation import GenerationRepository
from clipforge.repositories.profile import ProfileRepository
from clipforge.repositories.webhook_delivery import WebhookDeliveryRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction scope over profiles, generations and webhook deliveries.

    Example:
        async with await uow_factory() as uow:
            debit = await uow.profiles.debit(user_id, credits)
            await uow.generations.add(generation)
            # Commits on successful exit, rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.profiles = ProfileRepository(session)
        self.generations = GenerationRepository(session)
        self.webhook_deliveries = WebhookDeliveryRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Commit on clean exit, roll back otherwise, and always close the session.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        uow_factory = create_uow_factory(setup_db_session(db_url))

        async with await uow_factory() as uow:
            await uow.profiles.add(profile)
    """

    async def _create_uow():
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
