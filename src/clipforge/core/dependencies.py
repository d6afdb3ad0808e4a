"""FastAPI dependency injection functions."""

from typing import AsyncGenerator

from fastapi import Request

from clipforge.core.container import ServiceContainer
from clipforge.uow import UnitOfWork


def get_services(request: Request) -> ServiceContainer:
    """Service graph built in the application lifespan."""
    return request.app.state.services


async def get_uow(request: Request) -> AsyncGenerator[UnitOfWork, None]:
    """FastAPI dependency for Unit of Work injection.

    The UoW is committed on successful request completion or rolled back if
    an exception occurs.

    Example:
        @router.get("/generations/{generation_id}")
        async def get_generation(generation_id: str, uow: UnitOfWork = Depends(get_uow)):
            return await uow.generations.get_by_id(generation_id)
    """
    uow_factory = request.app.state.uow_factory
    async with await uow_factory() as uow:
        yield uow
