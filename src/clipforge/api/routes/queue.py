"""Operator endpoints for the video job queue.

All routes require the ``X-Admin-Token`` header.
"""

from dataclasses import asdict

import structlog
from fastapi import APIRouter, Depends

from clipforge.api.dependencies import require_admin
from clipforge.core.container import ServiceContainer
from clipforge.core.dependencies import get_services

logger = structlog.get_logger()
router = APIRouter(
    prefix="/api/queue", tags=["queue"], dependencies=[Depends(require_admin)]
)


@router.get("/stats")
async def queue_stats(services: ServiceContainer = Depends(get_services)):
    stats = await services.queue.stats()
    return {"success": True, "queue": services.queue.name, **asdict(stats)}


@router.post("/pause")
async def pause_queue(services: ServiceContainer = Depends(get_services)):
    """Stop workers from picking up new jobs. In-flight jobs finish normally."""
    await services.queue.pause()
    return {"success": True, "paused": True}


@router.post("/resume")
async def resume_queue(services: ServiceContainer = Depends(get_services)):
    await services.queue.resume()
    return {"success": True, "paused": False}


@router.post("/drain")
async def drain_queue(services: ServiceContainer = Depends(get_services)):
    """Remove all waiting and delayed jobs, cancelling and refunding each one."""
    removed = await services.queue.drain()
    refunded = 0
    for generation_id in removed:
        if await services.lifecycle.cancel(generation_id):
            await services.publisher.emit_job_cancelled(generation_id)
            refunded += 1
    logger.info("queue.drain_requested", removed=len(removed), cancelled=refunded)
    return {"success": True, "removed": removed, "cancelled": refunded}
