"""Video generation API endpoints.

- POST /api/generations - Admission check, credit debit and enqueue
- GET /api/generations - Caller's most recent generations
- GET /api/generations/{generation_id} - One generation, reconciled against the provider while processing
- DELETE /api/generations/{generation_id} - Cancel a queued or processing generation
"""

from datetime import datetime
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from clipforge.api.dependencies import get_current_user_id
from clipforge.core.container import ServiceContainer
from clipforge.core.dependencies import get_services, get_uow
from clipforge.models.generation import Generation, GenerationStatus
from clipforge.models.video import GenerationRequest
from clipforge.services.exceptions import JobNotFoundError, ServiceError
from clipforge.services.generation.reconcile import apply_prediction
from clipforge.uow import UnitOfWork

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])


# Response Models


class GenerationAccepted(BaseModel):
    success: bool = True
    generation_id: str
    job_id: str
    estimated_time_seconds: int
    queue_position: Optional[int] = Field(None, description="1-based position among waiting jobs")
    model_used: str
    credits_charged: int
    remaining_credits: int = Field(..., description="Balance after the debit, -1 = unlimited")
    trace_id: str


class GenerationView(BaseModel):
    id: str
    status: GenerationStatus
    prompt: str
    request: dict[str, Any]
    retry_count: int
    prediction_id: Optional[str] = None
    result_url: Optional[str] = None
    error: Optional[str] = None
    credits_charged: int
    credit_status: str
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    queue_position: Optional[int] = None
    provider_status: Optional[str] = None

    @classmethod
    def from_entity(cls, generation: Generation, **extra: Any) -> "GenerationView":
        return cls(
            id=generation.id,
            status=generation.status,
            prompt=generation.prompt,
            request=generation.request or {},
            retry_count=generation.retry_count,
            prediction_id=generation.prediction_id,
            result_url=generation.result_url,
            error=generation.error,
            credits_charged=generation.credits_charged,
            credit_status=generation.credit_status.value,
            created_at=generation.created_at,
            started_at=generation.started_at,
            completed_at=generation.completed_at,
            **extra,
        )


class GenerationList(BaseModel):
    success: bool = True
    generations: list[GenerationView]
    trace_id: str


class GenerationDetail(BaseModel):
    success: bool = True
    generation: GenerationView
    trace_id: str


class CancelResponse(BaseModel):
    success: bool = True
    generation_id: str
    status: GenerationStatus
    trace_id: str


@router.post("", response_model=GenerationAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_generation(
    body: GenerationRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> GenerationAccepted:
    """Admit and enqueue a video generation.

    HTTP Status Codes:
        202: Job enqueued
        400: Invalid request or model constraint violated
        402: Insufficient credits
        403: Plan does not allow video or the requested duration
        404: Profile not found
        429: Rate limit exceeded
        503: Queue unavailable (the debit is refunded)
    """
    result = await services.admission.submit(user_id, body, trace_id=request.state.trace_id)
    return GenerationAccepted(
        generation_id=result.generation_id,
        job_id=result.job_id,
        estimated_time_seconds=result.estimated_time_seconds,
        queue_position=result.queue_position,
        model_used=result.model_used,
        credits_charged=result.credits_charged,
        remaining_credits=result.remaining_credits,
        trace_id=result.trace_id,
    )


@router.get("", response_model=GenerationList)
async def list_generations(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    uow: UnitOfWork = Depends(get_uow),
) -> GenerationList:
    generations = await uow.generations.list_for_user(user_id, limit=20)
    return GenerationList(
        generations=[GenerationView.from_entity(g) for g in generations],
        trace_id=request.state.trace_id,
    )


@router.get("/{generation_id}", response_model=GenerationDetail)
async def get_generation(
    generation_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> GenerationDetail:
    """Return the persisted record.

    While queued, the current queue position is included. While processing
    with a bound prediction, the provider's live status is fetched; a terminal
    status is applied to the record (settle or refund) the same way the
    webhook would, covering lost webhooks and dead workers. Failing to reach
    the provider does not fail the request.
    """
    async with await services.uow_factory() as uow:
        generation = await uow.generations.get_for_user(generation_id, user_id)
    if generation is None:
        raise JobNotFoundError(f"Generation {generation_id} not found")

    extra: dict[str, Any] = {}
    if generation.status == GenerationStatus.QUEUED:
        try:
            extra["queue_position"] = await services.queue.position(generation_id)
        except ServiceError as e:
            logger.warning("generation.position_unavailable", error=str(e))
    elif generation.status == GenerationStatus.PROCESSING and generation.prediction_id:
        try:
            prediction = await services.provider.get_prediction(generation.prediction_id)
            extra["provider_status"] = prediction.status.value
            if await apply_prediction(
                services.lifecycle, services.storage, generation, prediction
            ):
                logger.info(
                    "generation.reconciled",
                    generation_id=generation_id,
                    provider_status=prediction.status.value,
                )
        except ServiceError as e:
            logger.warning(
                "generation.reconciliation_failed",
                generation_id=generation_id,
                error=str(e),
            )

        async with await services.uow_factory() as uow:
            generation = await uow.generations.get_for_user(generation_id, user_id) or generation

    return GenerationDetail(
        generation=GenerationView.from_entity(generation, **extra),
        trace_id=request.state.trace_id,
    )


@router.delete("/{generation_id}", response_model=CancelResponse)
async def cancel_generation(
    generation_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> CancelResponse:
    """Cancel a queued or processing generation and refund its credits.

    HTTP Status Codes:
        200: Cancelled
        404: Unknown generation or owned by another user
        409: Generation already completed, failed or cancelled
    """
    await services.lifecycle.request_cancel(user_id, generation_id)
    logger.info("generation.cancel_requested", generation_id=generation_id, user_id=user_id)
    return CancelResponse(
        generation_id=generation_id,
        status=GenerationStatus.CANCELLED,
        trace_id=request.state.trace_id,
    )
