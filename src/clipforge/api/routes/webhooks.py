"""Provider webhook endpoint for prediction status callbacks.

The provider POSTs the prediction object whenever it changes state. Only
terminal statuses are applied; each (generation, status) pair is applied at
most once, and the worker polling the same prediction races through the same
compare-and-set lifecycle, so whichever path arrives first finalizes the job.
"""

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError

from clipforge.api.dependencies import validate_webhook_secret
from clipforge.core.container import ServiceContainer
from clipforge.core.dependencies import get_services
from clipforge.models.video import Prediction
from clipforge.models.webhook_delivery import WebhookDelivery
from clipforge.services.generation.reconcile import apply_prediction

logger = structlog.get_logger()
router = APIRouter(dependencies=[Depends(validate_webhook_secret)])


@router.post("/provider")
async def receive_provider_webhook(
    prediction: Prediction,
    services: ServiceContainer = Depends(get_services),
):
    """Apply a terminal prediction status to the generation that owns it.

    HTTP Status Codes:
        200: Applied, duplicate, or nothing to do
        401: Webhook secret configured and missing or wrong
        422: Payload is not a prediction object
    """
    logger.info("webhook.received", prediction_id=prediction.id, status=prediction.status.value)

    if not prediction.status.is_terminal:
        return {"status": "ignored", "message": "Non-terminal status"}

    uow_factory = services.uow_factory
    async with await uow_factory() as uow:
        generation = await uow.generations.get_active_by_prediction_id(prediction.id)
        if generation is None:
            logger.info("webhook.unknown_prediction", prediction_id=prediction.id)
            return {"status": "ignored", "message": "No generation for this prediction"}
        if await uow.webhook_deliveries.exists(generation.id, prediction.status.value):
            logger.warning(
                "webhook.duplicate", generation_id=generation.id, status=prediction.status.value
            )
            return {"status": "duplicate", "generation_id": generation.id}

    generation_id = generation.id
    applied = await apply_prediction(services.lifecycle, services.storage, generation, prediction)

    try:
        async with await uow_factory() as uow:
            await uow.webhook_deliveries.add(
                WebhookDelivery(
                    generation_id=generation_id,
                    prediction_id=prediction.id,
                    status=prediction.status.value,
                )
            )
    except IntegrityError:
        # Concurrent delivery of the same status recorded it first
        logger.warning("webhook.duplicate_race", generation_id=generation_id)
        return {"status": "duplicate", "generation_id": generation_id}

    logger.info(
        "webhook.processed",
        generation_id=generation_id,
        status=prediction.status.value,
        applied=applied,
    )
    return {"status": "success", "generation_id": generation_id, "applied": applied}
