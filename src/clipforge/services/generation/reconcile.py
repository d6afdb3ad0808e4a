"""Apply a provider prediction's terminal status to its generation.

Used by the webhook receiver and by the status endpoint's pull-based
reconciliation. Both go through the compare-and-set lifecycle, so a worker
polling the same prediction and these paths can race safely: only the first
one settles or refunds.
"""

import structlog

from clipforge.models.generation import Generation
from clipforge.models.video import Prediction, PredictionStatus
from clipforge.services.generation.lifecycle import GenerationLifecycle
from clipforge.services.storage import StorageClient

logger = structlog.get_logger()


async def apply_prediction(
    lifecycle: GenerationLifecycle,
    storage: StorageClient,
    generation: Generation,
    prediction: Prediction,
) -> bool:
    """Finalize ``generation`` from a terminal ``prediction``.

    Returns:
        True if this call moved the generation to its terminal state, False
        if the prediction is not terminal or another path got there first
    """
    if not prediction.status.is_terminal:
        return False

    if prediction.status == PredictionStatus.SUCCEEDED:
        source_url = prediction.output_url
        if not source_url:
            return await lifecycle.fail(generation.id, "Prediction succeeded without output")
        result_url = await storage.persist_or_fallback(source_url, generation.user_id, generation.id)
        return await lifecycle.complete(
            generation.id,
            result_url,
            details={"provider_url": source_url, "provider_metrics": prediction.metrics},
        )

    if prediction.status == PredictionStatus.FAILED:
        return await lifecycle.fail(generation.id, prediction.error or "Prediction failed")

    logger.info("generation.prediction_cancelled_upstream", generation_id=generation.id)
    return await lifecycle.cancel_and_close(generation.id)
