"""Video generation job processor.

Takes one dequeued job through the stage pipeline:

1. processing (5%): claim the generation row queued → processing
2. validating (10%): re-check the request against the model catalog
3. enhancing (15%): optional prompt rewrite (premium plans only)
4. creating-prediction (20%): start the provider prediction
5. generating (30-80%): poll, renew the lease, watch for cancellation
6. uploading (85%): copy the artifact into object storage
7. finalizing (95%): mark completed, settle credits
8. completed (100%)

Error policy:
- TransientError: retried with exponential backoff (2s * 2**retry) up to
  JOB_MAX_RETRIES attempts, then failed
- PermanentError: failed immediately
- JobCancelledError: provider prediction cancelled, job left cancelled
- Failure or cancellation refunds the reserved credits (GenerationLifecycle)
"""

import time
from typing import Optional

import structlog

from clipforge.core import metrics
from clipforge.core.config import Settings
from clipforge.models.profile import PLANS, PlanType
from clipforge.models.video import GenerationRequest, Prediction, PredictionStatus
from clipforge.queue.job_queue import Job, JobQueue
from clipforge.services.exceptions import (
    JobCancelledError,
    PermanentError,
    PredictionCancelledError,
    PredictionFailedError,
    ServiceError,
    TransientError,
)
from clipforge.services.generation.lifecycle import GenerationLifecycle
from clipforge.services.progress.events import GENERATING_MAX_PERCENT, STAGE_PERCENT, ProgressStage
from clipforge.services.progress.publisher import ProgressPublisher, ProgressTracker
from clipforge.services.prompt_enhancer import PromptEnhancer
from clipforge.services.provider.client import ProviderClient
from clipforge.services.storage import StorageClient

logger = structlog.get_logger(__name__)


def generating_percent(status: PredictionStatus, elapsed: float, estimated: float) -> int:
    """Map prediction status and elapsed time onto the 30-80% band."""
    low = STAGE_PERCENT[ProgressStage.GENERATING]
    if status == PredictionStatus.SUCCEEDED:
        return GENERATING_MAX_PERCENT
    if status == PredictionStatus.STARTING or estimated <= 0:
        return low
    fraction = min(elapsed / estimated, 1.0)
    return min(GENERATING_MAX_PERCENT, low + int((GENERATING_MAX_PERCENT - low) * fraction))


class VideoJobProcessor:
    def __init__(
        self,
        queue: JobQueue,
        lifecycle: GenerationLifecycle,
        publisher: ProgressPublisher,
        provider: ProviderClient,
        storage: StorageClient,
        settings: Settings,
        enhancer: Optional[PromptEnhancer] = None,
    ):
        self.queue = queue
        self.lifecycle = lifecycle
        self.publisher = publisher
        self.provider = provider
        self.storage = storage
        self.settings = settings
        self.enhancer = enhancer

    def backoff_delay(self, retry_count: int) -> float:
        return self.settings.job_backoff_seconds * (2**retry_count)

    async def process(self, job: Job, worker_id: str) -> None:
        """Run one job to a terminal state or a scheduled retry.

        Never raises for job-level failures; those are recorded on the
        generation and announced to subscribers.
        """
        start_time = time.monotonic()
        attempt_number = job.retry_count + 1

        with structlog.contextvars.bound_contextvars(
            generation_id=job.id, trace_id=job.trace_id, worker_id=worker_id
        ):
            generation = await self.lifecycle.start(job.id)
            if generation is None:
                # Cancelled or finished while waiting in the queue
                logger.info("generation.skipped_not_queued")
                await self.queue.release(job.id)
                return

            logger.info("generation.started", attempt_number=attempt_number)
            await self.publisher.emit_job_started(job.id, worker_id)

            tracker = ProgressTracker(self.publisher, job.id)
            request: Optional[GenerationRequest] = None
            prediction: Optional[Prediction] = None
            model = str(job.data.get("request", {}).get("model", "unknown"))

            try:
                await tracker.update(ProgressStage.PROCESSING, 5, "Job started")

                request = GenerationRequest.model_validate(job.data["request"])
                await tracker.update(ProgressStage.VALIDATING, 10, "Validating request")
                self.provider.validate_request(request)

                request = await self._maybe_enhance(job, request, tracker)
                await self._raise_if_cancelled(job)

                await tracker.update(
                    ProgressStage.CREATING_PREDICTION, 20, "Creating prediction"
                )
                prediction = await self.provider.create_prediction(
                    request, webhook_url=self.settings.webhook_url
                )
                await self.lifecycle.bind_prediction(
                    job.id,
                    prediction.id,
                    {"prediction_id": prediction.id, "prompt_used": request.prompt},
                )

                await tracker.update(ProgressStage.GENERATING, 30, "Generating video")
                estimated = self.provider.estimate_time(request.model, request.duration)

                async def on_update(current: Prediction, elapsed: float) -> None:
                    if not await self.queue.heartbeat(job.id, self.settings.job_lock_duration_seconds):
                        if await self.queue.is_cancelled(job.id):
                            raise JobCancelledError("Job cancelled")
                        logger.warning("generation.lease_lost")
                    await tracker.update(
                        ProgressStage.GENERATING,
                        generating_percent(current.status, elapsed, estimated),
                        f"Prediction {current.status.value}",
                    )

                prediction = await self.provider.poll_prediction(
                    prediction.id,
                    timeout=self.settings.prediction_timeout_seconds,
                    interval=self.settings.prediction_poll_interval_seconds,
                    on_update=on_update,
                )

                source_url = prediction.output_url
                if not source_url:
                    raise PredictionFailedError("Prediction succeeded without an output URL")

                await tracker.update(ProgressStage.UPLOADING, 85, "Saving video")
                result_url = await self.storage.persist_or_fallback(
                    source_url, job.user_id, job.id
                )

                await tracker.update(ProgressStage.FINALIZING, 95, "Finalizing")
                await self._raise_if_cancelled(job)
                await tracker.update(ProgressStage.COMPLETED, 100, "Video ready")
                await self.lifecycle.complete(
                    job.id,
                    result_url,
                    {"provider_url": source_url, "metrics": prediction.metrics},
                )

                duration = time.monotonic() - start_time
                metrics.JOB_DURATION.labels(model=model).observe(duration)
                logger.info(
                    "generation.succeeded",
                    duration_seconds=round(duration, 2),
                    attempt_number=attempt_number,
                )

            except JobCancelledError:
                await self._handle_cancel(job, request, prediction)

            except PredictionCancelledError as e:
                # Cancelled on the provider side, not through us
                logger.warning("generation.prediction_cancelled", error=str(e))
                await self._handle_cancel(job, request, None)

            except TransientError as e:
                if request is not None:
                    await self.provider.forget_prediction(request)
                await self._handle_transient(job, e, model)

            except PermanentError as e:
                if request is not None:
                    await self.provider.forget_prediction(request)
                logger.error(
                    "generation.permanent_error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    attempt_number=attempt_number,
                )
                await self.lifecycle.fail(job.id, str(e))

            except Exception as e:
                # Unexpected errors are permanent to avoid infinite retries
                logger.exception("generation.unexpected_error", error_type=type(e).__name__)
                await self.lifecycle.fail(job.id, f"Unexpected error: {e}")

    async def _maybe_enhance(
        self, job: Job, request: GenerationRequest, tracker: ProgressTracker
    ) -> GenerationRequest:
        if not request.enhance_prompt or self.enhancer is None:
            return request
        try:
            plan = PLANS[PlanType(job.plan)]
        except ValueError:
            return request
        if not plan.prompt_enhancement:
            return request

        await tracker.update(ProgressStage.ENHANCING, 15, "Enhancing prompt")
        enhanced = await self.enhancer.enhance(request.prompt, request.style)
        if enhanced == request.prompt:
            return request
        return request.model_copy(update={"prompt": enhanced})

    async def _raise_if_cancelled(self, job: Job) -> None:
        if await self.queue.is_cancelled(job.id):
            raise JobCancelledError("Job cancelled")

    async def _handle_cancel(
        self,
        job: Job,
        request: Optional[GenerationRequest],
        prediction: Optional[Prediction],
    ) -> None:
        if prediction is not None and not prediction.status.is_terminal:
            try:
                await self.provider.cancel_prediction(prediction.id)
            except ServiceError as e:
                logger.warning("generation.provider_cancel_failed", error=str(e))
        if request is not None:
            # A cancelled prediction must never be handed to an identical request
            await self.provider.forget_prediction(request)

        await self.queue.release(job.id)
        # Cancellation came from the provider when this wins; close the queue record too
        await self.lifecycle.cancel_and_close(job.id)
        logger.info("generation.cancelled_by_request")

    async def _handle_transient(self, job: Job, error: TransientError, model: str) -> None:
        attempt_number = job.retry_count + 1
        if attempt_number < self.settings.job_max_retries:
            delay = self.backoff_delay(job.retry_count)
            metrics.JOB_RETRIES.labels(model=model).inc()
            logger.warning(
                "generation.retry",
                error_type=type(error).__name__,
                error_message=str(error),
                attempt_number=attempt_number,
                retry_in_seconds=delay,
            )
            await self.lifecycle.schedule_retry(job.id, attempt_number, str(error), delay)
            return

        logger.error(
            "generation.retries_exhausted",
            error_type=type(error).__name__,
            error_message=str(error),
            attempt_number=attempt_number,
        )
        await self.lifecycle.fail(
            job.id, f"Failed after {attempt_number} attempts: {error}"
        )
