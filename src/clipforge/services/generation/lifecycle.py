"""Terminal side effects of a generation, applied exactly once.

The worker, the webhook receiver and user cancellation can all try to finish
the same generation. Each path claims the terminal state with a
compare-and-set update on the generations row; only the winner settles or
refunds credits and publishes the terminal event. The queue record is then
moved to its terminal set (a no-op if it is already there).
"""

from typing import Any, Optional

import structlog

from clipforge.core import metrics
from clipforge.models.generation import Generation, GenerationStatus, utcnow
from clipforge.queue.job_queue import JobQueue
from clipforge.services.exceptions import (
    InvalidJobStateError,
    JobNotFoundError,
)
from clipforge.services.progress.publisher import ProgressPublisher
from clipforge.uow import UnitOfWork

logger = structlog.get_logger()


class GenerationLifecycle:
    def __init__(self, uow_factory, queue: JobQueue, publisher: ProgressPublisher):
        self.uow_factory = uow_factory
        self.queue = queue
        self.publisher = publisher

    async def _refund(self, uow: UnitOfWork, generation_id: str) -> Optional[int]:
        """Release the reservation and credit back exactly ``credits_charged``."""
        if not await uow.generations.release_credit_reservation(generation_id):
            return None
        generation = await uow.generations.get_by_id(generation_id)
        if generation is None or generation.credits_charged <= 0:
            return None
        balance = await uow.profiles.refund(generation.user_id, generation.credits_charged)
        logger.info(
            "credits.refunded",
            generation_id=generation_id,
            user_id=generation.user_id,
            amount=generation.credits_charged,
            balance=balance,
        )
        return balance

    async def start(self, generation_id: str) -> Optional[Generation]:
        """Claim queued → processing. None if the generation left the queued state."""
        async with await self.uow_factory() as uow:
            if not await uow.generations.transition(
                generation_id, GenerationStatus.PROCESSING, started_at=utcnow()
            ):
                return None
            return await uow.generations.get_by_id(generation_id)

    async def bind_prediction(
        self, generation_id: str, prediction_id: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        async with await self.uow_factory() as uow:
            await uow.generations.set_prediction_id(generation_id, prediction_id)
            if details:
                generation = await uow.generations.get_by_id(generation_id)
                if generation is not None:
                    await uow.generations.update_details(generation, **details)

    async def complete(
        self, generation_id: str, result_url: str, details: Optional[dict[str, Any]] = None
    ) -> bool:
        """Claim completed, settle the credit reservation, announce the result."""
        async with await self.uow_factory() as uow:
            won = await uow.generations.transition(
                generation_id,
                GenerationStatus.COMPLETED,
                result_url=result_url,
                error=None,
                completed_at=utcnow(),
            )
            if won:
                await uow.generations.settle_credits(generation_id)
                generation = await uow.generations.get_by_id(generation_id)
                if details and generation is not None:
                    await uow.generations.update_details(generation, **details)

        if won:
            model = (generation.request or {}).get("model", "unknown") if generation else "unknown"
            metrics.JOBS_TOTAL.labels(status="completed", model=model).inc()
            logger.info("generation.completed", generation_id=generation_id, result_url=result_url)
            await self.publisher.emit_job_completed(generation_id, result_url)
        else:
            logger.info("generation.complete_skipped", generation_id=generation_id)

        await self.queue.complete(generation_id)
        return won

    async def fail(self, generation_id: str, error: str, update_queue: bool = True) -> bool:
        """Claim failed and refund the reservation.

        ``update_queue=False`` is for jobs that never reached the queue.
        """
        async with await self.uow_factory() as uow:
            won = await uow.generations.transition(
                generation_id,
                GenerationStatus.FAILED,
                error=error[:1000],
                completed_at=utcnow(),
            )
            if won:
                await self._refund(uow, generation_id)
                generation = await uow.generations.get_by_id(generation_id)

        if won:
            model = (generation.request or {}).get("model", "unknown") if generation else "unknown"
            metrics.JOBS_TOTAL.labels(status="failed", model=model).inc()
            logger.error("generation.failed", generation_id=generation_id, error=error)
            await self.publisher.emit_job_failed(generation_id, error)

        if update_queue:
            await self.queue.fail(generation_id, error)
        return won

    async def cancel(self, generation_id: str) -> bool:
        """Claim cancelled and refund the reservation. Queue side is up to the caller."""
        async with await self.uow_factory() as uow:
            won = await uow.generations.transition(
                generation_id, GenerationStatus.CANCELLED, completed_at=utcnow()
            )
            if won:
                await self._refund(uow, generation_id)

        if won:
            metrics.JOBS_TOTAL.labels(status="cancelled", model="unknown").inc()
            logger.info("generation.cancelled", generation_id=generation_id)
        return won

    async def request_cancel(self, user_id: str, generation_id: str) -> None:
        """User-initiated cancel of a queued or processing generation.

        Raises:
            JobNotFoundError: Generation missing or owned by another user
            InvalidJobStateError: Generation already terminal
        """
        async with await self.uow_factory() as uow:
            generation = await uow.generations.get_for_user(generation_id, user_id)
        if generation is None:
            raise JobNotFoundError(f"Generation {generation_id} not found")
        if generation.status.is_terminal:
            raise InvalidJobStateError(
                f"Cannot cancel generation in status {generation.status.value}"
            )

        if not await self.cancel_and_close(generation_id):
            raise InvalidJobStateError("Generation finished before it could be cancelled")

    async def cancel_and_close(self, generation_id: str) -> bool:
        """Cancel the generation and move its queue record to the cancelled set."""
        if not await self.cancel(generation_id):
            return False
        try:
            # Emits job:cancelled
            await self.queue.cancel(generation_id)
        except (JobNotFoundError, InvalidJobStateError):
            await self.publisher.emit_job_cancelled(generation_id)
        return True

    async def schedule_retry(
        self, generation_id: str, retry_count: int, error: str, delay: float
    ) -> bool:
        """Return a processing generation to the queue after a transient failure."""
        async with await self.uow_factory() as uow:
            moved = await uow.generations.transition(
                generation_id,
                GenerationStatus.QUEUED,
                retry_count=retry_count,
                error=error[:1000],
            )
        if not moved:
            return False

        await self.queue.retry(generation_id, delay, error)
        await self.publisher.emit_job_failed(generation_id, error, retry_in=int(delay))
        logger.warning(
            "generation.retry_scheduled",
            generation_id=generation_id,
            retry_count=retry_count,
            delay_seconds=delay,
            error=error,
        )
        return True

    async def requeue_stalled(self, generation_id: str) -> bool:
        """Mirror a stall-recovery requeue onto the generations row."""
        async with await self.uow_factory() as uow:
            moved = await uow.generations.transition(generation_id, GenerationStatus.QUEUED)
        if moved:
            position = await self.queue.position(generation_id)
            await self.publisher.emit_job_queued(generation_id, position)
        return moved
