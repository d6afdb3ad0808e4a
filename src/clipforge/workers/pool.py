"""Worker pool: bounded concurrent job execution with stall recovery.

The pool dequeues while it has a free slot and the rolling start limiter
allows it, runs each job in its own task, and sweeps expired leases on a fixed
interval. ``run`` loops until ``stop`` is called; it is meant to be wrapped in
``create_resilient_worker`` (app) or run by the standalone worker CLI.
"""

import asyncio
import os
import socket
from typing import Optional

import structlog

from clipforge.core import metrics
from clipforge.queue.job_queue import Job, JobQueue, STALLED_ERROR
from clipforge.services.exceptions import StoreUnavailableError
from clipforge.services.generation.lifecycle import GenerationLifecycle
from clipforge.services.provider.rate_limiter import RollingWindowLimiter
from clipforge.workers.video_worker import VideoJobProcessor

logger = structlog.get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        processor: VideoJobProcessor,
        lifecycle: GenerationLifecycle,
        concurrency: int = 3,
        limiter: Optional[RollingWindowLimiter] = None,
        poll_interval: float = 1.0,
        lease_seconds: float = 300,
        stalled_interval: float = 30.0,
        max_stalled_count: int = 1,
        worker_id: Optional[str] = None,
        shutdown_grace_seconds: float = 30.0,
    ):
        self.queue = queue
        self.processor = processor
        self.lifecycle = lifecycle
        self.concurrency = concurrency
        self.limiter = limiter or RollingWindowLimiter(10, 60.0)
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.stalled_interval = stalled_interval
        self.max_stalled_count = max_stalled_count
        self.worker_id = worker_id or default_worker_id()
        self.shutdown_grace_seconds = shutdown_grace_seconds

        self._slots = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._counter = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _run_job(self, job: Job, slot_id: str) -> None:
        metrics.ACTIVE_JOBS.inc()
        try:
            await self.processor.process(job, slot_id)
        except StoreUnavailableError as e:
            # Lease expiry returns the job to the queue once Redis is back
            logger.error("worker.store_unavailable", job_id=job.id, error=str(e))
        except Exception:
            logger.exception("worker.job_crashed", job_id=job.id)
        finally:
            metrics.ACTIVE_JOBS.dec()
            self._slots.release()

    async def _release_abandoned(self, acquire: asyncio.Future) -> None:
        acquire.cancel()
        await asyncio.gather(acquire, return_exceptions=True)
        if not acquire.cancelled():
            # The acquire won the race with its cancellation
            self._slots.release()

    async def _acquire_slot(self) -> bool:
        """Wait for a free slot. False if ``stop`` was called first."""
        acquire = asyncio.ensure_future(self._slots.acquire())
        stopping = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({acquire, stopping}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            stopping.cancel()
            await self._release_abandoned(acquire)
            raise
        stopping.cancel()

        if acquire.done() and not self._stopping.is_set():
            return True
        await self._release_abandoned(acquire)
        return False

    async def poll_once(self) -> Optional[asyncio.Task]:
        """Try to start one job. Returns its task, or None if nothing started."""
        if not await self._acquire_slot():
            return None
        started = False
        try:
            if self._stopping.is_set() or self.limiter.time_until_available() > 0:
                return None
            job = await self.queue.dequeue(self.worker_id, self.lease_seconds)
            if job is None:
                return None
            self.limiter.record()
            self._counter += 1
            slot_id = f"{self.worker_id}:{self._counter}"
            task = asyncio.create_task(self._run_job(job, slot_id), name=f"job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started = True
            return task
        finally:
            if not started:
                self._slots.release()

    async def recover_stalled(self) -> None:
        """Requeue or fail jobs whose lease expired (crashed or hung workers)."""
        recovery = await self.queue.recover_stalled(self.max_stalled_count)
        for job_id in recovery.requeued:
            await self.lifecycle.requeue_stalled(job_id)
        for job_id in recovery.failed:
            await self.lifecycle.fail(job_id, STALLED_ERROR)

        stats = await self.queue.stats()
        metrics.QUEUE_WAITING.set(stats.waiting)

    async def _stall_sweeper(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.recover_stalled()
            except StoreUnavailableError as e:
                logger.warning("worker.stall_sweep_failed", error=str(e))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.stalled_interval)
            except asyncio.TimeoutError:
                pass

    async def run(self) -> None:
        """Main loop until ``stop`` is called."""
        logger.info(
            "worker.started",
            worker_id=self.worker_id,
            concurrency=self.concurrency,
            rate_limit_max=self.limiter.max_events,
            rate_limit_window=self.limiter.window,
        )
        self._stopping.clear()
        sweeper = asyncio.create_task(self._stall_sweeper(), name="stall-sweeper")

        try:
            while not self._stopping.is_set():
                try:
                    task = await self.poll_once()
                except StoreUnavailableError as e:
                    logger.warning("worker.dequeue_failed", error=str(e))
                    task = None

                if task is None:
                    wait = max(self.poll_interval, self.limiter.time_until_available())
                    try:
                        await asyncio.wait_for(self._stopping.wait(), timeout=wait)
                    except asyncio.TimeoutError:
                        pass
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            await self._drain_in_flight()
            logger.info("worker.stopped", worker_id=self.worker_id)

    async def _drain_in_flight(self) -> None:
        if not self._tasks:
            return
        logger.info("worker.waiting_for_jobs", in_flight=len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=self.shutdown_grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            # Cancelled jobs keep their lease and are picked up by stall recovery
            await asyncio.gather(*pending, return_exceptions=True)

    def stop(self) -> None:
        self._stopping.set()
