"""Publishes job progress events to Redis pub/sub and keeps the latest snapshot."""

from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from clipforge.services.progress.events import (
    CancelledPayload,
    CompletedPayload,
    FailedPayload,
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobProgress,
    JobQueued,
    JobStarted,
    ProgressEvent,
    ProgressPayload,
    ProgressStage,
    QueuedPayload,
    StartedPayload,
    channel_for,
    parse_event,
    snapshot_key,
)

logger = structlog.get_logger()


class ProgressPublisher:
    """Emits events on ``video:job:<id>`` and stores them at ``video:status:<id>``.

    Delivery is best effort: a Redis failure is logged and the job continues.
    """

    def __init__(self, redis: Redis, snapshot_ttl: int = 3600):
        self.redis = redis
        self.snapshot_ttl = snapshot_ttl

    async def publish(self, event: ProgressEvent) -> bool:
        data = event.to_json()
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(snapshot_key(event.generation_id), data, ex=self.snapshot_ttl)
                pipe.publish(channel_for(event.generation_id), data)
                await pipe.execute()
        except RedisError as e:
            logger.warning(
                "progress.publish_failed",
                generation_id=event.generation_id,
                progress_event=event.event,
                error=str(e),
            )
            return False
        return True

    async def snapshot(self, generation_id: str) -> Optional[ProgressEvent]:
        """Latest event for a generation, None if expired or never published."""
        raw = await self.redis.get(snapshot_key(generation_id))
        if raw is None:
            return None
        return parse_event(raw)

    async def emit_job_queued(self, generation_id: str, position: Optional[int]) -> bool:
        return await self.publish(
            JobQueued(
                generation_id=generation_id,
                payload=QueuedPayload(generation_id=generation_id, position=position),
            )
        )

    async def emit_job_started(self, generation_id: str, worker_id: str) -> bool:
        return await self.publish(
            JobStarted(
                generation_id=generation_id,
                payload=StartedPayload(generation_id=generation_id, worker_id=worker_id),
            )
        )

    async def emit_job_progress(
        self, generation_id: str, percent: int, stage: ProgressStage, message: str = ""
    ) -> bool:
        return await self.publish(
            JobProgress(
                generation_id=generation_id,
                payload=ProgressPayload(
                    generation_id=generation_id, percent=percent, stage=stage, message=message
                ),
            )
        )

    async def emit_job_completed(self, generation_id: str, video_url: str) -> bool:
        return await self.publish(
            JobCompleted(
                generation_id=generation_id,
                payload=CompletedPayload(generation_id=generation_id, video_url=video_url),
            )
        )

    async def emit_job_failed(
        self, generation_id: str, error: str, retry_in: Optional[int] = None
    ) -> bool:
        return await self.publish(
            JobFailed(
                generation_id=generation_id,
                payload=FailedPayload(generation_id=generation_id, error=error, retry_in=retry_in),
            )
        )

    async def emit_job_cancelled(self, generation_id: str) -> bool:
        return await self.publish(
            JobCancelled(
                generation_id=generation_id,
                payload=CancelledPayload(generation_id=generation_id),
            )
        )


class ProgressTracker:
    """Per-job progress emitter that never lets the percentage go backwards."""

    def __init__(self, publisher: ProgressPublisher, generation_id: str):
        self.publisher = publisher
        self.generation_id = generation_id
        self.percent = 0
        self.stage: Optional[ProgressStage] = None

    async def update(self, stage: ProgressStage, percent: int, message: str = "") -> None:
        percent = max(self.percent, min(100, percent))
        if stage == self.stage and percent == self.percent:
            return
        self.percent = percent
        self.stage = stage
        await self.publisher.emit_job_progress(self.generation_id, percent, stage, message)
