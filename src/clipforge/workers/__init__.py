"""Background workers for video generation jobs."""

from clipforge.workers.pool import WorkerPool
from clipforge.workers.video_worker import VideoJobProcessor

__all__ = [
    "VideoJobProcessor",
    "WorkerPool",
]
