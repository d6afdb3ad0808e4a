"""Priority job queue on Redis."""

from clipforge.queue.job_queue import Job, JobHandle, JobQueue, JobStatus, QueueStats, StallRecovery

__all__ = [
    "Job",
    "JobHandle",
    "JobQueue",
    "JobStatus",
    "QueueStats",
    "StallRecovery",
]
