"""Explicit wiring of the service graph.

Everything that holds a connection (engine, Redis client, HTTP clients) is
created here once per process and passed down; nothing is a module global.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from clipforge.core.config import Settings
from clipforge.core.database import create_engine, setup_db_session
from clipforge.queue.job_queue import JobQueue
from clipforge.services.admission import AdmissionService
from clipforge.services.cache.local import LocalCache
from clipforge.services.cache.manager import CacheManager
from clipforge.services.cache.remote import RemoteCache, create_redis
from clipforge.services.generation.lifecycle import GenerationLifecycle
from clipforge.services.progress.gateway import ProgressGateway
from clipforge.services.progress.publisher import ProgressPublisher
from clipforge.services.prompt_enhancer import PromptEnhancer
from clipforge.services.provider.client import ProviderClient
from clipforge.services.provider.rate_limiter import RollingWindowLimiter, TokenBucket
from clipforge.services.storage import StorageClient
from clipforge.uow import create_uow_factory
from clipforge.workers.pool import WorkerPool
from clipforge.workers.video_worker import VideoJobProcessor


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    uow_factory: object
    redis: Redis
    cache: CacheManager
    publisher: ProgressPublisher
    queue: JobQueue
    lifecycle: GenerationLifecycle
    provider: ProviderClient
    storage: StorageClient
    enhancer: Optional[PromptEnhancer]
    admission: AdmissionService
    gateway: ProgressGateway
    processor: VideoJobProcessor

    def build_worker_pool(self, worker_id: Optional[str] = None) -> WorkerPool:
        s = self.settings
        return WorkerPool(
            queue=self.queue,
            processor=self.processor,
            lifecycle=self.lifecycle,
            concurrency=s.queue_max_concurrent,
            limiter=RollingWindowLimiter(
                s.worker_rate_limit_max, s.worker_rate_limit_window_seconds
            ),
            poll_interval=s.queue_poll_interval_seconds,
            lease_seconds=s.job_lock_duration_seconds,
            stalled_interval=s.stalled_interval_seconds,
            max_stalled_count=s.max_stalled_count,
            worker_id=worker_id,
        )

    async def aclose(self) -> None:
        await self.provider.aclose()
        await self.storage.aclose()
        await self.redis.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    redis: Optional[Redis] = None,
    engine: Optional[AsyncEngine] = None,
    provider_http: Optional[httpx.AsyncClient] = None,
    storage_http: Optional[httpx.AsyncClient] = None,
    enhancer: Optional[PromptEnhancer] = None,
) -> ServiceContainer:
    """Build the service graph. Tests inject fake Redis, engine and transports."""
    engine = engine or create_engine(settings.database_url, settings.db_pool_size)
    session_factory = setup_db_session(settings.database_url, engine=engine)
    uow_factory = create_uow_factory(session_factory)

    redis = redis or create_redis(settings)
    cache = CacheManager(
        LocalCache(settings.cache_max_keys, settings.cache_default_ttl_seconds),
        RemoteCache(redis, settings.cache_namespace),
        default_ttl=settings.cache_default_ttl_seconds,
    )
    publisher = ProgressPublisher(redis, settings.progress_snapshot_ttl_seconds)
    queue = JobQueue(
        redis,
        name=settings.queue_name,
        publisher=publisher,
        keep_completed=settings.keep_completed_jobs,
        keep_failed=settings.keep_failed_jobs,
        keep_cancelled=settings.keep_cancelled_jobs,
    )
    lifecycle = GenerationLifecycle(uow_factory, queue, publisher)

    provider = ProviderClient(
        api_token=settings.replicate_api_token,
        base_url=settings.replicate_api_url,
        cache=cache,
        bucket=TokenBucket(settings.provider_bucket_capacity, settings.provider_refill_per_second),
        http_client=provider_http,
        max_retries=settings.provider_max_retries,
        retry_delay=settings.provider_retry_delay_seconds,
        timeout=settings.provider_request_timeout_seconds,
    )
    storage = StorageClient(
        settings.storage_url,
        settings.storage_service_key,
        settings.storage_bucket,
        http_client=storage_http,
    )
    if enhancer is None and settings.replicate_api_token:
        enhancer = PromptEnhancer(settings.replicate_api_token, settings.prompt_enhancer_model)

    admission = AdmissionService(
        uow_factory,
        queue,
        cache,
        publisher,
        lifecycle,
        rate_limit_max=settings.admission_rate_limit_max,
        rate_limit_window=settings.admission_rate_limit_window_seconds,
    )
    gateway = ProgressGateway(redis, publisher, uow_factory, cancel_handler=lifecycle.request_cancel)
    processor = VideoJobProcessor(
        queue, lifecycle, publisher, provider, storage, settings, enhancer=enhancer
    )

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        uow_factory=uow_factory,
        redis=redis,
        cache=cache,
        publisher=publisher,
        queue=queue,
        lifecycle=lifecycle,
        provider=provider,
        storage=storage,
        enhancer=enhancer,
        admission=admission,
        gateway=gateway,
        processor=processor,
    )
