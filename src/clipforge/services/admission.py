"""Admission control for video generation requests.

A request is admitted only if the user is under the submission rate limit,
their plan allows video at the requested duration, the request fits the
selected model, and their balance covers the cost. The debit and the
generation row are written in one transaction; the job is enqueued only after
that commit, and a failed enqueue refunds the debit.
"""

import secrets
import string
import time
from dataclasses import dataclass
from typing import Optional

import structlog

from clipforge.models.generation import CreditStatus, Generation, GenerationStatus
from clipforge.models.profile import PLANS, UNLIMITED_CREDITS, PlanType
from clipforge.models.video import GenerationRequest
from clipforge.queue.job_queue import JobQueue
from clipforge.services.cache.manager import CacheManager
from clipforge.services.exceptions import (
    InsufficientCreditsError,
    PlanNotAllowedError,
    ProfileNotFoundError,
    RateLimitedError,
    StoreUnavailableError,
)
from clipforge.services.generation.lifecycle import GenerationLifecycle
from clipforge.services.progress.publisher import ProgressPublisher
from clipforge.services.video import catalog

logger = structlog.get_logger()

_ALPHABET = string.ascii_lowercase + string.digits


def _suffix(length: int = 7) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def new_generation_id() -> str:
    return f"gen_{int(time.time() * 1000)}_{_suffix()}"


def new_trace_id() -> str:
    return f"vid_{int(time.time() * 1000)}_{_suffix()}"


@dataclass(frozen=True)
class AdmissionResult:
    generation_id: str
    job_id: str
    estimated_time_seconds: int
    queue_position: Optional[int]
    model_used: str
    credits_charged: int
    remaining_credits: int
    trace_id: str


class AdmissionService:
    def __init__(
        self,
        uow_factory,
        queue: JobQueue,
        cache: CacheManager,
        publisher: ProgressPublisher,
        lifecycle: GenerationLifecycle,
        rate_limit_max: int = 10,
        rate_limit_window: int = 60,
    ):
        self.uow_factory = uow_factory
        self.queue = queue
        self.cache = cache
        self.publisher = publisher
        self.lifecycle = lifecycle
        self.rate_limit_max = rate_limit_max
        self.rate_limit_window = rate_limit_window

    async def _check_rate_limit(self, user_id: str) -> None:
        key = f"ratelimit:video:{user_id}"
        count = await self.cache.increment(key, 1, self.rate_limit_window)
        # 0 means the counter store is unreachable; admission stays open
        if count > self.rate_limit_max:
            ttl = await self.cache.get_ttl(key)
            retry_after = ttl if ttl > 0 else self.rate_limit_window
            logger.info("admission.rate_limited", user_id=user_id, retry_after=retry_after)
            raise RateLimitedError(
                "Too many video requests, please wait before retrying",
                retry_after=retry_after,
                details={"retry_after": retry_after},
            )

    async def submit(
        self, user_id: str, request: GenerationRequest, trace_id: Optional[str] = None
    ) -> AdmissionResult:
        """Admit, debit and enqueue one generation.

        Raises:
            RateLimitedError: More than rate_limit_max submissions in the window
            ProfileNotFoundError: No profile for user_id
            PlanNotAllowedError: Plan has no video or duration exceeds plan max
            GenerationValidationError: Request violates model constraints
            InsufficientCreditsError: Balance does not cover the cost
            StoreUnavailableError: Queue unreachable (the debit is refunded)
        """
        trace_id = trace_id or new_trace_id()

        await self._check_rate_limit(user_id)

        async with await self.uow_factory() as uow:
            profile = await uow.profiles.get_by_id(user_id)
        if profile is None:
            raise ProfileNotFoundError(f"Profile {user_id} not found")

        plan = PLANS.get(PlanType(profile.plan), PLANS[PlanType.FREE])
        if not plan.video:
            raise PlanNotAllowedError(
                "Video generation is not available on the free plan",
                details={"plan": plan.name.value},
            )
        if request.duration > plan.video_max_seconds:
            raise PlanNotAllowedError(
                f"The {plan.name.value} plan allows videos of "
                f"{plan.video_max_seconds} seconds at most",
                details={"plan": plan.name.value, "max_duration": plan.video_max_seconds},
            )

        catalog.validate_request(request)
        credits = catalog.calculate_credits(request.model, request.duration, request.quality)
        generation_id = new_generation_id()

        async with await self.uow_factory() as uow:
            debit = await uow.profiles.debit(user_id, credits)
            if not debit.success:
                raise InsufficientCreditsError(
                    f"{credits} credits required, {debit.remaining or 0} available",
                    details={"required": credits, "available": debit.remaining or 0},
                )

            await uow.generations.add(
                Generation(
                    id=generation_id,
                    user_id=user_id,
                    prompt=request.prompt.strip(),
                    request=request.model_dump(mode="json"),
                    status=GenerationStatus.QUEUED,
                    priority=plan.priority,
                    trace_id=trace_id,
                    credits_charged=0 if debit.unlimited else credits,
                    credit_status=CreditStatus.UNMETERED if debit.unlimited else CreditStatus.RESERVED,
                    details={"model": request.model.value, "credits": credits},
                )
            )

        remaining = UNLIMITED_CREDITS if debit.unlimited else (debit.remaining or 0)
        logger.info(
            "admission.accepted",
            generation_id=generation_id,
            user_id=user_id,
            credits=credits,
            remaining_credits=remaining,
        )

        try:
            handle = await self.queue.enqueue(
                job_id=generation_id,
                user_id=user_id,
                data={"request": request.model_dump(mode="json")},
                priority=plan.priority,
                plan=plan.name.value,
                trace_id=trace_id,
            )
        except StoreUnavailableError:
            logger.error("admission.enqueue_failed", generation_id=generation_id)
            await self.lifecycle.fail(generation_id, "Queue unavailable", update_queue=False)
            raise

        await self.publisher.emit_job_queued(generation_id, handle.position)

        return AdmissionResult(
            generation_id=generation_id,
            job_id=handle.job_id,
            estimated_time_seconds=catalog.estimate_time(request.model, request.duration),
            queue_position=handle.position,
            model_used=request.model.value,
            credits_charged=credits,
            remaining_credits=remaining,
            trace_id=trace_id,
        )
