"""Admission control tests.

Covers plan gating, credit debit and the all-or-nothing guarantee: a rejected
request leaves the balance untouched and nothing is enqueued.
"""

import pytest

from clipforge.models.generation import CreditStatus, GenerationStatus
from clipforge.models.profile import UNLIMITED_CREDITS, PlanType
from clipforge.models.video import GenerationRequest, VideoModel, VideoQuality
from clipforge.services.exceptions import (
    GenerationValidationError,
    InsufficientCreditsError,
    PlanNotAllowedError,
    ProfileNotFoundError,
    RateLimitedError,
)

from conftest import create_profile, get_balance


@pytest.mark.asyncio
async def test_admission_debits_and_enqueues(services, uow_factory):
    await create_profile(uow_factory, credits=100)

    result = await services.admission.submit(
        "user-1", GenerationRequest(prompt="A fox in the snow", duration=5), trace_id="vid_trace"
    )

    assert result.credits_charged == 5
    assert result.remaining_credits == 95
    assert result.queue_position == 1
    assert result.model_used == "wan2"
    assert result.trace_id == "vid_trace"
    assert result.generation_id.startswith("gen_")
    assert result.job_id == result.generation_id
    assert await get_balance(uow_factory, "user-1") == 95

    async with await uow_factory() as uow:
        generation = await uow.generations.get_by_id(result.generation_id)
    assert generation.status == GenerationStatus.QUEUED
    assert generation.credits_charged == 5
    assert generation.credit_status == CreditStatus.RESERVED
    assert generation.priority == 5

    job = await services.queue.get(result.generation_id)
    assert job is not None
    assert job.priority == 5

    snapshot = await services.publisher.snapshot(result.generation_id)
    assert snapshot.event == "job:queued"
    assert snapshot.payload.position == 1


@pytest.mark.asyncio
async def test_insufficient_credits_leaves_balance_untouched(services, uow_factory):
    await create_profile(uow_factory, credits=3)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await services.admission.submit("user-1", GenerationRequest(prompt="A fox", duration=5))

    assert exc_info.value.status_code == 402
    assert exc_info.value.details == {"required": 5, "available": 3}
    assert await get_balance(uow_factory, "user-1") == 3
    assert (await services.queue.stats()).waiting == 0


@pytest.mark.asyncio
async def test_unlimited_balance_is_unmetered(services, uow_factory):
    await create_profile(uow_factory, "pro-user", plan=PlanType.PRO, credits=UNLIMITED_CREDITS)

    request = GenerationRequest(
        prompt="A fox", duration=15, model=VideoModel.WAN2, quality=VideoQuality.HIGH
    )

    result = await services.admission.submit("pro-user", request)

    assert result.remaining_credits == UNLIMITED_CREDITS
    assert await get_balance(uow_factory, "pro-user") == UNLIMITED_CREDITS
    async with await uow_factory() as uow:
        generation = await uow.generations.get_by_id(result.generation_id)
    assert generation.credit_status == CreditStatus.UNMETERED
    assert generation.credits_charged == 0
    assert generation.priority == 1


@pytest.mark.asyncio
async def test_free_plan_has_no_video(services, uow_factory):
    await create_profile(uow_factory, plan=PlanType.FREE, credits=50)

    with pytest.raises(PlanNotAllowedError) as exc_info:
        await services.admission.submit("user-1", GenerationRequest(prompt="A fox", duration=3))

    assert exc_info.value.status_code == 403
    assert await get_balance(uow_factory, "user-1") == 50


@pytest.mark.asyncio
async def test_duration_above_plan_maximum(services, uow_factory):
    await create_profile(uow_factory, plan=PlanType.STARTER, credits=100)

    with pytest.raises(PlanNotAllowedError) as exc_info:
        await services.admission.submit("user-1", GenerationRequest(prompt="A fox", duration=15))

    assert exc_info.value.details == {"plan": "starter", "max_duration": 5}
    assert await get_balance(uow_factory, "user-1") == 100


@pytest.mark.asyncio
async def test_model_constraints_checked_before_debit(services, uow_factory):
    await create_profile(uow_factory, plan=PlanType.STARTER, credits=100)

    with pytest.raises(GenerationValidationError):
        await services.admission.submit(
            "user-1",
            GenerationRequest(prompt="A fox", duration=5, model=VideoModel.GEN2, aspect_ratio="1:1"),
        )

    assert await get_balance(uow_factory, "user-1") == 100


@pytest.mark.asyncio
async def test_missing_profile(services):
    with pytest.raises(ProfileNotFoundError):
        await services.admission.submit("ghost", GenerationRequest(prompt="A fox"))


@pytest.mark.asyncio
async def test_rate_limit_reports_retry_after(services, uow_factory):
    await create_profile(uow_factory, credits=1000)
    services.admission.rate_limit_max = 2

    for _ in range(2):
        await services.admission.submit("user-1", GenerationRequest(prompt="A fox", duration=3))

    with pytest.raises(RateLimitedError) as exc_info:
        await services.admission.submit("user-1", GenerationRequest(prompt="A fox", duration=3))

    assert exc_info.value.status_code == 429
    assert 0 < exc_info.value.retry_after <= 60
    assert await get_balance(uow_factory, "user-1") == 1000 - 2 * 3


@pytest.mark.asyncio
async def test_positions_follow_plan_priority(services, uow_factory):
    await create_profile(uow_factory, "starter", plan=PlanType.STARTER, credits=100)
    await create_profile(uow_factory, "pro", plan=PlanType.PRO, credits=UNLIMITED_CREDITS)

    first = await services.admission.submit("starter", GenerationRequest(prompt="A", duration=3))
    second = await services.admission.submit("pro", GenerationRequest(prompt="B", duration=3))

    assert first.queue_position == 1
    assert second.queue_position == 1
    assert await services.queue.position(first.generation_id) == 2
