"""Repository layer tests.

Tests focus on the conditional updates that make credits and state changes
race-safe:
- Decrement-if-sufficient debit (metered and unlimited balances)
- Refund only touches metered balances
- Compare-and-set status transitions and credit reservation release
- Webhook delivery marker uniqueness
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from clipforge.models.generation import CreditStatus, Generation, GenerationStatus
from clipforge.models.profile import UNLIMITED_CREDITS, PlanType, Profile
from clipforge.models.webhook_delivery import WebhookDelivery
from clipforge.repositories.generation import GenerationRepository
from clipforge.repositories.profile import ProfileRepository
from clipforge.repositories.webhook_delivery import WebhookDeliveryRepository


def make_generation(generation_id: str = "gen_1", user_id: str = "user-1", **overrides):
    fields = dict(
        id=generation_id,
        user_id=user_id,
        prompt="A fox",
        request={"prompt": "A fox", "model": "wan2"},
        trace_id="vid_1",
        credits_charged=5,
    )
    fields.update(overrides)
    return Generation(**fields)


@pytest.mark.asyncio
async def test_debit_decrements_when_sufficient(session):
    repo = ProfileRepository(session)
    await repo.add(Profile(id="user-1", plan=PlanType.STARTER, credits=10))

    result = await repo.debit("user-1", 4)

    assert result.success
    assert result.remaining == 6
    assert not result.unlimited


@pytest.mark.asyncio
async def test_debit_rejected_when_insufficient(session):
    repo = ProfileRepository(session)
    await repo.add(Profile(id="user-1", plan=PlanType.STARTER, credits=3))

    result = await repo.debit("user-1", 5)

    assert not result.success
    assert result.remaining == 3
    session.expire_all()
    assert (await repo.get_by_id("user-1")).credits == 3


@pytest.mark.asyncio
async def test_debit_unlimited_balance_untouched(session):
    repo = ProfileRepository(session)
    await repo.add(Profile(id="pro-user", plan=PlanType.PRO, credits=UNLIMITED_CREDITS))

    result = await repo.debit("pro-user", 30)

    assert result.success
    assert result.unlimited
    assert result.remaining == UNLIMITED_CREDITS
    session.expire_all()
    assert (await repo.get_by_id("pro-user")).credits == UNLIMITED_CREDITS


@pytest.mark.asyncio
async def test_debit_missing_profile(session):
    result = await ProfileRepository(session).debit("ghost", 1)

    assert not result.success
    assert result.remaining is None


@pytest.mark.asyncio
async def test_debit_rejects_non_positive_amount(session):
    with pytest.raises(ValueError):
        await ProfileRepository(session).debit("user-1", 0)


@pytest.mark.asyncio
async def test_refund_skips_unlimited(session):
    repo = ProfileRepository(session)
    await repo.add(Profile(id="metered", credits=2))
    await repo.add(Profile(id="unlimited", credits=UNLIMITED_CREDITS))

    assert await repo.refund("metered", 5) == 7
    assert await repo.refund("unlimited", 5) is None


@pytest.mark.asyncio
async def test_transition_is_compare_and_set(session):
    repo = GenerationRepository(session)
    await repo.add(make_generation())

    assert await repo.transition("gen_1", GenerationStatus.PROCESSING)
    # Already processing: a second claim loses
    assert not await repo.transition("gen_1", GenerationStatus.PROCESSING)

    assert await repo.transition("gen_1", GenerationStatus.COMPLETED, result_url="https://x/v.mp4")
    assert not await repo.transition("gen_1", GenerationStatus.FAILED, error="late")
    assert not await repo.transition("gen_1", GenerationStatus.CANCELLED)

    session.expire_all()
    generation = await repo.get_by_id("gen_1")
    assert generation.status == GenerationStatus.COMPLETED
    assert generation.result_url == "https://x/v.mp4"


@pytest.mark.asyncio
async def test_credit_reservation_released_once(session):
    repo = GenerationRepository(session)
    await repo.add(make_generation())

    assert await repo.release_credit_reservation("gen_1")
    assert not await repo.release_credit_reservation("gen_1")
    assert not await repo.settle_credits("gen_1")

    session.expire_all()
    assert (await repo.get_by_id("gen_1")).credit_status == CreditStatus.REFUNDED


@pytest.mark.asyncio
async def test_get_for_user_enforces_ownership(session):
    repo = GenerationRepository(session)
    await repo.add(make_generation(user_id="owner"))

    assert await repo.get_for_user("gen_1", "owner") is not None
    assert await repo.get_for_user("gen_1", "intruder") is None


@pytest.mark.asyncio
async def test_active_prediction_lookup_ignores_terminal(session):
    repo = GenerationRepository(session)
    await repo.add(make_generation("gen_done", status=GenerationStatus.COMPLETED, prediction_id="p1"))
    await repo.add(make_generation("gen_live", status=GenerationStatus.PROCESSING, prediction_id="p1"))

    found = await repo.get_active_by_prediction_id("p1")

    assert found.id == "gen_live"
    assert await repo.get_active_by_prediction_id("p2") is None


@pytest.mark.asyncio
async def test_list_for_user_newest_first_and_limited(session):
    repo = GenerationRepository(session)
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for i in range(25):
        await repo.add(make_generation(f"gen_{i:02d}", created_at=base + timedelta(minutes=i)))

    generations = await repo.list_for_user("user-1")

    assert len(generations) == 20
    assert generations[0].id == "gen_24"


@pytest.mark.asyncio
async def test_webhook_delivery_unique_per_status(session):
    repo = WebhookDeliveryRepository(session)
    await GenerationRepository(session).add(make_generation())
    await repo.add(WebhookDelivery(generation_id="gen_1", prediction_id="p1", status="succeeded"))

    assert await repo.exists("gen_1", "succeeded")
    assert not await repo.exists("gen_1", "failed")

    with pytest.raises(IntegrityError):
        await repo.add(
            WebhookDelivery(generation_id="gen_1", prediction_id="p1", status="succeeded")
        )
