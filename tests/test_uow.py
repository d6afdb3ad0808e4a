"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- Debit and generation insert are atomic
"""

import pytest

from clipforge.models.generation import Generation
from clipforge.models.profile import PlanType, Profile


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    async with await uow_factory() as uow:
        await uow.profiles.add(Profile(id="user-1", plan=PlanType.STARTER, credits=10))

    async with await uow_factory() as uow:
        found = await uow.profiles.get_by_id("user-1")
        assert found is not None
        assert found.credits == 10


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            await uow.profiles.add(Profile(id="user-1", credits=10))
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.profiles.get_by_id("user-1") is None


@pytest.mark.asyncio
async def test_debit_and_insert_roll_back_together(uow_factory):
    async with await uow_factory() as uow:
        await uow.profiles.add(Profile(id="user-1", plan=PlanType.STARTER, credits=10))

    with pytest.raises(RuntimeError):
        async with await uow_factory() as uow:
            debit = await uow.profiles.debit("user-1", 5)
            assert debit.remaining == 5
            await uow.generations.add(
                Generation(id="gen_1", user_id="user-1", prompt="A fox", trace_id="vid_1")
            )
            raise RuntimeError("enqueue bookkeeping failed")

    async with await uow_factory() as uow:
        assert (await uow.profiles.get_by_id("user-1")).credits == 10
        assert await uow.generations.get_by_id("gen_1") is None
