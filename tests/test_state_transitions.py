"""State transition tests for the generations table.

Tests focus on the lifecycle state machine enforced by
GenerationRepository.transition:
- Every (source, target) pair is allowed exactly when TRANSITIONS lists it
- Retry/stall path processing → queued carries the retry count and error
- Terminal states reject every further transition
"""

import itertools

import pytest

from clipforge.models.generation import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    Generation,
    GenerationStatus,
    utcnow,
)
from clipforge.repositories.generation import GenerationRepository


def make_generation(**overrides) -> Generation:
    fields = dict(
        id="gen_1_abcdefg",
        user_id="user-1",
        prompt="A fox running through snow",
        request={"prompt": "A fox running through snow", "duration": 5},
        trace_id="vid_1_abcdefg",
        credits_charged=5,
    )
    fields.update(overrides)
    return Generation(**fields)


async def stored(session, **overrides) -> GenerationRepository:
    repo = GenerationRepository(session)
    await repo.add(make_generation(**overrides))
    return repo


async def reload(repo: GenerationRepository, generation_id: str = "gen_1_abcdefg") -> Generation:
    repo.session.expire_all()
    generation = await repo.get_by_id(generation_id)
    assert generation is not None
    return generation


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "source,target", list(itertools.product(GenerationStatus, TRANSITIONS))
)
async def test_transition_table(session, source, target):
    repo = await stored(session, status=source)

    moved = await repo.transition("gen_1_abcdefg", target)

    assert moved is (source in TRANSITIONS[target])
    expected = target if moved else source
    assert (await reload(repo)).status == expected


@pytest.mark.asyncio
async def test_valid_path_sets_timestamps_and_result(session):
    repo = await stored(session)

    assert await repo.transition("gen_1_abcdefg", GenerationStatus.PROCESSING, started_at=utcnow())
    assert await repo.transition(
        "gen_1_abcdefg",
        GenerationStatus.COMPLETED,
        result_url="https://cdn.test/video.mp4",
        completed_at=utcnow(),
    )

    generation = await reload(repo)
    assert generation.status == GenerationStatus.COMPLETED
    assert generation.result_url == "https://cdn.test/video.mp4"
    assert generation.started_at is not None
    assert generation.completed_at is not None


@pytest.mark.asyncio
async def test_requeue_carries_retry_count_and_error(session):
    repo = await stored(session, status=GenerationStatus.PROCESSING)

    assert await repo.transition(
        "gen_1_abcdefg", GenerationStatus.QUEUED, retry_count=1, error="Provider unavailable"
    )

    generation = await reload(repo)
    assert generation.status == GenerationStatus.QUEUED
    assert generation.retry_count == 1
    assert generation.error == "Provider unavailable"


@pytest.mark.asyncio
async def test_queued_cannot_requeue(session):
    repo = await stored(session)

    assert not await repo.transition("gen_1_abcdefg", GenerationStatus.QUEUED, retry_count=1)

    generation = await reload(repo)
    assert generation.retry_count == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
async def test_terminal_states_reject_transitions(session, terminal):
    repo = await stored(session, status=terminal)
    assert terminal.is_terminal

    for target in TRANSITIONS:
        assert not await repo.transition("gen_1_abcdefg", target)

    assert (await reload(repo)).status == terminal


@pytest.mark.asyncio
async def test_unknown_generation_never_transitions(session):
    repo = GenerationRepository(session)

    assert not await repo.transition("gen_missing", GenerationStatus.PROCESSING)
