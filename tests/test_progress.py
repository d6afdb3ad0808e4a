"""Progress events, publisher snapshots and gateway fan-out tests."""

import asyncio

import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from clipforge.models.video import GenerationRequest
from clipforge.services.progress.events import (
    JobProgress,
    ProgressStage,
    parse_event,
)
from clipforge.services.progress.gateway import ProgressGateway
from clipforge.services.progress.publisher import ProgressTracker

from conftest import create_profile


class FakeConnection:
    def __init__(self, user_id: str = "user-1", fail: bool = False):
        self.user_id = user_id
        self.fail = fail
        self.sent: list[dict] = []

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)


class RecordingPublisher:
    def __init__(self):
        self.progress: list[tuple[int, ProgressStage]] = []

    async def emit_job_progress(self, generation_id, percent, stage, message=""):
        self.progress.append((percent, stage))
        return True


class DroppedPubSub:
    """Pub/sub whose connection is lost as soon as it is read."""

    def __init__(self):
        self.closed = False

    async def psubscribe(self, *patterns):
        pass

    async def listen(self):
        raise RedisConnectionError("Connection reset by peer")
        yield

    async def aclose(self):
        self.closed = True


class FlakyRedis:
    """Hands out one dropped pub/sub, then real ones."""

    def __init__(self, redis):
        self.redis = redis
        self.dropped = DroppedPubSub()
        self.pubsub_calls = 0

    def pubsub(self):
        self.pubsub_calls += 1
        if self.pubsub_calls == 1:
            return self.dropped
        return self.redis.pubsub()


async def admit(services, uow_factory, user_id: str = "user-1") -> str:
    await create_profile(uow_factory, user_id, credits=100)
    result = await services.admission.submit(user_id, GenerationRequest(prompt="A fox", duration=3))
    return result.generation_id


def test_envelope_uses_camel_case():
    event = JobProgress.model_validate(
        {
            "generationId": "gen_1",
            "payload": {
                "generationId": "gen_1",
                "percent": 55,
                "stage": "generating",
                "message": "Prediction processing",
            },
        }
    )

    data = event.to_dict()

    assert data["event"] == "job:progress"
    assert data["generationId"] == "gen_1"
    assert data["payload"]["percent"] == 55
    assert parse_event(event.to_json()) == event


def test_parse_event_rejects_unknown_tag():
    with pytest.raises(ValidationError):
        parse_event('{"generationId": "gen_1", "event": "job:exploded", "payload": {}}')


@pytest.mark.asyncio
async def test_publisher_keeps_latest_snapshot(services):
    publisher = services.publisher

    await publisher.emit_job_started("gen_1", "worker-1:1")
    await publisher.emit_job_progress("gen_1", 30, ProgressStage.GENERATING, "Generating video")

    snapshot = await publisher.snapshot("gen_1")
    assert snapshot.event == "job:progress"
    assert snapshot.payload.percent == 30
    assert await publisher.snapshot("gen_unknown") is None
    assert 0 < await services.redis.ttl("video:status:gen_1") <= 3600


@pytest.mark.asyncio
async def test_tracker_never_goes_backwards():
    publisher = RecordingPublisher()
    tracker = ProgressTracker(publisher, "gen_1")

    await tracker.update(ProgressStage.GENERATING, 40)
    await tracker.update(ProgressStage.GENERATING, 35)
    await tracker.update(ProgressStage.GENERATING, 40)
    await tracker.update(ProgressStage.UPLOADING, 85)

    assert publisher.progress == [(40, ProgressStage.GENERATING), (85, ProgressStage.UPLOADING)]


@pytest.mark.asyncio
async def test_subscribe_sends_snapshot(services, uow_factory):
    generation_id = await admit(services, uow_factory)
    conn = FakeConnection()

    assert await services.gateway.subscribe(conn, generation_id)

    assert conn.sent[0]["event"] == "job:queued"
    assert conn.sent[0]["payload"]["position"] == 1
    assert services.gateway.subscribers(generation_id) == 1


@pytest.mark.asyncio
async def test_subscribe_to_foreign_generation_is_denied(services, uow_factory):
    generation_id = await admit(services, uow_factory, user_id="owner")
    intruder = FakeConnection(user_id="intruder")

    assert not await services.gateway.subscribe(intruder, generation_id)

    assert intruder.sent == [
        {
            "generationId": generation_id,
            "event": "error",
            "payload": {"generationId": generation_id, "error": "Unauthorized access"},
        }
    ]
    assert services.gateway.subscribers(generation_id) == 0


@pytest.mark.asyncio
async def test_dispatch_fans_out_and_drops_dead_connections(services, uow_factory):
    generation_id = await admit(services, uow_factory)
    gateway = services.gateway
    first, second, dead = FakeConnection(), FakeConnection(), FakeConnection()
    for conn in (first, second, dead):
        await gateway.subscribe(conn, generation_id)
    dead.fail = True

    event = JobProgress.model_validate(
        {
            "generationId": generation_id,
            "payload": {"generationId": generation_id, "percent": 20, "stage": "creating-prediction"},
        }
    )
    delivered = await gateway.dispatch(event.to_json())

    assert delivered == 2
    assert first.sent[-1]["payload"]["percent"] == 20
    assert second.sent[-1]["payload"]["percent"] == 20
    assert gateway.subscribers(generation_id) == 2


@pytest.mark.asyncio
async def test_dispatch_ignores_malformed_messages(services):
    assert await services.gateway.dispatch("not json") == 0


@pytest.mark.asyncio
async def test_unsubscribe_and_disconnect(services, uow_factory):
    generation_id = await admit(services, uow_factory)
    conn = FakeConnection()
    await services.gateway.subscribe(conn, generation_id)

    services.gateway.unsubscribe(conn, generation_id)
    assert services.gateway.subscribers(generation_id) == 0

    await services.gateway.subscribe(conn, generation_id)
    services.gateway.disconnect(conn)
    assert services.gateway.subscribers(generation_id) == 0


@pytest.mark.asyncio
async def test_cancel_through_gateway(services, uow_factory):
    generation_id = await admit(services, uow_factory)
    intruder = FakeConnection(user_id="intruder")
    owner = FakeConnection()

    assert not await services.gateway.cancel(intruder, generation_id)
    assert await services.gateway.cancel(owner, generation_id)
    # Second cancel reports the terminal state as an error event
    assert not await services.gateway.cancel(owner, generation_id)
    assert owner.sent[-1]["event"] == "error"


@pytest.mark.asyncio
async def test_published_events_reach_subscribers(services, uow_factory):
    generation_id = await admit(services, uow_factory)
    gateway = ProgressGateway(services.redis, services.publisher, uow_factory)
    conn = FakeConnection()
    await gateway.start()
    try:
        await gateway.subscribe(conn, generation_id)
        await services.publisher.emit_job_started(generation_id, "worker-1:1")

        for _ in range(100):
            if any(m["event"] == "job:started" for m in conn.sent):
                break
            await asyncio.sleep(0.01)
    finally:
        await gateway.stop()

    assert conn.sent[-1]["event"] == "job:started"
    assert conn.sent[-1]["payload"]["workerId"] == "worker-1:1"


@pytest.mark.asyncio
async def test_listener_resubscribes_after_connection_loss(services, uow_factory):
    generation_id = await admit(services, uow_factory)
    flaky = FlakyRedis(services.redis)
    gateway = ProgressGateway(flaky, services.publisher, uow_factory, reconnect_delay=0.01)
    conn = FakeConnection()
    await gateway.start()
    try:
        await gateway.subscribe(conn, generation_id)
        for _ in range(200):
            await services.publisher.emit_job_started(generation_id, "worker-1:1")
            if any(m["event"] == "job:started" for m in conn.sent):
                break
            await asyncio.sleep(0.01)
    finally:
        await gateway.stop()

    assert flaky.dropped.closed
    assert flaky.pubsub_calls >= 2
    assert conn.sent[-1]["event"] == "job:started"
