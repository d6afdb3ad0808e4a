"""Fan-out of published progress events to subscribed client connections.

One pattern subscription (``video:job:*``) per process receives every event;
the gateway forwards each one to the connections that joined that
generation's room. Delivery is at-most-once: a connection that misses an
event while disconnected only gets the latest snapshot when it re-subscribes.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from clipforge.services.exceptions import ServiceError
from clipforge.services.progress.events import (
    CHANNEL_PATTERN,
    ErrorPayload,
    ProgressEvent,
    SubscriptionError,
    parse_event,
)
from clipforge.services.progress.publisher import ProgressPublisher

logger = structlog.get_logger()

CancelHandler = Callable[[str, str], Awaitable[Any]]


class Connection(Protocol):
    """A client endpoint (WebSocket) owned by one user."""

    user_id: str

    async def send_json(self, data: Any) -> None: ...


class ProgressGateway:
    def __init__(
        self,
        redis: Redis,
        publisher: ProgressPublisher,
        uow_factory,
        cancel_handler: Optional[CancelHandler] = None,
        reconnect_delay: float = 1.0,
    ):
        self.redis = redis
        self.publisher = publisher
        self.uow_factory = uow_factory
        self.cancel_handler = cancel_handler
        self.reconnect_delay = reconnect_delay
        self._rooms: dict[str, set[Connection]] = {}
        self._task: Optional[asyncio.Task] = None

    def subscribers(self, generation_id: str) -> int:
        return len(self._rooms.get(generation_id, ()))

    async def start(self) -> None:
        """Subscribe to the event pattern and start the listener task."""
        pubsub = await self._open_pubsub()
        self._task = asyncio.create_task(self._listen(pubsub), name="progress-gateway")
        logger.info("gateway.started", pattern=CHANNEL_PATTERN)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("gateway.stopped")

    async def _open_pubsub(self) -> PubSub:
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(CHANNEL_PATTERN)
        return pubsub

    async def _listen(self, pubsub: Optional[PubSub]) -> None:
        """Relay pattern messages until cancelled, resubscribing after connection loss."""
        while True:
            try:
                if pubsub is None:
                    pubsub = await self._open_pubsub()
                    logger.info("gateway.resubscribed", pattern=CHANNEL_PATTERN)
                async for message in pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    await self.dispatch(message["data"])
                logger.warning("gateway.listener_ended", retry_in_seconds=self.reconnect_delay)
            except (RedisError, OSError) as e:
                logger.error(
                    "gateway.listener_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    retry_in_seconds=self.reconnect_delay,
                )
            finally:
                if pubsub is not None:
                    await self._close_pubsub(pubsub)
                    pubsub = None
            await asyncio.sleep(self.reconnect_delay)

    async def _close_pubsub(self, pubsub: PubSub) -> None:
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.warning("gateway.pubsub_close_failed", error=str(e))

    async def dispatch(self, raw: str | bytes) -> int:
        """Forward one published envelope to its room. Returns deliveries made."""
        try:
            event = parse_event(raw)
        except ValidationError as e:
            logger.warning("gateway.malformed_event", error=str(e))
            return 0
        return await self.broadcast(event)

    async def broadcast(self, event: ProgressEvent) -> int:
        delivered = 0
        data = event.to_dict()
        for conn in list(self._rooms.get(event.generation_id, ())):
            try:
                await conn.send_json(data)
                delivered += 1
            except Exception as e:
                logger.info(
                    "gateway.connection_dropped",
                    generation_id=event.generation_id,
                    error=str(e),
                )
                self.disconnect(conn)
        return delivered

    async def _owns(self, user_id: str, generation_id: str) -> bool:
        async with await self.uow_factory() as uow:
            generation = await uow.generations.get_for_user(generation_id, user_id)
        return generation is not None

    async def _send_error(self, conn: Connection, generation_id: str, error: str) -> None:
        message = SubscriptionError(
            generation_id=generation_id,
            payload=ErrorPayload(generation_id=generation_id, error=error),
        )
        await conn.send_json(message.to_dict())

    async def subscribe(self, conn: Connection, generation_id: str) -> bool:
        """Join a generation's room after an ownership check.

        Unauthorized attempts receive an ``error`` event and are not joined.
        Authorized subscribers immediately receive the latest snapshot.
        """
        if not await self._owns(conn.user_id, generation_id):
            logger.info(
                "gateway.subscribe_denied", user_id=conn.user_id, generation_id=generation_id
            )
            await self._send_error(conn, generation_id, "Unauthorized access")
            return False

        self._rooms.setdefault(generation_id, set()).add(conn)
        logger.debug("gateway.subscribed", user_id=conn.user_id, generation_id=generation_id)

        try:
            snapshot = await self.publisher.snapshot(generation_id)
        except (RedisError, ValidationError) as e:
            logger.warning("gateway.snapshot_unavailable", generation_id=generation_id, error=str(e))
            snapshot = None
        if snapshot is not None:
            await conn.send_json(snapshot.to_dict())
        return True

    def unsubscribe(self, conn: Connection, generation_id: str) -> None:
        room = self._rooms.get(generation_id)
        if room is None:
            return
        room.discard(conn)
        if not room:
            del self._rooms[generation_id]

    def disconnect(self, conn: Connection) -> None:
        for generation_id in [g for g, room in self._rooms.items() if conn in room]:
            self.unsubscribe(conn, generation_id)

    async def cancel(self, conn: Connection, generation_id: str) -> bool:
        """Cancel a generation on behalf of its owner."""
        if self.cancel_handler is None or not await self._owns(conn.user_id, generation_id):
            await self._send_error(conn, generation_id, "Unauthorized access")
            return False
        try:
            await self.cancel_handler(conn.user_id, generation_id)
        except ServiceError as e:
            await self._send_error(conn, generation_id, e.message)
            return False
        return True
