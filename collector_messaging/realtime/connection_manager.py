from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from fastapi import WebSocket

logger = logging.getLogger(__name__)

DEFAULT_OUTGOING_QUEUE_SIZE = 200
TRY_AGAIN_LATER = 1013


class SubscriptionLimitExceeded(ValueError):
    pass


@dataclass
class ConnectionContext:
    connection_id: str
    profile_id: str
    websocket: WebSocket
    outgoing: asyncio.Queue[dict[str, object]]
    writer_task: asyncio.Task[None] | None = None
    conversation_ids: set[str] = field(default_factory=set)


class ConnectionManager:
    """Tracks live sockets and which conversation channels each one listens to.

    Every socket gets a bounded outgoing queue drained by its own writer
    task, so one slow client never blocks a broadcast. A client whose
    queue fills up is disconnected with close code 1013.
    """

    def __init__(
        self,
        *,
        max_subscriptions_per_connection: int,
        outgoing_queue_size: int = DEFAULT_OUTGOING_QUEUE_SIZE,
    ) -> None:
        self._max_subscriptions = max_subscriptions_per_connection
        self._queue_size = outgoing_queue_size
        self._connections: dict[str, ConnectionContext] = {}
        self._channels: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._channels.get(conversation_id, ()))

    async def register(self, websocket: WebSocket, *, profile_id: str) -> ConnectionContext:
        context = ConnectionContext(
            connection_id=str(uuid.uuid4()),
            profile_id=profile_id,
            websocket=websocket,
            outgoing=asyncio.Queue(maxsize=self._queue_size),
        )
        async with self._lock:
            self._connections[context.connection_id] = context
        context.writer_task = asyncio.create_task(self._drain(context))
        logger.info("WebSocket connection registered connection_id=%s profile_id=%s", context.connection_id, profile_id)
        return context

    async def unregister(self, connection_id: str, *, close_socket: bool = True, close_code: int = 1000) -> None:
        async with self._lock:
            context = self._connections.pop(connection_id, None)
            if context is None:
                return
            self._leave_locked(connection_id, context.conversation_ids)
            context.conversation_ids.clear()

        writer = context.writer_task
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

        if close_socket:
            try:
                await context.websocket.close(code=close_code)
            except Exception:
                logger.debug("WebSocket already closed connection_id=%s", connection_id)
        logger.info("WebSocket connection unregistered connection_id=%s profile_id=%s", connection_id, context.profile_id)

    async def subscribe(self, connection_id: str, conversation_ids: list[str]) -> None:
        async with self._lock:
            context = self._connections.get(connection_id)
            if context is None:
                return
            wanted = context.conversation_ids.union(conversation_ids)
            if len(wanted) > self._max_subscriptions:
                raise SubscriptionLimitExceeded("Subscription limit exceeded")
            context.conversation_ids = wanted
            for conversation_id in conversation_ids:
                self._channels.setdefault(conversation_id, set()).add(connection_id)

    async def unsubscribe(self, connection_id: str, conversation_ids: list[str]) -> None:
        async with self._lock:
            context = self._connections.get(connection_id)
            if context is None:
                return
            context.conversation_ids.difference_update(conversation_ids)
            self._leave_locked(connection_id, set(conversation_ids))

    async def send(self, connection_id: str, frame: dict[str, object]) -> bool:
        context = self._connections.get(connection_id)
        if context is None:
            return False
        try:
            context.outgoing.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Slow WebSocket client disconnected connection_id=%s", connection_id)
            await self.unregister(connection_id, close_code=TRY_AGAIN_LATER)
            return False
        return True

    async def broadcast(self, conversation_id: str, frame: dict[str, object]) -> int:
        """Queue ``frame`` for every subscriber of the conversation; returns how many accepted it."""
        async with self._lock:
            connection_ids = list(self._channels.get(conversation_id, ()))
        delivered = 0
        for connection_id in connection_ids:
            delivered += await self.send(connection_id, frame)
        return delivered

    def _leave_locked(self, connection_id: str, conversation_ids: set[str]) -> None:
        for conversation_id in conversation_ids:
            subscribers = self._channels.get(conversation_id)
            if subscribers is None:
                continue
            subscribers.discard(connection_id)
            if not subscribers:
                del self._channels[conversation_id]

    async def _drain(self, context: ConnectionContext) -> None:
        while True:
            frame = await context.outgoing.get()
            try:
                await context.websocket.send_json(frame)
            except Exception as exc:
                logger.warning(
                    "WebSocket writer failed connection_id=%s profile_id=%s error=%s",
                    context.connection_id,
                    context.profile_id,
                    exc,
                )
                await self.unregister(context.connection_id, close_socket=False)
                return
