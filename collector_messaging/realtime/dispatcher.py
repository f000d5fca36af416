from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import logging
from typing import Callable, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from collector_messaging.models import RealtimeOutboxEvent

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY_SEC = 0.5
RETRY_MAX_DELAY_SEC = 30.0


class EventPublisher(Protocol):
    async def publish(self, event: RealtimeOutboxEvent) -> int: ...


def retry_delay(attempts: int) -> float:
    return min(RETRY_MAX_DELAY_SEC, RETRY_BASE_DELAY_SEC * (2 ** (attempts - 1)))


class RealtimeDispatcher:
    """Drains the outbox in insertion order and hands each event to the publisher.

    Events are attempted by ascending outbox id, so subscribers of a
    conversation observe message inserts in commit order. An event whose
    publish fails is retried with exponential backoff; later events of the
    same conversation wait behind it, other conversations keep flowing.
    """

    def __init__(
        self,
        *,
        publisher: EventPublisher,
        session_factory: Callable[[], Session],
        poll_interval_sec: float,
        batch_size: int,
    ) -> None:
        self._publisher = publisher
        self._session_factory = session_factory
        self._poll_interval_sec = poll_interval_sec
        self._batch_size = batch_size
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Realtime dispatcher started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Realtime dispatcher stopped")

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                processed = await self.process_once()
                if processed == 0:
                    await asyncio.sleep(self._poll_interval_sec)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Realtime dispatcher crashed")
            raise

    def _due_events(self, db: Session, now: datetime) -> list[RealtimeOutboxEvent]:
        return list(
            db.scalars(
                select(RealtimeOutboxEvent)
                .where(
                    RealtimeOutboxEvent.published_at.is_(None),
                    RealtimeOutboxEvent.next_attempt_at <= now,
                )
                .order_by(RealtimeOutboxEvent.id)
                .limit(self._batch_size)
            )
        )

    def _backed_off(self, db: Session, now: datetime) -> dict[str, int]:
        """Lowest outbox id still waiting for a retry, per conversation."""
        rows = db.execute(
            select(RealtimeOutboxEvent.conversation_id, func.min(RealtimeOutboxEvent.id))
            .where(
                RealtimeOutboxEvent.published_at.is_(None),
                RealtimeOutboxEvent.next_attempt_at > now,
            )
            .group_by(RealtimeOutboxEvent.conversation_id)
        )
        return {conversation_id: outbox_id for conversation_id, outbox_id in rows}

    async def _attempt(self, event: RealtimeOutboxEvent) -> bool:
        try:
            delivered = await self._publisher.publish(event)
        except Exception as exc:
            event.attempts += 1
            delay = retry_delay(event.attempts)
            event.next_attempt_at = datetime.now(UTC) + timedelta(seconds=delay)
            event.last_error = str(exc)[:1000]
            logger.warning(
                "Realtime publish failed event_id=%s message_id=%s attempts=%s retry_in=%.1fs error=%s",
                event.event_id,
                event.message_id,
                event.attempts,
                delay,
                exc,
            )
            return False
        event.published_at = datetime.now(UTC)
        event.last_error = None
        logger.debug("Realtime event settled event_id=%s delivered=%s", event.event_id, delivered)
        return True

    async def process_once(self) -> int:
        """Publish one batch of due events; returns how many were attempted."""
        with self._session_factory() as db:
            now = datetime.now(UTC)
            blocked = self._backed_off(db, now)
            attempted = published = 0
            for event in self._due_events(db, now):
                first_blocked = blocked.get(event.conversation_id)
                if first_blocked is not None and event.id > first_blocked:
                    continue
                attempted += 1
                if await self._attempt(event):
                    published += 1
                else:
                    blocked.setdefault(event.conversation_id, event.id)
            if attempted:
                db.commit()
                logger.debug("Realtime batch processed attempted=%s published=%s", attempted, published)
            return attempted
