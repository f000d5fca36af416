from __future__ import annotations

import json
import logging

from collector_messaging.models import RealtimeOutboxEvent
from collector_messaging.realtime.connection_manager import ConnectionManager
from collector_messaging.realtime.protocol import message_event_frame
from collector_messaging.services.realtime_service import occurred_at_text

logger = logging.getLogger(__name__)


class RealtimePublisher:
    def __init__(self, connection_manager: ConnectionManager) -> None:
        self._connection_manager = connection_manager

    async def publish(self, event: RealtimeOutboxEvent) -> int:
        payload = json.loads(event.payload_json)
        if not isinstance(payload, dict):
            raise ValueError("Realtime event payload_json must decode to an object")

        frame = message_event_frame(
            event_type=event.event_type,
            event_id=event.event_id,
            conversation_id=event.conversation_id,
            occurred_at=occurred_at_text(event),
            payload=payload,
        )
        delivered = await self._connection_manager.broadcast(event.conversation_id, frame)
        logger.debug(
            "Realtime event published event_id=%s type=%s conversation_id=%s message_id=%s delivered=%s",
            event.event_id,
            event.event_type,
            event.conversation_id,
            event.message_id,
            delivered,
        )
        return delivered
