from __future__ import annotations

from datetime import UTC, datetime
import json

from sqlalchemy.orm import Session

from collector_messaging.models import Message, RealtimeOutboxEvent
from collector_messaging.schemas.messages import MessageRead

MESSAGE_CREATED = "message.created"


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC).isoformat()
    return value.isoformat()


def enqueue_message_created(db: Session, *, message: Message) -> None:
    """Queue the insert event for subscribers of the message's conversation.

    The event row joins the caller's transaction, so it is published only
    if the message itself commits.
    """
    payload = MessageRead.model_validate(message).model_dump(mode="json")
    db.add(
        RealtimeOutboxEvent(
            event_type=MESSAGE_CREATED,
            conversation_id=message.conversation_id,
            message_id=message.id,
            payload_json=json.dumps(payload, separators=(",", ":"), sort_keys=True),
            occurred_at=message.created_at,
            next_attempt_at=datetime.now(UTC),
        )
    )


def occurred_at_text(event: RealtimeOutboxEvent) -> str:
    return _serialize_datetime(event.occurred_at)
