from __future__ import annotations

from datetime import UTC, datetime
import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collector_messaging.core.errors import APIError, message_not_found
from collector_messaging.models import Conversation, Message
from collector_messaging.services import realtime_service

logger = logging.getLogger(__name__)


def list_messages(db: Session, *, conversation_id: str) -> list[Message]:
    logger.debug("Listing messages conversation_id=%s", conversation_id)
    return list(
        db.scalars(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        ).all()
    )


def latest_message(db: Session, *, conversation_id: str) -> Message | None:
    return db.scalar(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    )


def count_unread(db: Session, *, conversation_id: str, reader_id: str) -> int:
    count = db.scalar(
        select(func.count())
        .select_from(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
        )
    )
    return int(count or 0)


def _find_by_client_message_id(db: Session, *, sender_id: str, client_message_id: str) -> Message | None:
    return db.scalar(
        select(Message).where(
            Message.sender_id == sender_id,
            Message.client_message_id == client_message_id,
        )
    )


def _existing_for_retry(*, existing: Message, conversation_id: str) -> Message:
    if existing.conversation_id != conversation_id:
        logger.warning(
            "client_message_id conflict sender_id=%s client_message_id=%s existing_conversation=%s requested_conversation=%s",
            existing.sender_id,
            existing.client_message_id,
            existing.conversation_id,
            conversation_id,
        )
        raise APIError(
            status_code=409,
            code="client_message_conflict",
            message="client_message_id already used for a different conversation",
        )
    logger.debug("Idempotent send hit message_id=%s", existing.id)
    return existing


def send_message(
    db: Session,
    *,
    conversation: Conversation,
    sender_id: str,
    message_text: str,
    client_message_id: str | None,
) -> tuple[Message, bool]:
    logger.info(
        "Send message attempt conversation_id=%s sender_id=%s client_message_id=%s",
        conversation.id,
        sender_id,
        client_message_id,
    )
    if client_message_id is not None:
        existing = _find_by_client_message_id(db, sender_id=sender_id, client_message_id=client_message_id)
        if existing is not None:
            return _existing_for_retry(existing=existing, conversation_id=conversation.id), False

    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        client_message_id=client_message_id,
        message_text=message_text,
        is_read=False,
        created_at=datetime.now(UTC),
    )
    db.add(message)
    db.flush()
    realtime_service.enqueue_message_created(db, message=message)

    try:
        db.commit()
    except IntegrityError:
        logger.warning(
            "IntegrityError on send; attempting idempotent conflict recovery sender_id=%s client_message_id=%s",
            sender_id,
            client_message_id,
        )
        db.rollback()
        if client_message_id is None:
            raise
        existing = _find_by_client_message_id(db, sender_id=sender_id, client_message_id=client_message_id)
        if existing is None:
            raise
        return _existing_for_retry(existing=existing, conversation_id=conversation.id), False

    db.refresh(message)
    logger.info("Message persisted message_id=%s conversation_id=%s", message.id, conversation.id)
    return message, True


def mark_conversation_read(db: Session, *, conversation_id: str, reader_id: str) -> int:
    result = db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
        )
        .values(is_read=True, read_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.debug(
        "Marked conversation read conversation_id=%s reader_id=%s updated=%s",
        conversation_id,
        reader_id,
        result.rowcount,
    )
    return result.rowcount


def get_message_for_participant(db: Session, *, message_id: str, user_id: str) -> Message:
    message = db.get(Message, message_id)
    if message is None or not message.conversation.has_participant(user_id):
        raise message_not_found()
    return message


def mark_message_read(db: Session, *, message_id: str, reader_id: str) -> int:
    get_message_for_participant(db, message_id=message_id, user_id=reader_id)
    result = db.execute(
        update(Message)
        .where(
            Message.id == message_id,
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
        )
        .values(is_read=True, read_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.debug("Marked message read message_id=%s reader_id=%s updated=%s", message_id, reader_id, result.rowcount)
    return result.rowcount


def delete_message(db: Session, *, message_id: str, sender_id: str) -> int:
    # Ownership is a row filter: someone else's message simply matches nothing.
    result = db.execute(
        delete(Message)
        .where(Message.id == message_id, Message.sender_id == sender_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("Message delete message_id=%s sender_id=%s deleted=%s", message_id, sender_id, result.rowcount)
    return result.rowcount
