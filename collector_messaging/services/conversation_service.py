from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collector_messaging.core.errors import APIError, conversation_not_found, forbidden_pair
from collector_messaging.models import Conversation, MarketplaceListing, Profile

logger = logging.getLogger(__name__)


def _participant_filter(user_id: str):
    return or_(Conversation.user1_id == user_id, Conversation.user2_id == user_id)


def require_participant(db: Session, *, user_id: str, conversation_id: str) -> Conversation:
    logger.debug("Checking participant user_id=%s conversation_id=%s", user_id, conversation_id)
    conversation = db.get(Conversation, conversation_id)
    if conversation is None or not conversation.has_participant(user_id):
        logger.warning("Participant check failed user_id=%s conversation_id=%s", user_id, conversation_id)
        raise conversation_not_found()
    return conversation


def list_profile_conversations(db: Session, user_id: str) -> list[Conversation]:
    logger.debug("Listing conversations for user_id=%s", user_id)
    rows = db.scalars(
        select(Conversation)
        .where(_participant_filter(user_id))
        .order_by(Conversation.last_message_at.desc(), Conversation.id.asc())
    ).unique().all()
    logger.debug("Found %s conversations for user_id=%s", len(rows), user_id)
    return list(rows)


def find_conversation_by_pair(db: Session, *, user_id: str, user1_id: str, user2_id: str) -> Conversation | None:
    if user_id not in (user1_id, user2_id):
        logger.warning("Pair lookup outside caller's pairs user_id=%s", user_id)
        raise forbidden_pair()

    return db.scalar(
        select(Conversation).where(Conversation.user1_id == user1_id, Conversation.user2_id == user2_id)
    )


def create_conversation(
    db: Session,
    *,
    user_id: str,
    user1_id: str,
    user2_id: str,
    listing_id: str | None,
) -> Conversation:
    logger.info("Create conversation user_id=%s pair=%s,%s listing_id=%s", user_id, user1_id, user2_id, listing_id)
    if user1_id == user2_id:
        raise APIError(status_code=400, code="invalid_target", message="Cannot start a conversation with yourself")
    if user1_id > user2_id:
        raise APIError(status_code=400, code="invalid_pair", message="Participant ids must be in ascending order")
    if user_id not in (user1_id, user2_id):
        raise forbidden_pair()

    other_user_id = user2_id if user_id == user1_id else user1_id
    if db.get(Profile, other_user_id) is None:
        logger.warning("Conversation target not found other_user_id=%s", other_user_id)
        raise APIError(status_code=404, code="user_not_found", message="User not found")
    if listing_id is not None and db.get(MarketplaceListing, listing_id) is None:
        raise APIError(status_code=404, code="listing_not_found", message="Listing not found")

    conversation = Conversation(user1_id=user1_id, user2_id=user2_id, listing_id=listing_id)
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Conversation pair already exists pair=%s,%s", user1_id, user2_id)
        raise APIError(
            status_code=409,
            code="conversation_exists",
            message="A conversation for this pair already exists",
        ) from exc

    db.refresh(conversation)
    logger.info("Conversation created conversation_id=%s", conversation.id)
    return conversation


def touch_conversation(db: Session, *, user_id: str, conversation_id: str, last_message_at: datetime) -> Conversation:
    conversation = require_participant(db, user_id=user_id, conversation_id=conversation_id)
    conversation.last_message_at = last_message_at
    db.commit()
    db.refresh(conversation)
    logger.debug("Conversation touched conversation_id=%s last_message_at=%s", conversation_id, last_message_at)
    return conversation


def delete_conversation(db: Session, *, user_id: str, conversation_id: str) -> int:
    result = db.execute(
        delete(Conversation).where(Conversation.id == conversation_id, _participant_filter(user_id))
    )
    db.commit()
    logger.info(
        "Conversation delete user_id=%s conversation_id=%s deleted=%s",
        user_id,
        conversation_id,
        result.rowcount,
    )
    return result.rowcount
