from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from collector_messaging.api.deps import get_current_profile
from collector_messaging.core.errors import success_response
from collector_messaging.db.session import get_db
from collector_messaging.models import Profile
from collector_messaging.schemas.conversations import (
    ConversationCreateRequest,
    ConversationRead,
    ConversationTouchRequest,
    ConversationWithParticipants,
)
from collector_messaging.services import conversation_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("")
def list_conversations(
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    logger.info("List conversations endpoint hit user_id=%s", current_profile.id)
    rows = conversation_service.list_profile_conversations(db, current_profile.id)
    payload = [ConversationWithParticipants.model_validate(row).model_dump(mode="json") for row in rows]
    return success_response(payload)


@router.get("/lookup")
def lookup_conversation(
    user1_id: str = Query(min_length=1, max_length=64),
    user2_id: str = Query(min_length=1, max_length=64),
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    conversation = conversation_service.find_conversation_by_pair(
        db,
        user_id=current_profile.id,
        user1_id=user1_id,
        user2_id=user2_id,
    )
    if conversation is None:
        return success_response(None)
    return success_response(ConversationRead.model_validate(conversation).model_dump(mode="json"))


@router.post("")
def create_conversation(
    payload: ConversationCreateRequest,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    conversation = conversation_service.create_conversation(
        db,
        user_id=current_profile.id,
        user1_id=payload.user1_id,
        user2_id=payload.user2_id,
        listing_id=payload.listing_id,
    )
    return success_response(
        ConversationRead.model_validate(conversation).model_dump(mode="json"),
        status_code=status.HTTP_201_CREATED,
    )


@router.patch("/{conversation_id}")
def touch_conversation(
    conversation_id: str,
    payload: ConversationTouchRequest,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    conversation = conversation_service.touch_conversation(
        db,
        user_id=current_profile.id,
        conversation_id=conversation_id,
        last_message_at=payload.last_message_at,
    )
    return success_response(ConversationRead.model_validate(conversation).model_dump(mode="json"))


@router.delete("/{conversation_id}")
def delete_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    deleted = conversation_service.delete_conversation(
        db,
        user_id=current_profile.id,
        conversation_id=conversation_id,
    )
    return success_response({"deleted": deleted})
