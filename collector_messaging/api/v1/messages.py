from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from collector_messaging.api.deps import get_current_profile
from collector_messaging.core.errors import success_response
from collector_messaging.db.session import get_db
from collector_messaging.models import Profile
from collector_messaging.schemas.messages import MessageRead, SendMessageRequest
from collector_messaging.services import conversation_service, message_service

router = APIRouter(prefix="/conversations/{conversation_id}/messages", tags=["messages"])
message_router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("")
def list_messages(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    conversation_service.require_participant(db, user_id=current_profile.id, conversation_id=conversation_id)
    messages = message_service.list_messages(db, conversation_id=conversation_id)
    payload = [MessageRead.model_validate(message).model_dump(mode="json") for message in messages]
    return success_response({"messages": payload})


@router.get("/latest")
def latest_message(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    conversation_service.require_participant(db, user_id=current_profile.id, conversation_id=conversation_id)
    message = message_service.latest_message(db, conversation_id=conversation_id)
    if message is None:
        return success_response(None)
    return success_response(MessageRead.model_validate(message).model_dump(mode="json"))


@router.get("/unread-count")
def unread_count(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    conversation_service.require_participant(db, user_id=current_profile.id, conversation_id=conversation_id)
    count = message_service.count_unread(db, conversation_id=conversation_id, reader_id=current_profile.id)
    return success_response({"count": count})


@router.post("")
def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    conversation = conversation_service.require_participant(
        db,
        user_id=current_profile.id,
        conversation_id=conversation_id,
    )
    message, created = message_service.send_message(
        db,
        conversation=conversation,
        sender_id=current_profile.id,
        message_text=payload.message_text,
        client_message_id=payload.client_message_id,
    )
    status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return success_response(MessageRead.model_validate(message).model_dump(mode="json"), status_code=status_code)


@router.post("/read")
def mark_conversation_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    conversation_service.require_participant(db, user_id=current_profile.id, conversation_id=conversation_id)
    updated = message_service.mark_conversation_read(db, conversation_id=conversation_id, reader_id=current_profile.id)
    return success_response({"updated": updated})


@message_router.post("/{message_id}/read")
def mark_message_read(
    message_id: str,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    updated = message_service.mark_message_read(db, message_id=message_id, reader_id=current_profile.id)
    return success_response({"updated": updated})


@message_router.delete("/{message_id}")
def delete_message(
    message_id: str,
    db: Session = Depends(get_db),
    current_profile: Profile = Depends(get_current_profile),
):
    deleted = message_service.delete_message(db, message_id=message_id, sender_id=current_profile.id)
    return success_response({"deleted": deleted})
