"""Typed records for rows exchanged with the messaging backend.

Backend payloads are validated into these models at the adapter edge; a
payload that does not match is reported as ``invalid_payload`` instead of
flowing further as an untyped mapping.
"""

from __future__ import annotations

from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from collector_messaging.client.results import BackendError
from collector_messaging.schemas.types import UtcDateTime

RecordT = TypeVar("RecordT", bound=BaseModel)


class Record(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class ProfileSummary(Record):
    id: str
    email: str
    full_name: str | None = None


class ListingSummary(Record):
    id: str
    title: str
    photo_url: str | None = None


class Conversation(Record):
    id: str
    user1_id: str
    user2_id: str
    listing_id: str | None = None
    last_message_at: UtcDateTime
    created_at: UtcDateTime

    def other_user_id(self, user_id: str) -> str:
        return self.user2_id if self.user1_id == user_id else self.user1_id


class ConversationRow(Conversation):
    """A conversation as listed for its participant, with both profiles joined."""

    user1: ProfileSummary
    user2: ProfileSummary
    listing: ListingSummary | None = None

    def other_user(self, user_id: str) -> ProfileSummary:
        return self.user2 if self.user1_id == user_id else self.user1


class Message(Record):
    id: str
    conversation_id: str
    sender_id: str
    message_text: str
    is_read: bool = False
    read_at: UtcDateTime | None = None
    created_at: UtcDateTime
    client_message_id: str | None = None

    def as_read(self, read_at: datetime) -> Message:
        # Read state only ever moves from unread to read.
        if self.is_read:
            return self
        return self.model_copy(update={"is_read": True, "read_at": read_at})

    def same_as(self, other: Message) -> bool:
        if self.id == other.id:
            return True
        return self.client_message_id is not None and self.client_message_id == other.client_message_id


class LastMessage(Record):
    message_text: str
    sender_id: str
    created_at: UtcDateTime


class DirectoryEntry(Conversation):
    other_user: ProfileSummary | None = None
    listing: ListingSummary | None = None
    last_message: LastMessage | None = None
    unread_count: int = 0


def parse_record(model: type[RecordT], payload: object) -> RecordT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise BackendError(
            code="invalid_payload",
            message=f"Malformed {model.__name__} payload: {exc.errors()[0]['msg']}",
        ) from exc


def parse_records(model: type[RecordT], payload: object) -> list[RecordT]:
    if not isinstance(payload, list):
        raise BackendError(code="invalid_payload", message=f"Expected a list of {model.__name__} rows")
    return [parse_record(model, item) for item in payload]
