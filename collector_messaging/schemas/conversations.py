from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

from collector_messaging.schemas.profiles import ProfilePublic
from collector_messaging.schemas.types import UtcDateTime

ProfileId = Annotated[str, Field(min_length=1, max_length=64)]


class ConversationCreateRequest(BaseModel):
    user1_id: ProfileId
    user2_id: ProfileId
    listing_id: str | None = Field(default=None, min_length=1, max_length=64)


class ConversationTouchRequest(BaseModel):
    last_message_at: UtcDateTime


class ListingSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    photo_url: str | None = None


class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user1_id: str
    user2_id: str
    listing_id: str | None
    last_message_at: UtcDateTime
    created_at: UtcDateTime


class ConversationWithParticipants(ConversationRead):
    user1: ProfilePublic
    user2: ProfilePublic
    listing: ListingSummary | None = None
