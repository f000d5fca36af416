from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from collector_messaging.schemas.types import UtcDateTime


class SendMessageRequest(BaseModel):
    message_text: str = Field(min_length=1, max_length=2000)
    client_message_id: str | None = Field(default=None, min_length=8, max_length=64)

    @field_validator("message_text")
    @classmethod
    def reject_blank_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message_text must not be blank")
        return value


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    client_message_id: str | None = None
    message_text: str
    is_read: bool
    read_at: UtcDateTime | None = None
    created_at: UtcDateTime
