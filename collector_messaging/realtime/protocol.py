from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

PROTOCOL_VERSION = 1

INVALID_COMMAND = "INVALID_COMMAND"
FORBIDDEN_CONVERSATION = "FORBIDDEN_CONVERSATION"
RATE_LIMITED = "RATE_LIMITED"

_ERROR_MESSAGES = {
    "json_invalid": "Invalid JSON payload",
    "model_attributes_type": "Command payload must be an object",
    "union_tag_invalid": "Unsupported command",
    "union_tag_not_found": "Unsupported command",
}


class ProtocolError(Exception):
    def __init__(self, message: str, *, code: str = INVALID_COMMAND) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class _ClientCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SubscribeCommand(_ClientCommand):
    op: Literal["subscribe"]
    conversation_ids: list[str]


class UnsubscribeCommand(_ClientCommand):
    op: Literal["unsubscribe"]
    conversation_ids: list[str]


class PingCommand(_ClientCommand):
    op: Literal["ping"]
    ts: int | None = None


Command = Annotated[SubscribeCommand | UnsubscribeCommand | PingCommand, Field(discriminator="op")]
_commands = TypeAdapter(Command)


def parse_command(raw_text: str, *, max_bytes: int) -> Command:
    """Decode one client frame; every failure is reported as ``INVALID_COMMAND``."""
    if len(raw_text.encode("utf-8")) > max_bytes:
        raise ProtocolError("Frame is too large")
    try:
        return _commands.validate_json(raw_text)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise ProtocolError(_ERROR_MESSAGES.get(first["type"], str(first["msg"]))) from exc


def _frame(frame_type: str, **fields: object) -> dict[str, object]:
    frame: dict[str, object] = {"type": frame_type}
    frame.update({key: value for key, value in fields.items() if value is not None})
    return frame


def welcome_frame(*, connection_id: str, user_id: str, heartbeat_sec: int) -> dict[str, object]:
    return _frame(
        "connection.welcome",
        connection_id=connection_id,
        user_id=user_id,
        server_time=datetime.now(UTC).isoformat(),
        heartbeat_sec=heartbeat_sec,
        protocol_version=PROTOCOL_VERSION,
    )


def ack_frame(op: str, conversation_ids: list[str]) -> dict[str, object]:
    return _frame("ack", op=op, ok=True, details={"conversation_ids": conversation_ids})


def error_frame(message: str, *, code: str = INVALID_COMMAND) -> dict[str, object]:
    return _frame("error", error={"code": code, "message": message})


def pong_frame(ts: int | None = None) -> dict[str, object]:
    return _frame("pong", ts=ts)


def message_event_frame(
    *,
    event_type: str,
    event_id: str,
    conversation_id: str,
    occurred_at: str,
    payload: dict[str, object],
) -> dict[str, object]:
    return _frame(
        event_type,
        event_id=event_id,
        conversation_id=conversation_id,
        occurred_at=occurred_at,
        payload=payload,
    )
