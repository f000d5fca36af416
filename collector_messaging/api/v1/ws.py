from __future__ import annotations

import asyncio
from collections import deque
import logging
from time import monotonic

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from sqlalchemy import or_, select

import collector_messaging.db.session as db_session
from collector_messaging.api.deps import profile_id_from_token
from collector_messaging.core.errors import APIError
from collector_messaging.core.settings import Settings, get_settings
from collector_messaging.models import Conversation, Profile
from collector_messaging.realtime.connection_manager import ConnectionContext, ConnectionManager, SubscriptionLimitExceeded
from collector_messaging.realtime.protocol import (
    FORBIDDEN_CONVERSATION,
    RATE_LIMITED,
    PingCommand,
    ProtocolError,
    SubscribeCommand,
    ack_frame,
    error_frame,
    parse_command,
    pong_frame,
    welcome_frame,
)

logger = logging.getLogger(__name__)
router = APIRouter(tags=["ws"])

POLICY_VIOLATION = 1008
SERVER_UNAVAILABLE = 1011


def _open_session():
    if db_session.SessionLocal is None:
        raise RuntimeError("Database session factory is not configured")
    return db_session.SessionLocal()


def _authenticate(websocket: WebSocket) -> str | None:
    """Resolve the profile behind a bearer header or ``access_token`` query parameter."""
    auth_header = websocket.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
    else:
        token = websocket.query_params.get("access_token")
    if not token:
        return None

    try:
        profile_id = profile_id_from_token(token)
    except APIError as exc:
        logger.info("WebSocket token rejected code=%s", exc.code)
        return None

    with _open_session() as db:
        if db.get(Profile, profile_id) is None:
            logger.info("WebSocket token profile missing profile_id=%s", profile_id)
            return None
    return profile_id


class _SocketCommands:
    """Executes the commands of one authenticated socket."""

    def __init__(self, manager: ConnectionManager, context: ConnectionContext, settings: Settings) -> None:
        self._manager = manager
        self._context = context
        self._settings = settings
        self._recent: deque[float] = deque()

    def _within_rate(self) -> bool:
        now = monotonic()
        while self._recent and self._recent[0] <= now - self._settings.ws_rate_limit_window_sec:
            self._recent.popleft()
        if len(self._recent) >= self._settings.ws_rate_limit_max_commands:
            return False
        self._recent.append(now)
        return True

    async def handle(self, raw_text: str) -> dict[str, object]:
        if not self._within_rate():
            return error_frame("Command rate limit exceeded", code=RATE_LIMITED)
        try:
            command = parse_command(raw_text, max_bytes=self._settings.ws_max_command_bytes)
        except ProtocolError as exc:
            return error_frame(exc.message, code=exc.code)

        if isinstance(command, PingCommand):
            return pong_frame(command.ts)
        conversation_ids = list(dict.fromkeys(command.conversation_ids))
        if not conversation_ids:
            return error_frame("conversation_ids is required")
        if isinstance(command, SubscribeCommand):
            return await self._subscribe(conversation_ids)
        await self._manager.unsubscribe(self._context.connection_id, conversation_ids)
        return ack_frame("unsubscribe", conversation_ids)

    async def _subscribe(self, conversation_ids: list[str]) -> dict[str, object]:
        if len(conversation_ids) > self._settings.ws_max_ids_per_subscribe:
            return error_frame("Too many conversation ids")

        profile_id = self._context.profile_id
        with _open_session() as db:
            allowed = set(
                db.scalars(
                    select(Conversation.id).where(
                        Conversation.id.in_(conversation_ids),
                        or_(Conversation.user1_id == profile_id, Conversation.user2_id == profile_id),
                    )
                )
            )
        if allowed != set(conversation_ids):
            logger.warning("Subscribe rejected profile_id=%s conversation_ids=%s", profile_id, conversation_ids)
            return error_frame("Not a participant of one or more conversations", code=FORBIDDEN_CONVERSATION)

        try:
            await self._manager.subscribe(self._context.connection_id, conversation_ids)
        except SubscriptionLimitExceeded as exc:
            return error_frame(str(exc))
        logger.debug("Subscribed connection_id=%s conversation_ids=%s", self._context.connection_id, conversation_ids)
        return ack_frame("subscribe", conversation_ids)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    settings = get_settings()
    profile_id = _authenticate(websocket)
    if profile_id is None:
        await websocket.close(code=POLICY_VIOLATION)
        return

    manager: ConnectionManager | None = getattr(websocket.app.state, "connection_manager", None)
    if manager is None:
        await websocket.close(code=SERVER_UNAVAILABLE)
        return

    await websocket.accept()
    context = await manager.register(websocket, profile_id=profile_id)
    await manager.send(
        context.connection_id,
        welcome_frame(connection_id=context.connection_id, user_id=profile_id, heartbeat_sec=settings.ws_heartbeat_sec),
    )

    commands = _SocketCommands(manager, context, settings)
    try:
        while True:
            try:
                raw_text = await asyncio.wait_for(websocket.receive_text(), timeout=settings.ws_idle_timeout_sec)
            except (asyncio.TimeoutError, WebSocketDisconnect):
                break
            await manager.send(context.connection_id, await commands.handle(raw_text))
    finally:
        await manager.unregister(context.connection_id, close_socket=True)
        logger.info("WebSocket session closed connection_id=%s profile_id=%s", context.connection_id, profile_id)
