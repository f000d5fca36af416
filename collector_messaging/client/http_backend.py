from __future__ import annotations

import asyncio
from datetime import datetime
import json
import logging

import aiohttp
import httpx

from collector_messaging.client.backend import MessagingBackend, PushHandler, Subscription
from collector_messaging.client.records import (
    Conversation,
    ConversationRow,
    Message,
    ProfileSummary,
    parse_record,
    parse_records,
)
from collector_messaging.client.results import BackendError
from collector_messaging.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message.created"
HANDSHAKE_TIMEOUT_SEC = 10.0


def websocket_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws"


def _error_from_response(response: httpx.Response) -> BackendError:
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return BackendError(
            code=str(error.get("code") or "backend_error"),
            message=error["message"],
            status_code=response.status_code,
        )
    return BackendError(
        code="backend_error",
        message=f"Backend responded with HTTP {response.status_code}",
        status_code=response.status_code,
    )


def _describe_channel_error(exc: BaseException) -> str:
    # aiohttp messages embed the request URL; keep them out of logs and results.
    if isinstance(exc, aiohttp.ClientResponseError):
        return f"{exc.__class__.__name__} status={exc.status}"
    return exc.__class__.__name__


def parse_event_frame(raw_text: str, *, conversation_id: str) -> Message | None:
    """Return the inserted message carried by a channel frame, if any."""
    try:
        frame = json.loads(raw_text)
    except json.JSONDecodeError:
        logger.warning("Ignoring non-JSON realtime frame conversation_id=%s", conversation_id)
        return None
    if not isinstance(frame, dict) or frame.get("type") != MESSAGE_CREATED:
        return None
    if frame.get("conversation_id") != conversation_id:
        return None
    try:
        return parse_record(Message, frame.get("payload"))
    except BackendError as exc:
        logger.warning("Ignoring malformed realtime event conversation_id=%s error=%s", conversation_id, exc.message)
        return None


class RealtimeChannel(Subscription):
    """One WebSocket subscribed to a single conversation."""

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession,
        websocket: aiohttp.ClientWebSocketResponse,
        conversation_id: str,
        handler: PushHandler,
    ) -> None:
        self._session = session
        self._websocket = websocket
        self.conversation_id = conversation_id
        self._handler = handler
        self._reader: asyncio.Task[None] | None = None
        self._closed = False

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        while True:
            msg = await self._websocket.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                message = parse_event_frame(msg.data, conversation_id=self.conversation_id)
                if message is None:
                    continue
                try:
                    await self._handler(message)
                except Exception:
                    logger.exception("Push handler failed message_id=%s", message.id)
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                if not self._closed:
                    logger.warning(
                        "Realtime channel dropped conversation_id=%s; updates stop until reopened",
                        self.conversation_id,
                    )
                return

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        if self._reader is not None and self._reader is not current:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        await self._websocket.close()
        await self._session.close()
        logger.debug("Realtime channel closed conversation_id=%s", self.conversation_id)


class HttpMessagingBackend(MessagingBackend):
    """Talks to the messaging service over its REST routes and WebSocket channel."""

    def __init__(
        self,
        base_url: str,
        *,
        access_token: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        ws_url: str | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._client = http_client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)
        self._owns_client = http_client is None
        self._ws_url = ws_url or websocket_url(self._base_url)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs) -> HttpMessagingBackend:
        settings = settings or get_settings()
        return cls(settings.client_base_url, timeout=settings.client_request_timeout_sec, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpMessagingBackend:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: object | None = None,
        params: dict[str, str] | None = None,
    ) -> object:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        try:
            response = await self._client.request(method, path, json=json_body, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Backend request failed method=%s path=%s error=%s", method, path, exc)
            raise BackendError(code="network_error", message=str(exc) or exc.__class__.__name__) from exc

        if response.is_error:
            raise _error_from_response(response)
        try:
            body = response.json()
        except ValueError as exc:
            raise BackendError(code="invalid_payload", message="Backend response is not JSON") from exc
        if not isinstance(body, dict) or "data" not in body:
            raise BackendError(code="invalid_payload", message="Backend response has no data envelope")
        return body["data"]

    async def _authenticate(self, path: str, payload: dict[str, object]) -> ProfileSummary:
        data = await self._request("POST", path, json_body=payload)
        if not isinstance(data, dict) or not isinstance(data.get("tokens"), dict):
            raise BackendError(code="invalid_payload", message="Authentication response is malformed")
        token = data["tokens"].get("access_token")
        if not isinstance(token, str):
            raise BackendError(code="invalid_payload", message="Authentication response has no access token")
        self.access_token = token
        return parse_record(ProfileSummary, data.get("user"))

    async def register(self, email: str, password: str, full_name: str | None = None) -> ProfileSummary:
        return await self._authenticate(
            "/auth/register",
            {"email": email, "password": password, "full_name": full_name},
        )

    async def sign_in(self, email: str, password: str) -> ProfileSummary:
        return await self._authenticate("/auth/login", {"email": email, "password": password})

    async def current_profile(self) -> ProfileSummary:
        return parse_record(ProfileSummary, await self._request("GET", "/profiles/me"))

    async def list_conversations(self) -> list[ConversationRow]:
        return parse_records(ConversationRow, await self._request("GET", "/conversations"))

    async def find_conversation(self, user1_id: str, user2_id: str) -> Conversation | None:
        data = await self._request(
            "GET",
            "/conversations/lookup",
            params={"user1_id": user1_id, "user2_id": user2_id},
        )
        return None if data is None else parse_record(Conversation, data)

    async def insert_conversation(
        self,
        *,
        user1_id: str,
        user2_id: str,
        listing_id: str | None = None,
    ) -> Conversation:
        data = await self._request(
            "POST",
            "/conversations",
            json_body={"user1_id": user1_id, "user2_id": user2_id, "listing_id": listing_id},
        )
        return parse_record(Conversation, data)

    async def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None:
        await self._request(
            "PATCH",
            f"/conversations/{conversation_id}",
            json_body={"last_message_at": last_message_at.isoformat()},
        )

    async def delete_conversation(self, conversation_id: str) -> int:
        return self._count(await self._request("DELETE", f"/conversations/{conversation_id}"), "deleted")

    async def list_messages(self, conversation_id: str) -> list[Message]:
        data = await self._request("GET", f"/conversations/{conversation_id}/messages")
        if not isinstance(data, dict):
            raise BackendError(code="invalid_payload", message="Message list response is malformed")
        return parse_records(Message, data.get("messages"))

    async def latest_message(self, conversation_id: str) -> Message | None:
        data = await self._request("GET", f"/conversations/{conversation_id}/messages/latest")
        return None if data is None else parse_record(Message, data)

    async def count_unread(self, conversation_id: str) -> int:
        return self._count(
            await self._request("GET", f"/conversations/{conversation_id}/messages/unread-count"),
            "count",
        )

    async def insert_message(
        self,
        conversation_id: str,
        *,
        message_text: str,
        client_message_id: str | None = None,
    ) -> Message:
        data = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json_body={"message_text": message_text, "client_message_id": client_message_id},
        )
        return parse_record(Message, data)

    async def mark_conversation_read(self, conversation_id: str) -> int:
        return self._count(await self._request("POST", f"/conversations/{conversation_id}/messages/read"), "updated")

    async def mark_message_read(self, message_id: str) -> int:
        return self._count(await self._request("POST", f"/messages/{message_id}/read"), "updated")

    async def delete_message(self, message_id: str) -> int:
        return self._count(await self._request("DELETE", f"/messages/{message_id}"), "deleted")

    @staticmethod
    def _count(data: object, key: str) -> int:
        value = data.get(key) if isinstance(data, dict) else None
        if not isinstance(value, int):
            raise BackendError(code="invalid_payload", message=f"Response is missing '{key}'")
        return value

    async def subscribe(self, conversation_id: str, handler: PushHandler) -> Subscription:
        if not self.access_token:
            raise BackendError(code="not_authenticated", message="User not authenticated")

        session = aiohttp.ClientSession()
        try:
            websocket = await session.ws_connect(
                self._ws_url,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
            await self._await_frame(websocket, "connection.welcome")
            await websocket.send_json({"op": "subscribe", "conversation_ids": [conversation_id]})
            await self._await_frame(websocket, "ack")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            await session.close()
            reason = _describe_channel_error(exc)
            logger.warning("Realtime subscribe failed conversation_id=%s error=%s", conversation_id, reason)
            raise BackendError(code="network_error", message=reason) from exc
        except BackendError:
            await session.close()
            raise

        channel = RealtimeChannel(
            session=session,
            websocket=websocket,
            conversation_id=conversation_id,
            handler=handler,
        )
        channel.start()
        logger.debug("Realtime channel opened conversation_id=%s", conversation_id)
        return channel

    @staticmethod
    async def _await_frame(websocket: aiohttp.ClientWebSocketResponse, frame_type: str) -> dict[str, object]:
        while True:
            msg = await websocket.receive(timeout=HANDSHAKE_TIMEOUT_SEC)
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise BackendError(code="channel_closed", message="Realtime channel closed during handshake")
            try:
                frame = json.loads(msg.data)
            except json.JSONDecodeError:
                continue
            if not isinstance(frame, dict):
                continue
            if frame.get("type") == "error":
                error = frame.get("error") if isinstance(frame.get("error"), dict) else {}
                raise BackendError(
                    code=str(error.get("code", "channel_error")).lower(),
                    message=str(error.get("message", "Realtime channel rejected the request")),
                )
            if frame.get("type") == frame_type:
                return frame
