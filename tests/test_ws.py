from __future__ import annotations

import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from collector_messaging.realtime.connection_manager import ConnectionManager, SubscriptionLimitExceeded
from collector_messaging.realtime.protocol import ProtocolError, SubscribeCommand, parse_command


def _register(client, email: str, password: str = "password123") -> tuple[str, str]:
    response = client.post(
        "/v1/auth/register",
        json={"email": email, "full_name": email.split("@")[0], "password": password},
    )
    assert response.status_code == 201
    data = response.json()["data"]
    return data["user"]["id"], data["tokens"]["access_token"]


def _auth_headers(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def _conversation(client, access_token: str, first_id: str, second_id: str) -> str:
    user1_id, user2_id = sorted((first_id, second_id))
    response = client.post(
        "/v1/conversations",
        json={"user1_id": user1_id, "user2_id": user2_id},
        headers=_auth_headers(access_token),
    )
    assert response.status_code == 201
    return response.json()["data"]["id"]


def test_parse_command_rejects_malformed_frames():
    assert isinstance(
        parse_command('{"op": "subscribe", "conversation_ids": ["c1"]}', max_bytes=4096),
        SubscribeCommand,
    )

    for raw_text in ("not json", "[1, 2]", '{"op": "publish"}', '{"op": "subscribe"}'):
        with pytest.raises(ProtocolError) as exc_info:
            parse_command(raw_text, max_bytes=4096)
        assert exc_info.value.code == "INVALID_COMMAND"

    with pytest.raises(ProtocolError):
        parse_command('{"op": "ping"}', max_bytes=4)


def test_ws_rejects_invalid_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/v1/ws?access_token=invalid-token") as websocket:
            websocket.receive_json()


def test_ws_answers_ping_and_reports_bad_commands(client):
    _, alice_token = _register(client, "alice@example.com")

    with client.websocket_connect(f"/v1/ws?access_token={alice_token}") as websocket:
        assert websocket.receive_json()["type"] == "connection.welcome"

        websocket.send_json({"op": "ping", "ts": 42})
        assert websocket.receive_json() == {"type": "pong", "ts": 42}

        websocket.send_text("{broken")
        error = websocket.receive_json()
        assert error["type"] == "error"
        assert error["error"]["code"] == "INVALID_COMMAND"


def test_ws_subscribe_forbidden_for_non_participant(client):
    alice_id, alice_token = _register(client, "alice@example.com")
    bob_id, _ = _register(client, "bob@example.com")
    _, carol_token = _register(client, "carol@example.com")
    conversation_id = _conversation(client, alice_token, alice_id, bob_id)

    with client.websocket_connect(f"/v1/ws?access_token={carol_token}") as websocket:
        welcome = websocket.receive_json()
        assert welcome["type"] == "connection.welcome"

        websocket.send_json({"op": "subscribe", "conversation_ids": [conversation_id]})
        response = websocket.receive_json()
        assert response["type"] == "error"
        assert response["error"]["code"] == "FORBIDDEN_CONVERSATION"


def test_ws_delivers_message_events_to_subscribers(client):
    alice_id, alice_token = _register(client, "alice@example.com")
    bob_id, bob_token = _register(client, "bob@example.com")
    conversation_id = _conversation(client, alice_token, alice_id, bob_id)

    with client.websocket_connect(f"/v1/ws?access_token={bob_token}") as websocket:
        welcome = websocket.receive_json()
        assert welcome["type"] == "connection.welcome"
        assert welcome["user_id"] == bob_id

        websocket.send_json({"op": "subscribe", "conversation_ids": [conversation_id]})
        ack = websocket.receive_json()
        assert ack["type"] == "ack"
        assert ack["op"] == "subscribe"
        assert ack["ok"] is True

        send_response = client.post(
            f"/v1/conversations/{conversation_id}/messages",
            json={"client_message_id": "client-msg-realtime-0001", "message_text": "hello over ws"},
            headers=_auth_headers(alice_token),
        )
        assert send_response.status_code == 201

        event = websocket.receive_json()
        assert event["type"] == "message.created"
        assert event["conversation_id"] == conversation_id
        assert event["payload"]["id"] == send_response.json()["data"]["id"]
        assert event["payload"]["message_text"] == "hello over ws"
        assert event["payload"]["sender_id"] == alice_id

        websocket.send_json({"op": "unsubscribe", "conversation_ids": [conversation_id]})
        unsubscribed = websocket.receive_json()
        assert unsubscribed["type"] == "ack"
        assert unsubscribed["op"] == "unsubscribe"


class _FakeSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, object]] = []
        self.closed_with: int | None = None

    async def send_json(self, payload: dict[str, object]) -> None:
        self.sent.append(payload)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


def test_connection_manager_fans_out_to_subscribers_only():
    async def scenario():
        manager = ConnectionManager(max_subscriptions_per_connection=2)
        listening = await manager.register(_FakeSocket(), profile_id="profile-a")
        idle = await manager.register(_FakeSocket(), profile_id="profile-b")
        await manager.subscribe(listening.connection_id, ["conv-1", "conv-1"])
        with pytest.raises(SubscriptionLimitExceeded):
            await manager.subscribe(listening.connection_id, ["conv-2", "conv-3"])

        delivered = await manager.broadcast("conv-1", {"type": "message.created"})
        await asyncio.sleep(0.01)
        counts = (manager.connection_count, manager.subscriber_count("conv-1"))
        await manager.unregister(listening.connection_id)
        await manager.unregister(idle.connection_id)
        return delivered, counts, listening.websocket, idle.websocket, manager

    delivered, counts, listening_socket, idle_socket, manager = asyncio.run(scenario())

    assert delivered == 1
    assert counts == (2, 1)
    assert listening_socket.sent == [{"type": "message.created"}]
    assert idle_socket.sent == []
    assert listening_socket.closed_with == 1000
    assert manager.connection_count == 0
    assert manager.subscriber_count("conv-1") == 0


def test_health_reports_realtime_state(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["ok"] is True
    assert data["realtime_dispatcher_running"] is True
    assert data["websocket_connections"] == 0
