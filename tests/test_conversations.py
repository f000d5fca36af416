from __future__ import annotations

import collector_messaging.db.session as db_session
from collector_messaging.models import MarketplaceListing


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


def _pair(first_id: str, second_id: str) -> dict[str, str]:
    user1_id, user2_id = sorted((first_id, second_id))
    return {"user1_id": user1_id, "user2_id": user2_id}


def _create_listing(seller_id: str, title: str = "1952 Topps Mickey Mantle") -> str:
    session_factory = db_session.SessionLocal
    assert session_factory is not None
    with session_factory() as db:
        listing = MarketplaceListing(seller_id=seller_id, title=title, photo_url="https://img.example.com/1.jpg")
        db.add(listing)
        db.commit()
        return listing.id


def test_conversation_payload_includes_participant_profiles(client):
    alice_id, alice_token = _register(client, "alice@example.com")
    bob_id, _ = _register(client, "bob@example.com")
    listing_id = _create_listing(bob_id)

    create_response = client.post(
        "/v1/conversations",
        json={**_pair(alice_id, bob_id), "listing_id": listing_id},
        headers=_auth_headers(alice_token),
    )
    assert create_response.status_code == 201
    created = create_response.json()["data"]
    assert created["listing_id"] == listing_id

    list_response = client.get("/v1/conversations", headers=_auth_headers(alice_token))
    assert list_response.status_code == 200
    rows = list_response.json()["data"]
    assert len(rows) == 1
    assert rows[0]["id"] == created["id"]
    assert {rows[0]["user1"]["id"], rows[0]["user2"]["id"]} == {alice_id, bob_id}
    assert rows[0]["listing"]["title"] == "1952 Topps Mickey Mantle"


def test_lookup_returns_existing_pair_or_null(client):
    alice_id, alice_token = _register(client, "alice@example.com")
    bob_id, bob_token = _register(client, "bob@example.com")
    _, carol_token = _register(client, "carol@example.com")

    empty = client.get("/v1/conversations/lookup", params=_pair(alice_id, bob_id), headers=_auth_headers(alice_token))
    assert empty.status_code == 200
    assert empty.json()["data"] is None

    created = client.post("/v1/conversations", json=_pair(alice_id, bob_id), headers=_auth_headers(alice_token))
    conversation_id = created.json()["data"]["id"]

    found = client.get("/v1/conversations/lookup", params=_pair(alice_id, bob_id), headers=_auth_headers(bob_token))
    assert found.json()["data"]["id"] == conversation_id

    outsider = client.get(
        "/v1/conversations/lookup",
        params=_pair(alice_id, bob_id),
        headers=_auth_headers(carol_token),
    )
    assert outsider.status_code == 403
    assert outsider.json()["error"]["code"] == "forbidden_pair"


def test_create_conversation_rejections(client):
    alice_id, alice_token = _register(client, "alice@example.com")
    bob_id, _ = _register(client, "bob@example.com")
    carol_id, _ = _register(client, "carol@example.com")
    headers = _auth_headers(alice_token)

    pair = _pair(alice_id, bob_id)
    reversed_pair = {"user1_id": pair["user2_id"], "user2_id": pair["user1_id"]}
    cases = [
        ({"user1_id": alice_id, "user2_id": alice_id}, 400, "invalid_target"),
        (reversed_pair, 400, "invalid_pair"),
        (_pair(bob_id, carol_id), 403, "forbidden_pair"),
        (_pair(alice_id, "missing-profile"), 404, "user_not_found"),
        ({**pair, "listing_id": "missing-listing"}, 404, "listing_not_found"),
    ]
    for payload, status_code, code in cases:
        response = client.post("/v1/conversations", json=payload, headers=headers)
        assert response.status_code == status_code, payload
        assert response.json()["error"]["code"] == code

    assert client.post("/v1/conversations", json=pair, headers=headers).status_code == 201
    duplicate = client.post("/v1/conversations", json=pair, headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "conversation_exists"


def test_touch_reorders_conversation_list(client):
    alice_id, alice_token = _register(client, "alice@example.com")
    bob_id, _ = _register(client, "bob@example.com")
    carol_id, _ = _register(client, "carol@example.com")
    headers = _auth_headers(alice_token)

    with_bob = client.post("/v1/conversations", json=_pair(alice_id, bob_id), headers=headers).json()["data"]
    with_carol = client.post("/v1/conversations", json=_pair(alice_id, carol_id), headers=headers).json()["data"]

    touched = client.patch(
        f"/v1/conversations/{with_bob['id']}",
        json={"last_message_at": "2099-01-01T00:00:00+00:00"},
        headers=headers,
    )
    assert touched.status_code == 200
    assert touched.json()["data"]["last_message_at"].startswith("2099-01-01T00:00:00")

    rows = client.get("/v1/conversations", headers=headers).json()["data"]
    assert [row["id"] for row in rows] == [with_bob["id"], with_carol["id"]]


def test_delete_conversation_is_participant_scoped(client):
    alice_id, alice_token = _register(client, "alice@example.com")
    bob_id, _ = _register(client, "bob@example.com")
    _, carol_token = _register(client, "carol@example.com")

    conversation_id = client.post(
        "/v1/conversations",
        json=_pair(alice_id, bob_id),
        headers=_auth_headers(alice_token),
    ).json()["data"]["id"]
    client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json={"message_text": "hello"},
        headers=_auth_headers(alice_token),
    )

    outsider = client.delete(f"/v1/conversations/{conversation_id}", headers=_auth_headers(carol_token))
    assert outsider.status_code == 200
    assert outsider.json()["data"]["deleted"] == 0

    deleted = client.delete(f"/v1/conversations/{conversation_id}", headers=_auth_headers(alice_token))
    assert deleted.json()["data"]["deleted"] == 1

    gone = client.get(f"/v1/conversations/{conversation_id}/messages", headers=_auth_headers(alice_token))
    assert gone.status_code == 404
    assert gone.json()["error"]["code"] == "conversation_not_found"
