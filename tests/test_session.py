from __future__ import annotations

import asyncio

from collector_messaging.client.session import MessagingSession
from collector_messaging.client.synchronizer import SyncState


def test_buyer_contacts_seller_about_listing(store, alice_backend, bob_backend):
    buyer = MessagingSession(alice_backend, store.profiles["user-a"])
    seller = MessagingSession(bob_backend, store.profiles["user-b"])

    async def scenario():
        contacted = await buyer.contact("user-b", "L123")
        conversation_id = contacted.data.id
        await seller.start()
        await seller.synchronizer.open(conversation_id)
        sent = await buyer.synchronizer.send(conversation_id, "Is this still available?")
        await store.flush_pushes()
        return contacted, sent

    contacted, sent = asyncio.run(scenario())
    conversation_id = contacted.data.id

    assert contacted.ok
    assert contacted.data.listing_id == "L123"
    assert buyer.synchronizer.state is SyncState.SYNCED

    buyer_messages = buyer.synchronizer.messages
    assert [(m.sender_id, m.message_text) for m in buyer_messages] == [("user-a", "Is this still available?")]
    buyer_entry = buyer.directory.get(conversation_id)
    assert buyer_entry.last_message.message_text == "Is this still available?"
    assert buyer_entry.last_message.sender_id == "user-a"
    assert buyer_entry.other_user.id == "user-b"

    seller_messages = seller.synchronizer.messages
    assert [m.id for m in seller_messages] == [sent.data.id]
    assert seller_messages[0].is_read
    seller_entry = seller.directory.get(conversation_id)
    assert seller_entry.last_message.sender_id == "user-a"
    assert seller_entry.unread_count == 0
    assert seller.unread_count == 0
    assert bob_backend.calls.count("mark_message_read") == 1


def test_contact_reuses_existing_conversation(store, alice_backend, bob_backend):
    existing = store.add_conversation("user-a", "user-b")
    seller = MessagingSession(bob_backend, store.profiles["user-b"])

    result = asyncio.run(seller.contact("user-a"))

    assert result.data.id == existing.id
    assert "insert_conversation" not in bob_backend.calls
    assert seller.active_conversation.id == existing.id


def test_delete_active_conversation_closes_channel(store, alice_backend):
    conversation = store.add_conversation("user-a", "user-b")
    session = MessagingSession(alice_backend, store.profiles["user-a"])

    async def scenario():
        await session.contact("user-b")
        return await session.delete_conversation(conversation.id)

    result = asyncio.run(scenario())

    assert result.ok
    assert session.synchronizer.state is SyncState.CLOSED
    assert session.synchronizer.conversation_id is None
    assert session.directory.entries == []
    assert store.unsubscribe_count == 1


def test_sign_out_releases_channel_and_blocks_further_calls(store, alice_backend):
    store.add_conversation("user-a", "user-b")
    store.add_message(next(iter(store.conversations)), "user-b", "ping")
    session = MessagingSession(alice_backend, store.profiles["user-a"])

    async def scenario():
        await session.contact("user-b")
        await session.sign_out()
        alice_backend.calls.clear()
        return await session.start()

    after_sign_out = asyncio.run(scenario())

    assert after_sign_out.code == "not_authenticated"
    assert alice_backend.calls == []
    assert session.current_user is None
    assert session.unread_count == 0
    assert session.synchronizer.messages == []
    assert session.synchronizer.state is SyncState.CLOSED
    assert store.unsubscribe_count == 1
