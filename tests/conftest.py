from __future__ import annotations

import asyncio
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import collector_messaging.db.session as db_session
from collector_messaging.client.backend import MessagingBackend, PushHandler, Subscription
from collector_messaging.client.records import Conversation, ConversationRow, Message, ProfileSummary
from collector_messaging.client.results import BackendError
from collector_messaging.main import app


@pytest.fixture()
def client(tmp_path):
    database_path = tmp_path / "test.db"
    db_session.configure_engine(f"sqlite:///{database_path}")
    db_session.init_db()

    with TestClient(app) as test_client:
        yield test_client


class FakeSubscription(Subscription):
    def __init__(self, store: FakeStore, conversation_id: str, handler: PushHandler) -> None:
        self._store = store
        self.conversation_id = conversation_id
        self.handler = handler
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store.unsubscribe_count += 1


class FakeStore:
    """Rows shared by every user's view of the in-memory backend."""

    def __init__(self) -> None:
        self.profiles: dict[str, ProfileSummary] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: list[Message] = []
        self.subscriptions: list[FakeSubscription] = []
        self.pending_pushes: list[tuple[FakeSubscription, Message]] = []
        self.unsubscribe_count = 0
        self._clock = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        self._next_id = 0

    def new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add_profile(self, profile_id: str, full_name: str | None = None) -> ProfileSummary:
        profile = ProfileSummary(id=profile_id, email=f"{profile_id}@example.com", full_name=full_name or profile_id)
        self.profiles[profile_id] = profile
        return profile

    def add_conversation(self, user1_id: str, user2_id: str, *, listing_id: str | None = None) -> Conversation:
        now = self.tick()
        conversation = Conversation(
            id=self.new_id("conv"),
            user1_id=user1_id,
            user2_id=user2_id,
            listing_id=listing_id,
            last_message_at=now,
            created_at=now,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    def add_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        *,
        client_message_id: str | None = None,
    ) -> Message:
        message = Message(
            id=self.new_id("msg"),
            conversation_id=conversation_id,
            sender_id=sender_id,
            message_text=text,
            created_at=self.tick(),
            client_message_id=client_message_id,
        )
        self.messages.append(message)
        return message

    def message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def replace_message(self, updated: Message) -> None:
        self.messages = [updated if message.id == updated.id else message for message in self.messages]

    def conversation_messages(self, conversation_id: str) -> list[Message]:
        return [message for message in self.messages if message.conversation_id == conversation_id]

    def queue_push(self, message: Message) -> None:
        for subscription in self.subscriptions:
            if subscription.active and subscription.conversation_id == message.conversation_id:
                self.pending_pushes.append((subscription, message))

    async def flush_pushes(self) -> None:
        pending, self.pending_pushes = self.pending_pushes, []
        for subscription, message in pending:
            if subscription.active:
                await subscription.handler(message)


class FakeBackend(MessagingBackend):
    """One user's view of the store, filtering rows the way the service does."""

    def __init__(self, store: FakeStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id
        self.calls: list[str] = []
        self.failures: dict[str, BackendError] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.before_insert_conversation = None

    def fail(self, operation: str, code: str = "network_error", message: str = "Backend unavailable") -> None:
        self.failures[operation] = BackendError(code=code, message=message)

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def _participates(self, conversation_id: str) -> bool:
        conversation = self.store.conversations.get(conversation_id)
        return conversation is not None and self.user_id in (conversation.user1_id, conversation.user2_id)

    async def list_conversations(self) -> list[ConversationRow]:
        await self._enter("list_conversations")
        rows = []
        for conversation in self.store.conversations.values():
            if self.user_id not in (conversation.user1_id, conversation.user2_id):
                continue
            rows.append(
                ConversationRow(
                    **conversation.model_dump(),
                    user1=self.store.profiles[conversation.user1_id],
                    user2=self.store.profiles[conversation.user2_id],
                )
            )
        return sorted(rows, key=lambda row: row.last_message_at, reverse=True)

    async def find_conversation(self, user1_id: str, user2_id: str) -> Conversation | None:
        await self._enter("find_conversation")
        for conversation in self.store.conversations.values():
            if conversation.user1_id == user1_id and conversation.user2_id == user2_id:
                return conversation
        return None

    async def insert_conversation(
        self,
        *,
        user1_id: str,
        user2_id: str,
        listing_id: str | None = None,
    ) -> Conversation:
        await self._enter("insert_conversation")
        if self.before_insert_conversation is not None:
            self.before_insert_conversation()
        if user1_id >= user2_id:
            raise BackendError(code="invalid_pair", message="Participant ids must be in ascending order")
        for conversation in self.store.conversations.values():
            if (conversation.user1_id, conversation.user2_id) == (user1_id, user2_id):
                raise BackendError(code="conversation_exists", message="A conversation for this pair already exists")
        return self.store.add_conversation(user1_id, user2_id, listing_id=listing_id)

    async def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None:
        await self._enter("touch_conversation")
        if not self._participates(conversation_id):
            raise BackendError(code="conversation_not_found", message="Conversation not found")
        conversation = self.store.conversations[conversation_id]
        self.store.conversations[conversation_id] = conversation.model_copy(update={"last_message_at": last_message_at})

    async def delete_conversation(self, conversation_id: str) -> int:
        await self._enter("delete_conversation")
        if not self._participates(conversation_id):
            return 0
        del self.store.conversations[conversation_id]
        self.store.messages = [m for m in self.store.messages if m.conversation_id != conversation_id]
        return 1

    async def list_messages(self, conversation_id: str) -> list[Message]:
        await self._enter("list_messages")
        gate = self.gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        if not self._participates(conversation_id):
            raise BackendError(code="conversation_not_found", message="Conversation not found")
        return sorted(self.store.conversation_messages(conversation_id), key=lambda message: message.created_at)

    async def latest_message(self, conversation_id: str) -> Message | None:
        await self._enter("latest_message")
        messages = self.store.conversation_messages(conversation_id)
        return max(messages, key=lambda message: message.created_at) if messages else None

    async def count_unread(self, conversation_id: str) -> int:
        await self._enter("count_unread")
        return sum(
            1
            for message in self.store.conversation_messages(conversation_id)
            if message.sender_id != self.user_id and not message.is_read
        )

    async def insert_message(
        self,
        conversation_id: str,
        *,
        message_text: str,
        client_message_id: str | None = None,
    ) -> Message:
        await self._enter("insert_message")
        if not self._participates(conversation_id):
            raise BackendError(code="conversation_not_found", message="Conversation not found")
        if client_message_id is not None:
            for message in self.store.messages:
                if message.sender_id == self.user_id and message.client_message_id == client_message_id:
                    return message
        message = self.store.add_message(
            conversation_id,
            self.user_id,
            message_text,
            client_message_id=client_message_id,
        )
        self.store.queue_push(message)
        return message

    async def mark_conversation_read(self, conversation_id: str) -> int:
        await self._enter("mark_conversation_read")
        updated = 0
        for message in self.store.conversation_messages(conversation_id):
            if message.sender_id != self.user_id and not message.is_read:
                self.store.replace_message(message.as_read(self.store.tick()))
                updated += 1
        return updated

    async def mark_message_read(self, message_id: str) -> int:
        await self._enter("mark_message_read")
        message = self.store.message(message_id)
        if message is None or message.sender_id == self.user_id or message.is_read:
            return 0
        self.store.replace_message(message.as_read(self.store.tick()))
        return 1

    async def delete_message(self, message_id: str) -> int:
        await self._enter("delete_message")
        message = self.store.message(message_id)
        if message is None or message.sender_id != self.user_id:
            return 0
        self.store.messages = [m for m in self.store.messages if m.id != message_id]
        return 1

    async def subscribe(self, conversation_id: str, handler: PushHandler) -> Subscription:
        await self._enter("subscribe")
        subscription = FakeSubscription(self.store, conversation_id, handler)
        self.store.subscriptions.append(subscription)
        return subscription


@pytest.fixture()
def store() -> FakeStore:
    fake_store = FakeStore()
    fake_store.add_profile("user-a", "Alice Buyer")
    fake_store.add_profile("user-b", "Bob Seller")
    fake_store.add_profile("user-c", "Carol Collector")
    return fake_store


@pytest.fixture()
def alice_backend(store: FakeStore) -> FakeBackend:
    return FakeBackend(store, "user-a")


@pytest.fixture()
def bob_backend(store: FakeStore) -> FakeBackend:
    return FakeBackend(store, "user-b")
