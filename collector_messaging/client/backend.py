from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime

from collector_messaging.client.records import Conversation, ConversationRow, Message

PushHandler = Callable[[Message], Awaitable[None]]


class Subscription(ABC):
    """Handle on one live conversation channel."""

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Release the channel. Calling it again is a no-op."""


class MessagingBackend(ABC):
    """Row operations and realtime channel the messaging client relies on.

    Calls act as the authenticated user the backend was constructed for;
    ownership and participation are enforced by the backend as row filters.
    Every failure, rejected or unreachable, is raised as ``BackendError``.
    """

    @abstractmethod
    async def list_conversations(self) -> list[ConversationRow]: ...

    @abstractmethod
    async def find_conversation(self, user1_id: str, user2_id: str) -> Conversation | None: ...

    @abstractmethod
    async def insert_conversation(
        self,
        *,
        user1_id: str,
        user2_id: str,
        listing_id: str | None = None,
    ) -> Conversation: ...

    @abstractmethod
    async def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None: ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> int:
        """Return the number of rows deleted."""

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> list[Message]:
        """Return the conversation's messages, oldest first."""

    @abstractmethod
    async def latest_message(self, conversation_id: str) -> Message | None: ...

    @abstractmethod
    async def count_unread(self, conversation_id: str) -> int:
        """Count unread messages sent by the other participant."""

    @abstractmethod
    async def insert_message(
        self,
        conversation_id: str,
        *,
        message_text: str,
        client_message_id: str | None = None,
    ) -> Message: ...

    @abstractmethod
    async def mark_conversation_read(self, conversation_id: str) -> int:
        """Mark every unread message from the other participant read; return rows updated."""

    @abstractmethod
    async def mark_message_read(self, message_id: str) -> int: ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> int:
        """Delete one of the caller's own messages; return rows deleted."""

    @abstractmethod
    async def subscribe(self, conversation_id: str, handler: PushHandler) -> Subscription: ...
