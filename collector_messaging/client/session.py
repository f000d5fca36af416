from __future__ import annotations

from collections.abc import Callable
import logging

from collector_messaging.client.backend import MessagingBackend
from collector_messaging.client.directory import ConversationDirectory
from collector_messaging.client.records import Conversation, DirectoryEntry, ProfileSummary
from collector_messaging.client.results import OperationResult
from collector_messaging.client.synchronizer import MessageSynchronizer, new_client_message_id

logger = logging.getLogger(__name__)


class MessagingSession:
    """Messaging state for one signed-in user over one backend."""

    def __init__(
        self,
        backend: MessagingBackend,
        current_user: ProfileSummary | None,
        *,
        client_message_id_factory: Callable[[], str] = new_client_message_id,
    ) -> None:
        self.backend = backend
        self.current_user = current_user
        user_id = current_user.id if current_user is not None else None
        self.directory = ConversationDirectory(backend, current_user_id=user_id)
        self.synchronizer = MessageSynchronizer(
            backend,
            self.directory,
            current_user_id=user_id,
            client_message_id_factory=client_message_id_factory,
        )

    @property
    def unread_count(self) -> int:
        return self.directory.unread_total

    @property
    def active_conversation(self) -> DirectoryEntry | None:
        conversation_id = self.synchronizer.conversation_id
        if conversation_id is None:
            return None
        return self.directory.get(conversation_id)

    async def start(self) -> OperationResult[list[DirectoryEntry]]:
        return await self.directory.refresh()

    async def contact(self, other_user_id: str, listing_id: str | None = None) -> OperationResult[Conversation]:
        """Find or start the conversation with another user and make it the active one."""
        result = await self.directory.get_or_create(other_user_id, listing_id)
        if not result.ok or result.data is None:
            return result
        opened = await self.synchronizer.open(result.data.id)
        if not opened.ok:
            return OperationResult.failure(opened.code or "open_failed", opened.error or "Could not open conversation")
        return result

    async def delete_conversation(self, conversation_id: str) -> OperationResult[None]:
        result = await self.directory.delete(conversation_id)
        if result.ok and self.synchronizer.conversation_id == conversation_id:
            await self.synchronizer.close()
            self.synchronizer.forget(conversation_id)
        return result

    async def sign_out(self) -> None:
        user_id = self.current_user.id if self.current_user is not None else None
        await self.synchronizer.close()
        self.synchronizer.forget()
        self.synchronizer.current_user_id = None
        self.directory.clear()
        self.directory.current_user_id = None
        self.current_user = None
        logger.info("Messaging session signed out user_id=%s", user_id)
