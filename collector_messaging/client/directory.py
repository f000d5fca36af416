from __future__ import annotations

import asyncio
from datetime import datetime
import logging

from collector_messaging.client.backend import MessagingBackend
from collector_messaging.client.records import Conversation, ConversationRow, DirectoryEntry, LastMessage
from collector_messaging.client.results import BackendError, OperationResult

logger = logging.getLogger(__name__)


def canonical_pair(user_id: str, other_user_id: str) -> tuple[str, str]:
    first, second = sorted((user_id, other_user_id))
    return first, second


def sort_entries(entries: list[DirectoryEntry]) -> list[DirectoryEntry]:
    return sorted(entries, key=lambda entry: entry.last_message_at, reverse=True)


class ConversationDirectory:
    """The current user's conversations, newest activity first.

    Entries are rebuilt from the backend by ``refresh`` and patched in place
    by ``apply_activity`` when a message is sent or received locally.
    """

    def __init__(self, backend: MessagingBackend, *, current_user_id: str | None) -> None:
        self._backend = backend
        self.current_user_id = current_user_id
        self._entries: list[DirectoryEntry] = []
        self.unread_total = 0

    @property
    def entries(self) -> list[DirectoryEntry]:
        return list(self._entries)

    def get(self, conversation_id: str) -> DirectoryEntry | None:
        for entry in self._entries:
            if entry.id == conversation_id:
                return entry
        return None

    async def _build_entry(self, row: ConversationRow, user_id: str) -> DirectoryEntry:
        # Two lookups per conversation; fine for a personal inbox.
        latest, unread = await asyncio.gather(
            self._backend.latest_message(row.id),
            self._backend.count_unread(row.id),
        )
        last_message = None
        if latest is not None:
            last_message = LastMessage(
                message_text=latest.message_text,
                sender_id=latest.sender_id,
                created_at=latest.created_at,
            )
        return DirectoryEntry(
            id=row.id,
            user1_id=row.user1_id,
            user2_id=row.user2_id,
            listing_id=row.listing_id,
            last_message_at=row.last_message_at,
            created_at=row.created_at,
            other_user=row.other_user(user_id),
            listing=row.listing,
            last_message=last_message,
            unread_count=unread,
        )

    async def refresh(self) -> OperationResult[list[DirectoryEntry]]:
        user_id = self.current_user_id
        if user_id is None:
            return OperationResult.not_authenticated()

        try:
            rows = await self._backend.list_conversations()
            built = await asyncio.gather(
                *(self._build_entry(row, user_id) for row in rows),
                return_exceptions=True,
            )
        except BackendError as exc:
            logger.error("Fetching conversations failed user_id=%s code=%s error=%s", user_id, exc.code, exc.message)
            return OperationResult.from_error(exc)

        for item in built:
            if isinstance(item, BaseException):
                if isinstance(item, BackendError):
                    logger.error("Fetching conversation details failed user_id=%s error=%s", user_id, item.message)
                    return OperationResult.from_error(item)
                raise item

        if user_id != self.current_user_id:
            logger.debug("Discarding directory fetch for signed-out user_id=%s", user_id)
            return OperationResult.not_authenticated()

        self._entries = sort_entries(list(built))
        self.unread_total = sum(entry.unread_count for entry in self._entries)
        logger.debug(
            "Directory refreshed user_id=%s conversations=%s unread=%s",
            user_id,
            len(self._entries),
            self.unread_total,
        )
        return OperationResult.success(self.entries)

    async def get_or_create(
        self,
        other_user_id: str,
        listing_id: str | None = None,
    ) -> OperationResult[Conversation]:
        user_id = self.current_user_id
        if user_id is None:
            return OperationResult.not_authenticated()
        if other_user_id == user_id:
            return OperationResult.failure("invalid_target", "Cannot start a conversation with yourself")

        user1_id, user2_id = canonical_pair(user_id, other_user_id)
        try:
            existing = await self._backend.find_conversation(user1_id, user2_id)
            if existing is not None:
                logger.debug("Reusing conversation conversation_id=%s", existing.id)
                return OperationResult.success(existing)
            conversation = await self._insert_or_recover(user1_id, user2_id, listing_id)
        except BackendError as exc:
            logger.error("Get or create conversation failed pair=%s,%s error=%s", user1_id, user2_id, exc.message)
            return OperationResult.from_error(exc)

        await self.refresh()
        return OperationResult.success(conversation)

    async def _insert_or_recover(self, user1_id: str, user2_id: str, listing_id: str | None) -> Conversation:
        try:
            conversation = await self._backend.insert_conversation(
                user1_id=user1_id,
                user2_id=user2_id,
                listing_id=listing_id,
            )
        except BackendError as exc:
            if exc.code != "conversation_exists":
                raise
            # Another client created the pair between our lookup and insert.
            logger.info("Conversation insert lost a race pair=%s,%s", user1_id, user2_id)
            conversation = await self._backend.find_conversation(user1_id, user2_id)
            if conversation is None:
                raise
            return conversation

        logger.info("Conversation created conversation_id=%s listing_id=%s", conversation.id, listing_id)
        return conversation

    def apply_activity(
        self,
        conversation_id: str,
        *,
        message_text: str,
        sender_id: str,
        created_at: datetime,
    ) -> bool:
        for index, entry in enumerate(self._entries):
            if entry.id != conversation_id:
                continue
            self._entries[index] = entry.model_copy(
                update={
                    "last_message_at": created_at,
                    "last_message": LastMessage(message_text=message_text, sender_id=sender_id, created_at=created_at),
                }
            )
            self._entries = sort_entries(self._entries)
            return True

        logger.debug("Activity for conversation not in directory conversation_id=%s", conversation_id)
        return False

    async def delete(self, conversation_id: str) -> OperationResult[None]:
        if self.current_user_id is None:
            return OperationResult.not_authenticated()

        try:
            deleted = await self._backend.delete_conversation(conversation_id)
        except BackendError as exc:
            logger.error("Deleting conversation failed conversation_id=%s error=%s", conversation_id, exc.message)
            return OperationResult.from_error(exc)

        if deleted == 0:
            return OperationResult.failure("conversation_not_found", "Conversation not found")

        self._entries = [entry for entry in self._entries if entry.id != conversation_id]
        self.unread_total = sum(entry.unread_count for entry in self._entries)
        return OperationResult.success()

    def clear(self) -> None:
        self._entries = []
        self.unread_total = 0
