from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
import logging
import uuid

from collector_messaging.client.backend import MessagingBackend, PushHandler, Subscription
from collector_messaging.client.directory import ConversationDirectory
from collector_messaging.client.records import Message
from collector_messaging.client.results import BackendError, OperationResult

logger = logging.getLogger(__name__)

STALE = "stale"


class SyncState(str, Enum):
    CLOSED = "closed"
    LOADING = "loading"
    SYNCED = "synced"


def new_client_message_id() -> str:
    return uuid.uuid4().hex


class MessageSynchronizer:
    """Keeps the active conversation's messages in step with the backend.

    At most one conversation is live at a time. Opening a conversation
    releases the previous channel first, loads history, acknowledges
    incoming messages and then subscribes. Every open bumps a generation
    counter; results of an older generation that resolve late are dropped
    instead of being applied to the conversation now on screen.

    A dropped channel is not re-established; pushes stop until the
    conversation is opened again.
    """

    def __init__(
        self,
        backend: MessagingBackend,
        directory: ConversationDirectory,
        *,
        current_user_id: str | None,
        client_message_id_factory: Callable[[], str] = new_client_message_id,
    ) -> None:
        self._backend = backend
        self._directory = directory
        self.current_user_id = current_user_id
        self._client_message_id_factory = client_message_id_factory
        self._messages_by_conversation: dict[str, list[Message]] = {}
        self._subscription: Subscription | None = None
        self._generation = 0
        self.conversation_id: str | None = None
        self.state = SyncState.CLOSED

    @property
    def messages(self) -> list[Message]:
        if self.conversation_id is None:
            return []
        return self.messages_for(self.conversation_id)

    def messages_for(self, conversation_id: str) -> list[Message]:
        return list(self._messages_by_conversation.get(conversation_id, []))

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _stale(self, generation: int, conversation_id: str) -> OperationResult[list[Message]]:
        logger.debug(
            "Dropping stale result generation=%s current=%s conversation_id=%s",
            generation,
            self._generation,
            conversation_id,
        )
        return OperationResult.failure(STALE, "Conversation changed before loading finished")

    def _append(self, message: Message) -> bool:
        messages = self._messages_by_conversation.setdefault(message.conversation_id, [])
        if any(existing.same_as(message) for existing in messages):
            return False
        messages.append(message)
        return True

    def _replace(self, message: Message) -> None:
        messages = self._messages_by_conversation.get(message.conversation_id, [])
        for index, existing in enumerate(messages):
            if existing.id == message.id:
                messages[index] = message
                return

    def _push_handler(self, generation: int) -> PushHandler:
        async def handle(message: Message) -> None:
            await self.on_push(message, generation=generation)

        return handle

    async def open(self, conversation_id: str) -> OperationResult[list[Message]]:
        user_id = self.current_user_id
        if user_id is None:
            return OperationResult.not_authenticated()

        await self.close()
        self._generation += 1
        generation = self._generation
        self.conversation_id = conversation_id
        self.state = SyncState.LOADING
        logger.debug("Opening conversation conversation_id=%s generation=%s", conversation_id, generation)

        try:
            history = await self._backend.list_messages(conversation_id)
        except BackendError as exc:
            if not self._is_current(generation):
                return self._stale(generation, conversation_id)
            logger.error("Fetching messages failed conversation_id=%s error=%s", conversation_id, exc.message)
            self._messages_by_conversation[conversation_id] = []
            self.state = SyncState.CLOSED
            return OperationResult.from_error(exc)

        if not self._is_current(generation):
            return self._stale(generation, conversation_id)
        self._messages_by_conversation[conversation_id] = list(history)

        await self._acknowledge_history(conversation_id, user_id, generation)
        if not self._is_current(generation):
            return self._stale(generation, conversation_id)

        await self._directory.refresh()
        if not self._is_current(generation):
            return self._stale(generation, conversation_id)

        try:
            subscription = await self._backend.subscribe(conversation_id, self._push_handler(generation))
        except BackendError as exc:
            if not self._is_current(generation):
                return self._stale(generation, conversation_id)
            logger.error("Subscribing failed conversation_id=%s error=%s", conversation_id, exc.message)
            self.state = SyncState.CLOSED
            return OperationResult.from_error(exc)

        if not self._is_current(generation):
            await subscription.unsubscribe()
            return self._stale(generation, conversation_id)

        self._subscription = subscription
        self.state = SyncState.SYNCED
        logger.info("Conversation synced conversation_id=%s messages=%s", conversation_id, len(self.messages))
        return OperationResult.success(self.messages)

    async def _acknowledge_history(self, conversation_id: str, user_id: str, generation: int) -> None:
        try:
            updated = await self._backend.mark_conversation_read(conversation_id)
        except BackendError as exc:
            logger.warning("Marking conversation read failed conversation_id=%s error=%s", conversation_id, exc.message)
            return

        if not self._is_current(generation):
            return
        logger.debug("Marked conversation read conversation_id=%s updated=%s", conversation_id, updated)
        read_at = datetime.now(UTC)
        self._messages_by_conversation[conversation_id] = [
            message.as_read(read_at) if message.sender_id != user_id else message
            for message in self._messages_by_conversation.get(conversation_id, [])
        ]

    async def send(self, conversation_id: str, text: str) -> OperationResult[Message]:
        user_id = self.current_user_id
        if user_id is None:
            return OperationResult.not_authenticated()
        if not text or not text.strip():
            return OperationResult.failure("empty_message", "Message text is required")

        try:
            message = await self._backend.insert_message(
                conversation_id,
                message_text=text,
                client_message_id=self._client_message_id_factory(),
            )
        except BackendError as exc:
            logger.error("Sending message failed conversation_id=%s error=%s", conversation_id, exc.message)
            return OperationResult.from_error(exc)

        # The realtime echo of this insert may already have been appended.
        self._append(message)

        try:
            await self._backend.touch_conversation(conversation_id, message.created_at)
        except BackendError as exc:
            logger.warning("Updating conversation activity failed conversation_id=%s error=%s", conversation_id, exc.message)

        self._directory.apply_activity(
            conversation_id,
            message_text=message.message_text,
            sender_id=user_id,
            created_at=message.created_at,
        )
        logger.debug("Message sent message_id=%s conversation_id=%s", message.id, conversation_id)
        return OperationResult.success(message)

    async def on_push(self, message: Message, *, generation: int | None = None) -> bool:
        """Apply a message delivered by the live channel; return whether it was new."""
        if generation is not None and not self._is_current(generation):
            logger.debug("Ignoring push from a closed channel message_id=%s", message.id)
            return False
        if message.conversation_id != self.conversation_id:
            logger.debug("Ignoring push for inactive conversation_id=%s", message.conversation_id)
            return False

        if not self._append(message):
            logger.debug("Ignoring duplicate push message_id=%s", message.id)
            return False
        user_id = self.current_user_id
        if user_id is None or message.sender_id == user_id:
            return True

        push_generation = self._generation
        try:
            await self._backend.mark_message_read(message.id)
        except BackendError as exc:
            logger.warning("Acknowledging pushed message failed message_id=%s error=%s", message.id, exc.message)
        else:
            if self._is_current(push_generation):
                self._replace(message.as_read(datetime.now(UTC)))

        self._directory.apply_activity(
            message.conversation_id,
            message_text=message.message_text,
            sender_id=message.sender_id,
            created_at=message.created_at,
        )
        return True

    async def close(self) -> None:
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.unsubscribe()
            except BackendError as exc:
                logger.warning("Unsubscribing failed conversation_id=%s error=%s", self.conversation_id, exc.message)
            logger.debug("Conversation closed conversation_id=%s", self.conversation_id)
        self.state = SyncState.CLOSED

    async def delete_message(self, message_id: str) -> OperationResult[None]:
        if self.current_user_id is None:
            return OperationResult.not_authenticated()

        try:
            deleted = await self._backend.delete_message(message_id)
        except BackendError as exc:
            logger.error("Deleting message failed message_id=%s error=%s", message_id, exc.message)
            return OperationResult.from_error(exc)

        if deleted == 0:
            logger.warning("Delete matched no message message_id=%s", message_id)
            return OperationResult.failure("message_not_found", "Message not found or not sent by you")

        # The directory preview is left as is, even if this was the last message.
        for conversation_id, messages in self._messages_by_conversation.items():
            self._messages_by_conversation[conversation_id] = [
                message for message in messages if message.id != message_id
            ]
        return OperationResult.success()

    def forget(self, conversation_id: str | None = None) -> None:
        """Drop cached messages for one conversation, or for all of them."""
        if conversation_id is None:
            self._messages_by_conversation.clear()
            self.conversation_id = None
            return
        self._messages_by_conversation.pop(conversation_id, None)
        if self.conversation_id == conversation_id:
            self.conversation_id = None
