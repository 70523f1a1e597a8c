"""Message store: validated, ordered appends."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .errors import InvalidRequest
from .locks import KeyedLock
from .schemas import Message
from .store import ChatStore

logger = logging.getLogger(__name__)

OnCommit = Callable[[Message], Awaitable[None]]


class MessageStore:
    """Appends messages to conversations.

    Appends to the same conversation are serialized, so ``sentAt`` order,
    commit order and the order of ``on_commit`` callbacks are the same.
    """

    def __init__(self, store: ChatStore, max_length: int = 2000) -> None:
        self._store = store
        self.max_length = max_length
        self._conversation_locks = KeyedLock()

    def validate_content(self, content: str) -> None:
        if not content or not content.strip():
            raise InvalidRequest("Message content cannot be empty")
        if len(content) > self.max_length:
            raise InvalidRequest(
                f"Message too long (max {self.max_length} characters)"
            )

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        on_commit: Optional[OnCommit] = None,
    ) -> Message:
        """Persist a message and bump the conversation's lastMessageAt.

        Args:
            conversation_id: Target conversation.
            sender_id: Must be a participant of the conversation.
            content: Non-empty text, at most ``max_length`` characters.
            on_commit: Awaited after the commit, before the next append to
                the same conversation may start (used for ordered fan-out).

        Raises:
            InvalidRequest: Empty or oversized content.
            Forbidden: Sender is not a participant.
        """
        self.validate_content(content)

        async with self._conversation_locks.hold(conversation_id):
            message = await asyncio.to_thread(
                self._store.append_message, conversation_id, sender_id, content
            )
            logger.debug(
                "[Messages] %s appended to %s at %s",
                message.messageId, conversation_id, message.sentAt.isoformat(),
            )
            if on_commit is not None:
                await on_commit(message)
        return message
