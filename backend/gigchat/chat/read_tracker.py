"""Per-participant read watermarks."""
import asyncio
from datetime import datetime

from .errors import Forbidden
from .locks import KeyedLock
from .store import ChatStore, utcnow


class ReadTracker:
    """Records up to when each participant has seen a conversation."""

    def __init__(self, store: ChatStore) -> None:
        self._store = store
        self._participant_locks = KeyedLock()

    async def mark_read(self, conversation_id: str, user_id: str) -> datetime:
        """Advance the caller's watermark to now; it never moves backward.

        Returns:
            The stored watermark.

        Raises:
            Forbidden: user_id is not a participant.
        """
        async with self._participant_locks.hold(f"{conversation_id}:{user_id}"):
            watermark = await asyncio.to_thread(
                self._store.mark_read, conversation_id, user_id, utcnow()
            )
        if watermark is None:
            raise Forbidden("You are not a participant of this conversation")
        return watermark

    async def is_unread(self, conversation_id: str, user_id: str) -> bool:
        unread = await asyncio.to_thread(self._store.has_unread, conversation_id, user_id)
        if unread is None:
            raise Forbidden("You are not a participant of this conversation")
        return unread
