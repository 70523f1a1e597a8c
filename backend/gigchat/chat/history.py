"""Backward, cursor-bounded message history.

Cursors are opaque to clients: URL-safe base64 of the ISO-8601 ``sentAt`` of
the oldest message already delivered. Because ``sentAt`` strictly increases
within a conversation, "strictly older than the cursor" never skips or
repeats a message.
"""
import asyncio
import base64
import binascii
from datetime import datetime, timezone
from typing import Optional

from .errors import InvalidRequest
from .schemas import HistoryPage
from .store import ChatStore


def encode_cursor(sent_at: datetime) -> str:
    if sent_at.tzinfo is None:
        sent_at = sent_at.replace(tzinfo=timezone.utc)
    raw = sent_at.astimezone(timezone.utc).isoformat()
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> datetime:
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        value = datetime.fromisoformat(base64.urlsafe_b64decode(padded).decode())
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise InvalidRequest("Invalid cursor")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class HistoryPaginator:
    """Serves message history newest page first, each page oldest->newest."""

    def __init__(self, store: ChatStore, default_limit: int = 20, max_limit: int = 100) -> None:
        self._store = store
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def list(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> HistoryPage:
        """Return up to ``limit`` messages older than ``cursor``.

        ``nextCursor`` is set only when older messages remain; it is found
        by fetching one extra row.
        """
        if limit is None:
            limit = self.default_limit
        if limit < 1:
            raise InvalidRequest("limit must be at least 1")
        limit = min(limit, self.max_limit)
        before = decode_cursor(cursor) if cursor else None

        rows = await asyncio.to_thread(
            self._store.list_messages, conversation_id, limit + 1, before
        )
        has_more = len(rows) > limit
        messages = rows[:limit]
        messages.reverse()

        next_cursor = None
        if has_more and messages:
            next_cursor = encode_cursor(messages[0].sentAt)
        return HistoryPage(messages=messages, nextCursor=next_cursor)
