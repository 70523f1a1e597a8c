"""DuckDB-backed persistence for the messaging core.

This module owns every table the core touches. The directory tables (users,
jobs, applications) belong to collaborators; the core only reads them, apart
from the small ``register_*`` write path used to seed them.

Database Schema:
    conversations:
        - conversation_id: Primary key (UUID string)
        - pair_key: JSON array of the sorted participant ids, UNIQUE
        - job_id / application_id: Optional context references
        - client_id / worker_id: Parties the context references resolved to
        - created_at, last_message_at (UTC)
    conversation_participants:
        - (conversation_id, user_id): Composite primary key
        - joined_at, last_read_at (UTC, last_read_at nullable)
    messages:
        - message_id: Primary key
        - conversation_id, sender_id, content, sent_at (UTC)
        - Index on (conversation_id, sent_at) for backward range scans

Thread Safety:
    A DuckDBPyConnection is NOT thread-safe. Every operation opens its own
    cursor (a separate connection to the same database) so that calls made
    from worker threads get independent transactions. Multi-row effects run
    inside one explicit transaction.

Timestamps are stored as naive UTC TIMESTAMP values and returned as
timezone-aware datetimes.
"""
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

import duckdb

from .errors import Forbidden
from .schemas import (
    ContextRefs,
    Conversation,
    ConversationSummary,
    LastMessage,
    Message,
    Participant,
    UserProfile,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id             VARCHAR PRIMARY KEY,
        username            VARCHAR NOT NULL DEFAULT '',
        profile_picture_url VARCHAR,
        created_at          TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        job_id     VARCHAR PRIMARY KEY,
        client_id  VARCHAR NOT NULL,
        title      VARCHAR NOT NULL DEFAULT '',
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS applications (
        application_id VARCHAR PRIMARY KEY,
        job_id         VARCHAR NOT NULL,
        worker_id      VARCHAR NOT NULL,
        created_at     TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        conversation_id VARCHAR PRIMARY KEY,
        pair_key        VARCHAR NOT NULL UNIQUE,
        job_id          VARCHAR,
        application_id  VARCHAR,
        client_id       VARCHAR,
        worker_id       VARCHAR,
        created_at      TIMESTAMP NOT NULL,
        last_message_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id VARCHAR NOT NULL,
        user_id         VARCHAR NOT NULL,
        joined_at       TIMESTAMP NOT NULL,
        last_read_at    TIMESTAMP,
        PRIMARY KEY (conversation_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        message_id      VARCHAR PRIMARY KEY,
        conversation_id VARCHAR NOT NULL,
        sender_id       VARCHAR NOT NULL,
        content         VARCHAR NOT NULL,
        sent_at         TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_participants_user ON conversation_participants(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation_sent ON messages(conversation_id, sent_at)",
]

# Smallest step used to keep sent_at strictly increasing per conversation
_TICK = timedelta(microseconds=1)


class DuplicateConversation(Exception):
    """A conversation for this pair was committed by a concurrent writer."""

    def __init__(self, pair_key: str):
        super().__init__(f"Conversation already exists for pair {pair_key}")
        self.pair_key = pair_key


def pair_key(user_a: str, user_b: str) -> str:
    """Deterministic key of an unordered pair of user ids.

    JSON-encoded so that ids containing separators cannot collide.
    """
    return json.dumps(sorted((user_a, user_b)))


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage representation)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ChatStore:
    """Persistence layer for conversations, participants and messages.

    All methods are synchronous and blocking; async callers run them in a
    worker thread.

    Attributes:
        _db_path: Path to the DuckDB database file (or ":memory:").
    """

    _default_db_path: str = "gigchat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        self._cursor_lock = threading.Lock()
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

    def _initialize_db(self) -> None:
        """Create tables and indexes. Safe to call multiple times."""
        for statement in _SCHEMA:
            self._conn.execute(statement)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("[Store] Closed db=%s", self._db_path)

    # -----------------------------------------------------------------------
    # Connection handling
    # -----------------------------------------------------------------------

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        if self._conn is None:
            raise RuntimeError("ChatStore is closed")
        with self._cursor_lock:
            cur = self._conn.cursor()
        try:
            yield cur
        finally:
            cur.close()

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block in a single transaction; roll back on any failure."""
        with self._cursor() as cur:
            cur.begin()
            try:
                yield cur
            except BaseException:
                self._rollback(cur)
                raise
            try:
                cur.commit()
            except duckdb.Error:
                self._rollback(cur)
                raise

    @staticmethod
    def _rollback(cur: duckdb.DuckDBPyConnection) -> None:
        try:
            cur.rollback()
        except duckdb.TransactionException as e:
            # A failed commit has already aborted the transaction
            logger.debug("[Store] Rollback skipped: %s", e)

    # -----------------------------------------------------------------------
    # Directory (collaborator-owned data)
    # -----------------------------------------------------------------------

    def register_user(
        self,
        user_id: str,
        username: str = "",
        profile_picture_url: Optional[str] = None,
    ) -> UserProfile:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (user_id, username, profile_picture_url, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    username = excluded.username,
                    profile_picture_url = excluded.profile_picture_url
                """,
                [user_id, username, profile_picture_url, utcnow()],
            )
        return UserProfile(userId=user_id, username=username, profilePictureUrl=profile_picture_url)

    def register_job(self, job_id: str, client_id: str, title: str = "") -> None:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO jobs (job_id, client_id, title, created_at) VALUES (?, ?, ?, ?)",
                [job_id, client_id, title, utcnow()],
            )

    def register_application(self, application_id: str, job_id: str, worker_id: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO applications (application_id, job_id, worker_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                [application_id, job_id, worker_id, utcnow()],
            )

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT user_id, username, profile_picture_url FROM users WHERE user_id = ?",
                [user_id],
            ).fetchone()
        if row is None:
            return None
        return UserProfile(userId=row[0], username=row[1], profilePictureUrl=row[2])

    def get_job_client(self, job_id: str) -> Optional[str]:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT client_id FROM jobs WHERE job_id = ?", [job_id]
            ).fetchone()
        return row[0] if row else None

    def get_application_worker(self, application_id: str) -> Optional[str]:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT worker_id FROM applications WHERE application_id = ?",
                [application_id],
            ).fetchone()
        return row[0] if row else None

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def find_conversation_between(self, user_a: str, user_b: str) -> Optional[str]:
        """Return the conversation whose participant set is exactly {a, b}."""
        with self._cursor() as cur:
            row = cur.execute(
                """
                SELECT cp1.conversation_id
                FROM conversation_participants cp1
                JOIN conversation_participants cp2
                  ON cp1.conversation_id = cp2.conversation_id
                WHERE cp1.user_id = ? AND cp2.user_id = ?
                  AND (
                      SELECT COUNT(*) FROM conversation_participants cp3
                      WHERE cp3.conversation_id = cp1.conversation_id
                  ) = 2
                LIMIT 1
                """,
                [user_a, user_b],
            ).fetchone()
        return row[0] if row else None

    def create_conversation(
        self,
        user_a: str,
        user_b: str,
        refs: Optional[ContextRefs] = None,
        client_id: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> Conversation:
        """Insert a conversation and both participants in one transaction.

        Raises:
            DuplicateConversation: The pair already has a conversation (the
                UNIQUE pair_key was violated, possibly by a concurrent writer).
        """
        refs = refs or ContextRefs()
        key = pair_key(user_a, user_b)
        conversation_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO conversations
                      (conversation_id, pair_key, job_id, application_id,
                       client_id, worker_id, created_at, last_message_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                    """,
                    [conversation_id, key, refs.jobId, refs.applicationId,
                     client_id, worker_id, now],
                )
                cur.executemany(
                    """
                    INSERT INTO conversation_participants
                      (conversation_id, user_id, joined_at, last_read_at)
                    VALUES (?, ?, ?, NULL)
                    """,
                    [[conversation_id, user_a, now], [conversation_id, user_b, now]],
                )
        except (duckdb.ConstraintException, duckdb.TransactionException) as e:
            logger.info("[Store] Conversation insert lost race for %s: %s", key, e)
            raise DuplicateConversation(key) from e

        logger.info("[Store] Created conversation %s for pair %s", conversation_id, key)
        return Conversation(
            conversationId=conversation_id,
            jobId=refs.jobId,
            applicationId=refs.applicationId,
            clientId=client_id,
            workerId=worker_id,
            createdAt=_aware(now),
            lastMessageAt=None,
        )

    def get_conversation_id_by_pair(self, user_a: str, user_b: str) -> Optional[str]:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT conversation_id FROM conversations WHERE pair_key = ?",
                [pair_key(user_a, user_b)],
            ).fetchone()
        return row[0] if row else None

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._cursor() as cur:
            row = cur.execute(
                """
                SELECT conversation_id, job_id, application_id, client_id,
                       worker_id, created_at, last_message_at
                FROM conversations WHERE conversation_id = ?
                """,
                [conversation_id],
            ).fetchone()
        if row is None:
            return None
        return Conversation(
            conversationId=row[0],
            jobId=row[1],
            applicationId=row[2],
            clientId=row[3],
            workerId=row[4],
            createdAt=_aware(row[5]),
            lastMessageAt=_aware(row[6]),
        )

    # -----------------------------------------------------------------------
    # Participants
    # -----------------------------------------------------------------------

    def get_participant(self, conversation_id: str, user_id: str) -> Optional[Participant]:
        with self._cursor() as cur:
            row = cur.execute(
                """
                SELECT conversation_id, user_id, joined_at, last_read_at
                FROM conversation_participants
                WHERE conversation_id = ? AND user_id = ?
                """,
                [conversation_id, user_id],
            ).fetchone()
        if row is None:
            return None
        return Participant(
            conversationId=row[0],
            userId=row[1],
            joinedAt=_aware(row[2]),
            lastReadAt=_aware(row[3]),
        )

    def get_participant_ids(self, conversation_id: str) -> List[str]:
        with self._cursor() as cur:
            rows = cur.execute(
                """
                SELECT user_id FROM conversation_participants
                WHERE conversation_id = ? ORDER BY user_id
                """,
                [conversation_id],
            ).fetchall()
        return [r[0] for r in rows]

    def mark_read(self, conversation_id: str, user_id: str, now: datetime) -> Optional[datetime]:
        """Advance a participant's watermark to at least ``now``.

        The watermark also covers the newest message, whose sent_at may sit a
        few ticks past the wall clock. It never moves backward. Returns the
        stored watermark, or None if the user is not a participant.
        """
        now = _naive(now)
        with self._transaction() as cur:
            row = cur.execute(
                """
                SELECT p.last_read_at, c.last_message_at
                FROM conversation_participants p
                JOIN conversations c ON c.conversation_id = p.conversation_id
                WHERE p.conversation_id = ? AND p.user_id = ?
                """,
                [conversation_id, user_id],
            ).fetchone()
            if row is None:
                return None
            watermark = max(t for t in (now, row[0], row[1]) if t is not None)
            cur.execute(
                """
                UPDATE conversation_participants SET last_read_at = ?
                WHERE conversation_id = ? AND user_id = ?
                """,
                [watermark, conversation_id, user_id],
            )
        return _aware(watermark)

    def has_unread(self, conversation_id: str, user_id: str) -> Optional[bool]:
        """Whether any message is newer than the participant's watermark.

        Returns None if the user is not a participant.
        """
        with self._cursor() as cur:
            row = cur.execute(
                """
                SELECT p.last_read_at,
                       EXISTS (
                           SELECT 1 FROM messages m
                           WHERE m.conversation_id = p.conversation_id
                             AND (p.last_read_at IS NULL OR m.sent_at > p.last_read_at)
                       )
                FROM conversation_participants p
                WHERE p.conversation_id = ? AND p.user_id = ?
                """,
                [conversation_id, user_id],
            ).fetchone()
        if row is None:
            return None
        return bool(row[1])

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        """Insert a message and bump the conversation's last_message_at.

        Both writes happen in one transaction. ``sent_at`` is assigned here,
        strictly after the previous message of the conversation.

        Raises:
            Forbidden: The sender is not a participant of the conversation.
        """
        message_id = str(uuid.uuid4())
        with self._transaction() as cur:
            row = cur.execute(
                """
                SELECT c.last_message_at
                FROM conversations c
                JOIN conversation_participants p
                  ON p.conversation_id = c.conversation_id AND p.user_id = ?
                WHERE c.conversation_id = ?
                """,
                [sender_id, conversation_id],
            ).fetchone()
            if row is None:
                raise Forbidden("Sender is not a participant of this conversation")

            sent_at = utcnow()
            last_message_at = row[0]
            if last_message_at is not None and sent_at <= last_message_at:
                sent_at = last_message_at + _TICK

            cur.execute(
                """
                INSERT INTO messages (message_id, conversation_id, sender_id, content, sent_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [message_id, conversation_id, sender_id, content, sent_at],
            )
            cur.execute(
                "UPDATE conversations SET last_message_at = ? WHERE conversation_id = ?",
                [sent_at, conversation_id],
            )

        return Message(
            messageId=message_id,
            conversationId=conversation_id,
            senderId=sender_id,
            content=content,
            sentAt=_aware(sent_at),
        )

    def list_messages(
        self,
        conversation_id: str,
        limit: int,
        before: Optional[datetime] = None,
    ) -> List[Message]:
        """Fetch up to ``limit`` messages, newest first, strictly before ``before``."""
        params: list = [conversation_id]
        where = "m.conversation_id = ?"
        if before is not None:
            where += " AND m.sent_at < ?"
            params.append(_naive(before))
        params.append(limit)

        with self._cursor() as cur:
            rows = cur.execute(
                f"""
                SELECT m.message_id, m.conversation_id, m.sender_id, m.content,
                       m.sent_at, u.username, u.profile_picture_url
                FROM messages m
                LEFT JOIN users u ON u.user_id = m.sender_id
                WHERE {where}
                ORDER BY m.sent_at DESC
                LIMIT ?
                """,
                params,
            ).fetchall()

        return [
            Message(
                messageId=r[0],
                conversationId=r[1],
                senderId=r[2],
                content=r[3],
                sentAt=_aware(r[4]),
                sender=UserProfile(userId=r[2], username=r[5] or "", profilePictureUrl=r[6]),
            )
            for r in rows
        ]

    # -----------------------------------------------------------------------
    # Conversation list
    # -----------------------------------------------------------------------

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        """Conversations of a user, most recently active first."""
        with self._cursor() as cur:
            conversations = cur.execute(
                """
                SELECT c.conversation_id, c.job_id, c.application_id,
                       c.created_at, c.last_message_at, p.last_read_at
                FROM conversations c
                JOIN conversation_participants p
                  ON p.conversation_id = c.conversation_id AND p.user_id = ?
                ORDER BY c.last_message_at DESC NULLS LAST, c.created_at DESC
                """,
                [user_id],
            ).fetchall()
            if not conversations:
                return []

            others = cur.execute(
                """
                SELECT cp.conversation_id, cp.user_id, u.username, u.profile_picture_url
                FROM conversation_participants cp
                LEFT JOIN users u ON u.user_id = cp.user_id
                WHERE cp.user_id <> ?
                  AND cp.conversation_id IN (
                      SELECT conversation_id FROM conversation_participants WHERE user_id = ?
                  )
                ORDER BY cp.user_id
                """,
                [user_id, user_id],
            ).fetchall()

            last_messages = cur.execute(
                """
                SELECT conversation_id, content, sent_at, sender_id
                FROM (
                    SELECT m.*, row_number() OVER (
                        PARTITION BY m.conversation_id ORDER BY m.sent_at DESC
                    ) AS rn
                    FROM messages m
                    WHERE m.conversation_id IN (
                        SELECT conversation_id FROM conversation_participants WHERE user_id = ?
                    )
                ) ranked
                WHERE rn = 1
                """,
                [user_id],
            ).fetchall()

        profiles: Dict[str, List[UserProfile]] = {}
        for conv_id, other_id, username, avatar in others:
            profiles.setdefault(conv_id, []).append(
                UserProfile(userId=other_id, username=username or "", profilePictureUrl=avatar)
            )
        latest = {
            row[0]: LastMessage(content=row[1], sentAt=_aware(row[2]), senderId=row[3])
            for row in last_messages
        }

        summaries = []
        for conv_id, job_id, application_id, created_at, last_message_at, last_read_at in conversations:
            last = latest.get(conv_id)
            is_unread = last is not None and (
                last_read_at is None or last.sentAt > _aware(last_read_at)
            )
            summaries.append(ConversationSummary(
                conversationId=conv_id,
                jobId=job_id,
                applicationId=application_id,
                createdAt=_aware(created_at),
                lastMessageAt=_aware(last_message_at),
                participants=profiles.get(conv_id, []),
                lastMessage=last,
                isUnread=is_unread,
            ))
        return summaries
