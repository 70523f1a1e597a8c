"""Room and presence routing for live WebSocket connections.

This module keeps, per process, which live connections are joined to which
conversation room, and which connections belong to each user (the user's
personal channel). It performs broadcast to those sets.

Key features:
    - Participant-only room joins (checked against persisted participants)
    - Personal channel per user for notifications outside a room
    - Concurrent message broadcasting with asyncio.gather()
    - Each connection receives a given broadcast at most once
    - Automatic dead connection cleanup
    - Explicit lifecycle (close() at shutdown)

Thread Safety:
    This implementation is designed for async/await usage with a single event
    loop that owns the registries. Registry mutations never await, so each is
    atomic with respect to other handlers. It is NOT thread-safe for concurrent
    access from multiple threads.

Scaling:
    The registry is process-local. Callers depend only on the RoomRouter
    interface, so a shared publish/subscribe backend can replace
    ConnectionManager without touching them.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Set

from fastapi import WebSocket

from .errors import Forbidden
from .schemas import Identity

logger = logging.getLogger(__name__)

MembershipCheck = Callable[[str, str], Awaitable[bool]]

# WebSocket close code sent to clients when the server shuts down
GOING_AWAY = 1001


class Connection:
    """A live, authenticated WebSocket connection.

    Attributes:
        id: Server-assigned connection ID (for logging).
        websocket: The underlying WebSocket.
        identity: Verified identity, fixed for the connection's lifetime.
        rooms: Conversation rooms this connection has joined.
    """

    def __init__(self, websocket: WebSocket, identity: Identity) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.rooms: Set[str] = set()

    @property
    def user_id(self) -> str:
        return self.identity.userId

    async def send(self, event: dict) -> bool:
        """Send an event with error handling.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await self.websocket.send_json(event)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.id}: {e}")
            return False

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user={self.user_id!r})"


class RoomRouter(ABC):
    """Fan-out interface used by the chat service and the gateway."""

    @abstractmethod
    def register(self, connection: Connection) -> None:
        """Add a freshly authenticated connection to its personal channel."""

    @abstractmethod
    async def join(self, connection: Connection, conversation_id: str) -> None:
        """Join a room. Raises Forbidden for non-participants."""

    @abstractmethod
    def leave(self, connection: Connection, conversation_id: str) -> None:
        """Leave a room. Idempotent."""

    @abstractmethod
    async def broadcast(self, conversation_id: str, event: dict) -> int:
        """Deliver to every connection joined to the room."""

    @abstractmethod
    async def notify_user(
        self, user_id: str, event: dict, exclude_room: Optional[str] = None
    ) -> int:
        """Deliver to a user's connections, optionally skipping those in a room."""

    @abstractmethod
    def disconnect(self, connection: Connection) -> None:
        """Remove a connection from every room and its personal channel."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down at shutdown."""


class ConnectionManager(RoomRouter):
    """In-process RoomRouter.

    Maintains:
    - conversation_id -> set of joined connections (rooms)
    - user_id -> set of live connections (personal channels)

    Args:
        is_participant: Async check ``(conversation_id, user_id) -> bool``
            against persisted participants, used to authorize joins.
    """

    def __init__(self, is_participant: MembershipCheck) -> None:
        self._is_participant = is_participant

        # conversation_id -> joined connections
        self.rooms: Dict[str, Set[Connection]] = {}

        # user_id -> live connections (personal channel)
        self.user_channels: Dict[str, Set[Connection]] = {}

        self._closed = False

    def register(self, connection: Connection) -> None:
        if self._closed:
            raise RuntimeError("ConnectionManager is closed")
        self.user_channels.setdefault(connection.user_id, set()).add(connection)
        logger.info(
            f"[Manager] {connection!r} registered. "
            f"User has {len(self.user_channels[connection.user_id])} connections"
        )

    async def join(self, connection: Connection, conversation_id: str) -> None:
        """Join a conversation room after verifying participation.

        The participant check is awaited before the registry is touched; a
        denied connection stays outside the room but remains connected.

        Raises:
            Forbidden: The connection's user is not a participant.
        """
        allowed = await self._is_participant(conversation_id, connection.user_id)
        if not allowed:
            logger.warning(
                f"[Manager] User {connection.user_id} attempted to join "
                f"unauthorized room: {conversation_id}"
            )
            raise Forbidden("Unauthorized to join this room.")

        # The connection may have gone away while the check was in flight
        if connection not in self.user_channels.get(connection.user_id, ()):
            return

        self.rooms.setdefault(conversation_id, set()).add(connection)
        connection.rooms.add(conversation_id)
        logger.info(f"[Manager] User {connection.user_id} joined room {conversation_id}")

    def leave(self, connection: Connection, conversation_id: str) -> None:
        members = self.rooms.get(conversation_id)
        if members is not None:
            members.discard(connection)
            if not members:
                del self.rooms[conversation_id]
        connection.rooms.discard(conversation_id)

    async def broadcast(self, conversation_id: str, event: dict) -> int:
        """Broadcast an event to all connections in a room concurrently.

        Includes the sender's own connections. Connections that fail to
        receive are disconnected.

        Returns:
            Number of connections the event was delivered to.
        """
        connections = list(self.rooms.get(conversation_id, ()))
        return await self._deliver(connections, event)

    async def notify_user(
        self, user_id: str, event: dict, exclude_room: Optional[str] = None
    ) -> int:
        connections = [
            conn for conn in self.user_channels.get(user_id, ())
            if exclude_room is None or exclude_room not in conn.rooms
        ]
        return await self._deliver(connections, event)

    async def _deliver(self, connections: List[Connection], event: dict) -> int:
        if not connections:
            return 0

        results = await asyncio.gather(
            *[conn.send(event) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        for conn in failed_connections:
            logger.debug(f"Removed dead connection {conn.id}")
            self.disconnect(conn)
        return len(connections) - len(failed_connections)

    def disconnect(self, connection: Connection) -> None:
        for conversation_id in list(connection.rooms):
            self.leave(connection, conversation_id)

        channel = self.user_channels.get(connection.user_id)
        if channel is not None:
            channel.discard(connection)
            if not channel:
                del self.user_channels[connection.user_id]

    def get_room_size(self, conversation_id: str) -> int:
        """Get the number of connections joined to a room."""
        return len(self.rooms.get(conversation_id, ()))

    def is_joined(self, connection: Connection, conversation_id: str) -> bool:
        return connection in self.rooms.get(conversation_id, ())

    def get_user_connection_count(self, user_id: str) -> int:
        return len(self.user_channels.get(user_id, ()))

    async def close(self) -> None:
        """Close every live connection and clear the registries."""
        self._closed = True
        connections = {
            conn for channel in self.user_channels.values() for conn in channel
        }
        for conn in connections:
            try:
                await conn.websocket.close(code=GOING_AWAY)
            except Exception as e:
                logger.debug(f"Close failed for connection {conn.id}: {e}")
            conn.rooms.clear()
        self.rooms.clear()
        self.user_channels.clear()
        logger.info(f"[Manager] Closed {len(connections)} connections")
