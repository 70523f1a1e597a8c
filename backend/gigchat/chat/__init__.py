"""Messaging core: conversations, messages, read state and live fan-out."""

from .errors import AuthError, ChatError, Forbidden, InvalidRequest, NotFound
from .manager import Connection, ConnectionManager, RoomRouter
from .service import ChatService
from .store import ChatStore

__all__ = [
    "AuthError",
    "ChatError",
    "ChatService",
    "ChatStore",
    "Connection",
    "ConnectionManager",
    "Forbidden",
    "InvalidRequest",
    "NotFound",
    "RoomRouter",
]
