"""Chat service: the operations exposed to the WebSocket gateway and HTTP API.

Composes the resolver, message store, read tracker, history paginator and
room router. Owns the room router's lifecycle.
"""
import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from gigchat.config import ChatSettings

from .errors import Forbidden
from .history import HistoryPaginator
from .manager import Connection, ConnectionManager, RoomRouter
from .messages import MessageStore
from .read_tracker import ReadTracker
from .resolver import ConversationResolver
from .schemas import (
    ContextRefs,
    ConversationSummary,
    HistoryPage,
    Identity,
    Message,
    UserProfile,
)
from .store import ChatStore

logger = logging.getLogger(__name__)


class ChatService:
    """Facade over the messaging core.

    Args:
        store: Persistence layer.
        settings: Chat limits.
        room_router: Fan-out backend; defaults to an in-process
            ConnectionManager.
    """

    def __init__(
        self,
        store: ChatStore,
        settings: Optional[ChatSettings] = None,
        room_router: Optional[RoomRouter] = None,
    ) -> None:
        settings = settings or ChatSettings()
        self.store = store
        self.settings = settings
        self.resolver = ConversationResolver(store, settings.conversation_retry_attempts)
        self.messages = MessageStore(store, settings.max_message_length)
        self.read_tracker = ReadTracker(store)
        self.history = HistoryPaginator(
            store, settings.default_page_size, settings.max_page_size
        )
        self.router = room_router or ConnectionManager(self.is_participant)

    async def close(self) -> None:
        await self.router.close()

    # -----------------------------------------------------------------------
    # Membership
    # -----------------------------------------------------------------------

    async def is_participant(self, conversation_id: str, user_id: str) -> bool:
        participant = await asyncio.to_thread(
            self.store.get_participant, conversation_id, user_id
        )
        return participant is not None

    async def ensure_participant(self, conversation_id: str, user_id: str) -> None:
        if not await self.is_participant(conversation_id, user_id):
            raise Forbidden("Forbidden: You are not a participant of this conversation.")

    async def join(self, connection: Connection, conversation_id: str) -> None:
        await self.router.join(connection, conversation_id)

    def leave(self, connection: Connection, conversation_id: str) -> None:
        self.router.leave(connection, conversation_id)

    # -----------------------------------------------------------------------
    # Conversations and messages
    # -----------------------------------------------------------------------

    async def find_or_create_conversation(
        self,
        identity: Identity,
        recipient_id: str,
        refs: Optional[ContextRefs] = None,
    ) -> str:
        return await self.resolver.find_or_create(identity.userId, recipient_id, refs)

    async def send_message(
        self,
        identity: Identity,
        recipient_id: str,
        content: str,
        refs: Optional[ContextRefs] = None,
    ) -> Message:
        """Resolve the conversation, persist the message and fan it out.

        The room receives ``receiveMessage``; recipient connections that
        have not joined the room get ``newMessageNotification`` on their
        personal channel. Fan-out happens in commit order.
        """
        # Reject bad content before anything is created
        self.messages.validate_content(content)

        conversation_id = await self.resolver.find_or_create(
            identity.userId, recipient_id, refs
        )
        sender = await self._sender_profile(identity)

        async def fan_out(message: Message) -> None:
            message.sender = sender
            payload = message.model_dump(mode="json")
            delivered = await self.router.broadcast(
                conversation_id, {"type": "receiveMessage", "message": payload}
            )
            await self.router.notify_user(
                recipient_id,
                {
                    "type": "newMessageNotification",
                    "conversationId": conversation_id,
                    "messageId": message.messageId,
                    "senderId": identity.userId,
                    "senderUsername": sender.username,
                },
                exclude_room=conversation_id,
            )
            logger.debug(
                "[Service] Message %s delivered to %d connections in %s",
                message.messageId, delivered, conversation_id,
            )

        return await self.messages.append(
            conversation_id, identity.userId, content, on_commit=fan_out
        )

    async def _sender_profile(self, identity: Identity) -> UserProfile:
        profile = await asyncio.to_thread(self.store.get_user, identity.userId)
        if profile is not None:
            return profile
        return UserProfile(
            userId=identity.userId,
            username=identity.username,
            profilePictureUrl=identity.profilePictureUrl,
        )

    async def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        return await asyncio.to_thread(self.store.list_conversations, user_id)

    async def get_history(
        self,
        user_id: str,
        conversation_id: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> HistoryPage:
        await self.ensure_participant(conversation_id, user_id)
        return await self.history.list(conversation_id, limit, cursor)

    async def mark_read(self, user_id: str, conversation_id: str) -> datetime:
        return await self.read_tracker.mark_read(conversation_id, user_id)

    async def is_unread(self, user_id: str, conversation_id: str) -> bool:
        return await self.read_tracker.is_unread(conversation_id, user_id)
