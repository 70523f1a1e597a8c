"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time messaging gateway
    - GET /chat: The caller's conversations, most recent first
    - GET /chat/{conversation_id}/messages: Paginated message history
    - POST /chat/{conversation_id}/read: Mark a conversation as read

Handshake:
    The bearer token comes from the ``token`` query parameter or the
    Authorization header. It is verified, with a bounded timeout, before the
    socket is accepted; failure closes it with 1008 (Policy Violation).

Protocol Message Types (client -> server, discriminated on ``type``):
    - join: Join a conversation room (no ack)
    - leave: Leave a conversation room (no ack)
    - findOrCreateConversation: Resolve the conversation with a recipient
    - sendMessage: Persist and broadcast a message
    - markRead: Advance the caller's read watermark

Server -> client:
    - connected: Sent once after the handshake, carries the identity
    - ack: Result of a request, echoes ``requestId`` (and ``tempId``); a
      malformed frame of a known type is acked with status "error"
    - receiveMessage: Broadcast to a conversation room
    - newMessageNotification: Personal-channel notification
    - error: Unparseable or binary frame, unknown type, or unauthorized join
"""
import asyncio
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from gigchat.auth.dependencies import get_current_identity
from gigchat.auth.service import TokenAuthenticator

from .errors import AuthError, ChatError
from .manager import Connection
from .schemas import (
    ConversationSummary,
    FindOrCreateConversationRequest,
    HistoryPage,
    Identity,
    JoinRequest,
    LeaveRequest,
    MarkReadRequest,
    SendMessageRequest,
    client_request_adapter,
)
from .service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter()

# WebSocket close code for a refused handshake
POLICY_VIOLATION = 1008

GENERIC_ERROR = "Server error processing request"

CLIENT_EVENTS = ("join", "leave", "findOrCreateConversation", "sendMessage", "markRead")


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


# =============================================================================
# HTTP endpoints
# =============================================================================


@router.get("/chat", response_model=List[ConversationSummary])
async def list_conversations(
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> List[ConversationSummary]:
    """List the caller's conversations.

    Ordered by last message time (newest first), each with the other
    participant's profile, the last message snippet and an unread flag.
    """
    return await service.list_conversations(identity.userId)


@router.get("/chat/{conversation_id}/messages", response_model=HistoryPage)
async def get_messages(
    conversation_id: str,
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    cursor: Optional[str] = Query(None, description="Opaque cursor from a previous page"),
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> HistoryPage:
    """Get paginated message history for a conversation.

    Without a cursor, returns the most recent messages. Pass the returned
    ``nextCursor`` to fetch older ones; it is null once history is exhausted.

    Example:
        GET /chat/abc123/messages?limit=20
        GET /chat/abc123/messages?limit=20&cursor=MjAyNi0xMC0xOVQw...
    """
    return await service.get_history(identity.userId, conversation_id, limit, cursor)


@router.post("/chat/{conversation_id}/read")
async def mark_as_read(
    conversation_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """Mark a conversation as read for the caller."""
    watermark = await service.mark_read(identity.userId, conversation_id)
    return {"ok": True, "lastReadAt": watermark.isoformat()}


# =============================================================================
# WebSocket gateway
# =============================================================================


async def _authenticate(websocket: WebSocket, token: Optional[str]) -> Identity:
    authenticator: TokenAuthenticator = websocket.app.state.authenticator
    timeout = websocket.app.state.settings.chat.handshake_timeout_seconds
    credential = token or websocket.headers.get("authorization")
    return await asyncio.wait_for(
        asyncio.to_thread(authenticator.authenticate, credential),
        timeout=timeout,
    )


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token (JWT)"),
) -> None:
    """WebSocket endpoint for real-time messaging.

    Protocol Flow:
        1. Client connects with a token → server verifies it
           → on failure the socket is closed with 1008
           → server sends: {type: "connected", user: {...}}
        2. Client sends: {type: "join", conversationId}
           → unauthorized: {type: "error", event: "join", message}
        3. Client sends: {type: "sendMessage", recipientId, content, tempId?}
           → room receives: {type: "receiveMessage", message}
           → sender receives: {type: "ack", event: "sendMessage", status, message, tempId}
        4. On disconnect → connection removed from every room

    Args:
        websocket: The WebSocket connection.
        token: Optional bearer token (alternative to the Authorization header).
    """
    service: ChatService = websocket.app.state.chat_service

    try:
        identity = await _authenticate(websocket, token)
    except AuthError as e:
        logger.warning(f"[WS] Handshake refused ({e.reason})")
        await websocket.close(code=POLICY_VIOLATION, reason=e.message)
        return
    except asyncio.TimeoutError:
        logger.warning("[WS] Handshake timed out")
        await websocket.close(code=POLICY_VIOLATION, reason="Authentication timed out")
        return

    await websocket.accept()
    connection = Connection(websocket, identity)
    service.router.register(connection)
    logger.info(f"[WS] User connected: {identity.username or identity.userId} ({connection.id})")

    try:
        await websocket.send_json({"type": "connected", "user": identity.model_dump()})

        # Main message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
            raw = message.get("text")
            if raw is None:
                await connection.send({
                    "type": "error",
                    "message": "Invalid payload",
                    "errors": ["Binary frames are not supported"],
                })
                continue
            await _handle_frame(service, connection, raw)
    except WebSocketDisconnect as e:
        logger.info(f"[WS] User disconnected: {identity.userId} ({connection.id}), code={e.code}")
    finally:
        service.router.disconnect(connection)


async def _handle_frame(service: ChatService, connection: Connection, raw: str) -> None:
    """Validate one client frame and dispatch it."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        await connection.send({"type": "error", "message": "Invalid payload", "errors": ["Malformed JSON"]})
        return

    try:
        request = client_request_adapter.validate_python(payload)
    except ValidationError as e:
        logger.debug("[WS] Invalid payload from %s: %s", connection.user_id, e)
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        event = payload.get("type") if isinstance(payload, dict) else None
        if event in CLIENT_EVENTS:
            # A recognised request still gets an ack it can be matched with
            fields = {"tempId": payload.get("tempId")} if event == "sendMessage" else {}
            await connection.send({
                "type": "ack",
                "event": event,
                "requestId": payload.get("requestId"),
                "status": "error",
                "message": "Invalid payload",
                "errors": errors,
                **fields,
            })
            return
        await connection.send({"type": "error", "message": "Invalid payload", "errors": errors})
        return

    logger.debug("[WS] %s received: type=%s", connection.id, request.type)

    # --- Handle JOIN ---
    if isinstance(request, JoinRequest):
        try:
            await service.join(connection, request.conversationId)
        except ChatError as e:
            await connection.send({
                "type": "error",
                "event": "join",
                "conversationId": request.conversationId,
                "message": e.message,
            })
        except Exception:
            logger.exception(f"[WS] Error checking participation for join {request.conversationId}")
            await connection.send({"type": "error", "event": "join", "message": GENERIC_ERROR})
        return

    # --- Handle LEAVE ---
    if isinstance(request, LeaveRequest):
        service.leave(connection, request.conversationId)
        return

    # --- Handle FIND_OR_CREATE_CONVERSATION ---
    if isinstance(request, FindOrCreateConversationRequest):
        try:
            conversation_id = await service.find_or_create_conversation(
                connection.identity, request.recipientId, request.context_refs()
            )
        except ChatError as e:
            await _ack(connection, request, "error", message=e.message)
            return
        except Exception:
            logger.exception("[WS] Error handling findOrCreateConversation")
            await _ack(connection, request, "error", message=GENERIC_ERROR)
            return
        await _ack(connection, request, "ok", conversationId=conversation_id)
        return

    # --- Handle SEND_MESSAGE ---
    if isinstance(request, SendMessageRequest):
        try:
            message = await service.send_message(
                connection.identity,
                request.recipientId,
                request.content,
                request.context_refs(),
            )
        except ChatError as e:
            await _ack(connection, request, "error", message=e.message, tempId=request.tempId)
            return
        except Exception:
            logger.exception("[WS] Error handling sendMessage")
            await _ack(connection, request, "error", message=GENERIC_ERROR, tempId=request.tempId)
            return
        await _ack(
            connection, request, "ok",
            message=message.model_dump(mode="json"),
            tempId=request.tempId,
        )
        return

    # --- Handle MARK_READ ---
    if isinstance(request, MarkReadRequest):
        try:
            watermark = await service.mark_read(connection.user_id, request.conversationId)
        except ChatError as e:
            await _ack(connection, request, "error", message=e.message)
            return
        except Exception:
            logger.exception("[WS] Error handling markRead")
            await _ack(connection, request, "error", message=GENERIC_ERROR)
            return
        await _ack(connection, request, "ok", lastReadAt=watermark.isoformat())


async def _ack(connection: Connection, request, status: str, **fields) -> None:
    await connection.send({
        "type": "ack",
        "event": request.type,
        "requestId": request.requestId,
        "status": status,
        **fields,
    })
