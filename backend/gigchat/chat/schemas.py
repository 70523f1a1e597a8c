"""Pydantic models for the messaging core.

Two groups live here:
    - Records: Identity, Conversation, Participant, Message and the views
      built from them (ConversationSummary, HistoryPage).
    - Client requests: the closed set of frames a WebSocket client may send,
      one model per operation, combined into a discriminated union on the
      ``type`` field. Anything that does not match one of these shapes is
      rejected before it reaches the core.

Timestamps are timezone-aware UTC datetimes.
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# =============================================================================
# Records
# =============================================================================


class Identity(BaseModel):
    """Verified identity bound to a connection for its whole lifetime."""
    model_config = ConfigDict(frozen=True)

    userId: str = Field(..., min_length=1, description="Authenticated user ID")
    username: str = Field(default="", description="Display name")
    profilePictureUrl: Optional[str] = Field(default=None, description="Avatar URL")


class UserProfile(BaseModel):
    """Public profile of a party, as stored in the users directory."""
    userId: str
    username: str = ""
    profilePictureUrl: Optional[str] = None


class ContextRefs(BaseModel):
    """Optional references to the job/application a conversation is about."""
    jobId: Optional[str] = None
    applicationId: Optional[str] = None


class Conversation(BaseModel):
    """Canonical two-party conversation.

    Attributes:
        conversationId: Unique identifier.
        jobId: Originating job, if any.
        applicationId: Originating application, if any.
        clientId: Owner of the job, resolved at creation time.
        workerId: Applicant of the application, resolved at creation time.
        createdAt: Creation time.
        lastMessageAt: ``sentAt`` of the newest message, None until the first.
    """
    conversationId: str
    jobId: Optional[str] = None
    applicationId: Optional[str] = None
    clientId: Optional[str] = None
    workerId: Optional[str] = None
    createdAt: datetime
    lastMessageAt: Optional[datetime] = None


class Participant(BaseModel):
    """A party's membership in a conversation, carrying its read watermark."""
    conversationId: str
    userId: str
    joinedAt: datetime
    lastReadAt: Optional[datetime] = None


class Message(BaseModel):
    """Immutable chat message. ``sentAt`` is assigned by the store."""
    messageId: str
    conversationId: str
    senderId: str
    content: str
    sentAt: datetime
    sender: Optional[UserProfile] = None


class LastMessage(BaseModel):
    content: str
    sentAt: datetime
    senderId: str


class ConversationSummary(BaseModel):
    """Entry of the caller's conversation list."""
    conversationId: str
    jobId: Optional[str] = None
    applicationId: Optional[str] = None
    createdAt: datetime
    lastMessageAt: Optional[datetime] = None
    participants: List[UserProfile] = Field(
        default_factory=list,
        description="The other participant(s), caller excluded"
    )
    lastMessage: Optional[LastMessage] = None
    isUnread: bool = False


class HistoryPage(BaseModel):
    """One page of message history, oldest first."""
    messages: List[Message]
    nextCursor: Optional[str] = None


# =============================================================================
# Client requests
# =============================================================================


class _ClientRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    requestId: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Client correlation ID, echoed in the ack"
    )


class JoinRequest(_ClientRequest):
    type: Literal["join"]
    conversationId: str = Field(..., min_length=1)


class LeaveRequest(_ClientRequest):
    type: Literal["leave"]
    conversationId: str = Field(..., min_length=1)


class FindOrCreateConversationRequest(_ClientRequest):
    type: Literal["findOrCreateConversation"]
    recipientId: str = Field(..., min_length=1)
    jobId: Optional[str] = None
    applicationId: Optional[str] = None

    def context_refs(self) -> ContextRefs:
        return ContextRefs(jobId=self.jobId, applicationId=self.applicationId)


class SendMessageRequest(_ClientRequest):
    type: Literal["sendMessage"]
    recipientId: str = Field(..., min_length=1)
    content: str
    jobId: Optional[str] = None
    applicationId: Optional[str] = None
    tempId: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Client-side ID for optimistic reconciliation"
    )

    def context_refs(self) -> ContextRefs:
        return ContextRefs(jobId=self.jobId, applicationId=self.applicationId)


class MarkReadRequest(_ClientRequest):
    type: Literal["markRead"]
    conversationId: str = Field(..., min_length=1)


ClientRequest = Annotated[
    Union[
        JoinRequest,
        LeaveRequest,
        FindOrCreateConversationRequest,
        SendMessageRequest,
        MarkReadRequest,
    ],
    Field(discriminator="type"),
]

client_request_adapter: TypeAdapter = TypeAdapter(ClientRequest)
