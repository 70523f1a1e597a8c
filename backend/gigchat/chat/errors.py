"""Error taxonomy for the messaging core.

These exceptions are raised by the core components and translated at the
edge: the WebSocket gateway turns them into failure acks, the HTTP router
into status codes (see ``http_status``).
"""


class ChatError(Exception):
    """Base class for expected, caller-visible failures."""

    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(ChatError):
    """Credential missing, invalid or expired. Refuses the connection."""

    http_status = 401
    REASONS = ("missing", "invalid", "expired")

    def __init__(self, reason: str, message: str = ""):
        if reason not in self.REASONS:
            raise ValueError(f"Unknown auth failure reason: {reason}")
        super().__init__(message or f"Authentication error: {reason} token")
        self.reason = reason


class InvalidRequest(ChatError):
    """Malformed payload, self-conversation, empty or oversized content."""

    http_status = 400


class NotFound(ChatError):
    """Unknown recipient or unresolvable context reference."""

    http_status = 404


class Forbidden(ChatError):
    """Caller is not a participant of the conversation."""

    http_status = 403
