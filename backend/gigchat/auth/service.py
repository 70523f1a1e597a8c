"""Bearer token verification.

Token issuance belongs to the account service; this module only verifies an
HS256 JWT and turns its claims into an immutable Identity:
1. Reject a missing or blank credential
2. Decode and verify signature, expiry and (when configured) issuer/audience
3. Validate the claim payload shape
"""
import logging
from typing import Optional

import jwt
from pydantic import ValidationError

from gigchat.chat.errors import AuthError
from gigchat.chat.schemas import Identity
from gigchat.config import JWTSecrets

logger = logging.getLogger(__name__)


class TokenAuthenticator:
    """Verifies bearer JWTs and returns the identity they carry."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_secrets(cls, secrets: JWTSecrets) -> "TokenAuthenticator":
        return cls(
            secret_key=secrets.secret_key,
            algorithm=secrets.algorithm,
            issuer=secrets.issuer,
            audience=secrets.audience,
        )

    def authenticate(self, credential: Optional[str]) -> Identity:
        """Verify a bearer credential.

        Args:
            credential: The raw token, with or without a "Bearer " prefix.

        Returns:
            The Identity carried by the token.

        Raises:
            AuthError: reason "missing", "invalid" or "expired".
        """
        parts = (credential or "").split(None, 1)
        if parts and parts[0].lower() == "bearer":
            parts = parts[1:]
        token = parts[0].strip() if parts else ""
        if not token:
            raise AuthError("missing")

        required = ["exp", "userId"]
        if self.issuer:
            required.append("iss")
        if self.audience:
            required.append("aud")

        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": required},
            )
        except jwt.ExpiredSignatureError:
            raise AuthError("expired")
        except jwt.InvalidTokenError as e:
            logger.info("[Auth] Token rejected: %s", e)
            raise AuthError("invalid")

        try:
            return Identity(
                userId=str(claims["userId"]),
                username=claims.get("username") or "",
                profilePictureUrl=claims.get("profilePictureUrl"),
            )
        except ValidationError:
            raise AuthError("invalid", "Authentication error: invalid token payload")
