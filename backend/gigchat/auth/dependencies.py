"""FastAPI dependency resolving the caller's Identity from a Bearer header."""
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from gigchat.chat.errors import AuthError
from gigchat.chat.schemas import Identity

from .service import TokenAuthenticator

security = HTTPBearer(auto_error=False)


def get_authenticator(request: Request) -> TokenAuthenticator:
    return request.app.state.authenticator


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    authenticator: TokenAuthenticator = Depends(get_authenticator),
) -> Identity:
    """Verify the Bearer token of an HTTP request.

    Raises:
        HTTPException 401 if the token is missing, invalid or expired.
    """
    try:
        return authenticator.authenticate(credentials.credentials if credentials else None)
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
