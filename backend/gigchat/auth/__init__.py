"""Authentication module.

Verifies bearer JWTs issued by the account service and binds the resulting
Identity to WebSocket connections and HTTP requests.

Services:
    - TokenAuthenticator: JWT verification.
    - get_current_identity: FastAPI dependency for the HTTP surface.
"""
