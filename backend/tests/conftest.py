"""Shared test fixtures and configuration for backend tests."""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from gigchat.chat.service import ChatService
from gigchat.chat.store import ChatStore
from gigchat.config import (
    AppSettings,
    ChatSettings,
    DatabaseSettings,
    JWTSecrets,
    Secrets,
    set_config,
)

JWT_SECRET = "test-secret-key-with-at-least-32-bytes!"


def make_token(
    user_id: str,
    username: str = "",
    secret: str = JWT_SECRET,
    expires_in: int = 3600,
    **claims,
) -> str:
    """Mint an HS256 token the way the account service does."""
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "username": username,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def seed_directory(store: ChatStore) -> None:
    """u1 (client) owns job j1; u2 (worker) applied to it with a1; u3 is unrelated."""
    store.register_user("u1", "alice", "https://cdn.example.com/alice.png")
    store.register_user("u2", "bob")
    store.register_user("u3", "carol")
    store.register_job("j1", client_id="u1", title="Fix the roof")
    store.register_application("a1", job_id="j1", worker_id="u2")


def count_messages(store: ChatStore, conversation_id: str) -> int:
    with store._cursor() as cur:
        return cur.execute(
            "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", [conversation_id]
        ).fetchone()[0]


def count_conversations(store: ChatStore, user_a: str, user_b: str) -> int:
    """Conversations that have both users as participants."""
    with store._cursor() as cur:
        return cur.execute(
            """
            SELECT COUNT(DISTINCT cp1.conversation_id)
            FROM conversation_participants cp1
            JOIN conversation_participants cp2
              ON cp1.conversation_id = cp2.conversation_id
            WHERE cp1.user_id = ? AND cp2.user_id = ?
            """,
            [user_a, user_b],
        ).fetchone()[0]


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        database=DatabaseSettings(path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=JWT_SECRET)),
    )


@pytest.fixture
def store():
    """An in-memory ChatStore seeded with three users, a job and an application."""
    chat_store = ChatStore(":memory:")
    seed_directory(chat_store)
    yield chat_store
    chat_store.close()


@pytest.fixture
def service(store) -> ChatService:
    return ChatService(store, ChatSettings())


@pytest.fixture
def api_client(settings):
    """Provide a TestClient for the main FastAPI app with a seeded store.

    Used as a context manager so that the lifespan runs and every request
    and WebSocket share one event loop.
    """
    from gigchat.main import app

    set_config(settings)
    with TestClient(app) as client:
        seed_directory(client.app.state.store)
        yield client
    set_config(None)


@pytest.fixture
def tokens():
    return {
        "u1": make_token("u1", "alice"),
        "u2": make_token("u2", "bob"),
        "u3": make_token("u3", "carol"),
    }
