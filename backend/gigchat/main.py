"""gigchat Backend Application.

This is the main entry point for the real-time messaging core of the job
marketplace backend.

Modules:
    - chat: conversation resolution, message store, read tracking, history
      pagination, room/presence routing and the WebSocket gateway
    - auth: bearer JWT verification
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gigchat.auth.service import TokenAuthenticator
from gigchat.chat.errors import ChatError
from gigchat.chat.router import router as chat_router
from gigchat.chat.service import ChatService
from gigchat.chat.store import ChatStore
from gigchat.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in gigchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = ChatStore(config.database.path)
    chat_service = ChatService(store, config.chat)

    app.state.settings = config
    app.state.store = store
    app.state.authenticator = TokenAuthenticator.from_secrets(config.secrets.jwt)
    app.state.chat_service = chat_service
    logger.info(
        f"Chat service ready on http://{config.server.host}:{config.server.port} "
        f"(db={config.database.path})"
    )

    yield  # Application runs here

    # Shutdown
    await chat_service.close()
    store.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="gigchat API",
    description="Real-time messaging core for the job marketplace backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Map core errors to HTTP status codes (400/401/403/404)."""
    logger.info("[HTTP] %s %s -> %d: %s", request.method, request.url.path, exc.http_status, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.http_status)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("[HTTP] Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal Server Error"}, status_code=500)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
