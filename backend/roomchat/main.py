"""Roomchat Backend Application.

This is the main entry point for the roomchat service: a multi-room chat
server with presence, private messages, typing indicators, reactions and
read receipts. All state lives in process memory.

Modules:
    - chat: WebSocket event channel plus room and history endpoints
    - files: In-memory upload endpoint returning inline data URLs
    - client: Python client (connection state, typing debounce, history)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomchat.chat.router import router as chat_router
from roomchat.config import get_config
from roomchat.files.router import router as files_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access logs every HTTP request and the websockets/httpx family
# logs every frame and TCP connection.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port} "
        f"with rooms {config.rooms.seed_rooms}"
    )

    yield  # Application runs here

    # Shutdown
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Roomchat API",
    description="Real-time multi-room chat service",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
