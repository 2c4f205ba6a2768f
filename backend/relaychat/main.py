"""RelayChat Backend Application.

This is the main entry point for the RelayChat message-relay service, the
server side of the RelayChat client core in ``relaychat.client``.

Modules:
    - relay: Token issuance, paged history and the authenticated WebSocket relay
    - client: Connection manager and transcript pagination engine (client side)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relaychat.config import get_config
from relaychat.relay.hub import hub
from relaychat.relay.message_store import MessageStore
from relaychat.relay.router import get_message_store, router as relay_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every TCP connection; websockets logs every frame at DEBUG.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "websockets.client",
    "websockets.server",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relaychat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info(f"Root logger level set to {config.logging.level.upper()}")

    if config.secrets.jwt.secret_key == "change-me-in-production":
        logger.warning("Using the default JWT secret; set jwt.secret_key in relaychat.secrets.yaml")

    store = get_message_store()
    logger.info(f"Message store ready at {config.relay.db_path}")
    logger.info(
        f"Relay running on http://{config.server.host}:{config.server.port} "
        f"(page size {config.relay.default_page_size}, max {config.relay.max_page_size})"
    )

    yield  # Application runs here

    # Shutdown
    hub.clear()
    if MessageStore._instance is store:
        MessageStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="RelayChat API",
    description="Message relay for RelayChat - authenticated multi-room real-time chat",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(relay_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Console entry point: serve the relay with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "relaychat.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.debug,
    )


if __name__ == "__main__":
    run()
