"""roomwire backend application.

This is the main entry point of the roomwire service: a realtime chat
backend where authenticated users join rooms, exchange messages, react,
pin, and see presence and typing state live.

Modules:
    - chat: WebSocket endpoint driving the realtime hub
    - realtime: connection registry, membership oracle, fanout, presence,
      message pipeline
    - rooms: room creation, membership management, pins, file history
    - messages: history, edit/delete, search, read receipts
    - users: own profile, user search, presence lookups
    - store: DuckDB persistence
    - auth: JWT access-token verification
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from roomwire import __version__
from roomwire.chat.router import router as chat_router
from roomwire.config import AppConfig, get_config
from roomwire.errors import ChatError, PersistenceError
from roomwire.messages.router import router as messages_router
from roomwire.realtime import ChatHub
from roomwire.rooms.router import router as rooms_router
from roomwire.store import ChatStore, run_sync
from roomwire.users.router import router as users_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request noise from the HTTP client used by the test client
for _noisy in ("httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render a ChatError as {"error", "code"} with its HTTP status."""
    return JSONResponse({"error": exc.message, "code": exc.code}, status_code=exc.status_code)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request body/query validation failures in the same shape."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ())) or "request"
    return JSONResponse(
        {
            "error": f"{location}: {first.get('msg', 'invalid value')}",
            "code": "validation_error",
            "errors": jsonable_encoder(exc.errors()),
        },
        status_code=422,
    )


def create_app(config: Optional[AppConfig] = None, store: Optional[ChatStore] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Application config; defaults to the process-wide config.
        store: An already opened store (tests). When omitted, one is opened
            at startup from ``config.store.db_path`` and closed at shutdown.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to the root logger
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        owns_store = store is None
        chat_store = store if store is not None else ChatStore(config.store.db_path)
        app.state.hub = ChatHub.create(config, chat_store)
        logger.info(
            "roomwire %s ready on http://%s:%s",
            __version__, config.server.host, config.server.port,
        )

        yield  # Application runs here

        # Shutdown
        closed = await app.state.hub.shutdown()
        if owns_store:
            chat_store.close()
        logger.info("Application shutdown complete (%d connection(s) closed)", closed)

    app = FastAPI(
        title="roomwire API",
        description="Realtime chat backend: rooms, messages, presence and fanout",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Register all routers
    app.include_router(chat_router)
    app.include_router(rooms_router)
    app.include_router(messages_router)
    app.include_router(users_router)

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Health check endpoint.

        Returns:
            Store reachability and live connection counts; 503 with status
            DEGRADED when the store cannot be reached.
        """
        hub: ChatHub = request.app.state.hub
        body = {
            "status": "OK",
            "store": "up",
            "connections": len(hub.registry),
            "onlineUsers": len(hub.registry.online_user_ids()),
            "cachedStatuses": len(hub.presence.cache),
        }
        try:
            await run_sync(hub.store.ping)
        except PersistenceError as exc:
            logger.warning("Health check: store unreachable: %s", exc.message)
            body.update(status="DEGRADED", store="down")
            return JSONResponse(body, status_code=503)
        return JSONResponse(body)

    return app


app = create_app()
