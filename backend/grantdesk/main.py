"""
GrantDesk Backend: FastAPI Application Factory
===============================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn to start the server (uvicorn grantdesk.main:app).

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │                                                     │
    │  Middleware Chain (HTTP only):                      │
    │  ┌──────────┐ ┌─────────────────┐ ┌──────────────┐ │
    │  │ Req ID   │→│  Access Logging │→│  CORS        │ │
    │  └──────────┘ └─────────────────┘ └──────────────┘ │
    │                                                     │
    │  Routes:                                            │
    │  ┌──────────────────────┐ ┌──────────────────────┐ │
    │  │ WS /ws (chat relay)  │ │ GET /health          │ │
    │  └──────────────────────┘ └──────────────────────┘ │
    │                                                     │
    │  app.state: relay, token_verifier, db_engine        │
    └─────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration (warn loudly, keep serving)
    3. Build the message log (memory, or database + create tables)
    4. Build the relay and token verifier unless injected

    Shutdown:
    1. Close every live chat connection (code 1001)
    2. Dispose the database engine, if any
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from grantdesk import __version__
from grantdesk.config import settings
from grantdesk.database import (
    build_engine,
    build_session_factory,
    create_tables,
    dispose_engine,
)
from grantdesk.exceptions import ConfigurationError, GrantDeskError, MessageStoreError
from grantdesk.middleware.logging import RequestLoggingMiddleware
from grantdesk.middleware.request_id import (
    RequestIDLogFilter,
    RequestIDMiddleware,
    request_id_var,
)
from grantdesk.routes import chat, health
from grantdesk.services.auth_service import TokenVerifier, build_token_service
from grantdesk.services.message_log import (
    DatabaseMessageLog,
    InMemoryMessageLog,
    MessageLog,
)
from grantdesk.services.relay_service import RelayService

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s

    `request_id` is the HTTP request id or the WebSocket connection id,
    so all lines for one chat connection can be grepped together.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

async def build_message_log(app: FastAPI) -> MessageLog:
    """Message log selected by MESSAGE_STORE; keeps the engine on app.state."""
    if settings.message_store == "database":
        engine = build_engine()
        await create_tables(engine)
        app.state.db_engine = engine
        logger.info("Message store: database (%s)", engine.url.render_as_string(hide_password=True))
        return DatabaseMessageLog(build_session_factory(engine))

    logger.info("Message store: memory (messages are lost on restart)")
    return InMemoryMessageLog()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("GrantDesk Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ConfigurationError as e:
        # Keep serving so health checks and local development still work
        logger.error("Configuration error: %s", e.message)

    if getattr(app.state, "relay", None) is None:
        message_log = await build_message_log(app)
        app.state.relay = RelayService(
            message_log,
            close_replaced=settings.close_replaced_connections,
        )
    if getattr(app.state, "token_verifier", None) is None:
        app.state.token_verifier = build_token_service()

    logger.info("Chat relay listening on ws://%s:%d%s", settings.backend_host, settings.backend_port, settings.ws_path)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("GrantDesk Backend shutting down...")
    await app.state.relay.shutdown()
    await dispose_engine(getattr(app.state, "db_engine", None))
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exceptions raised in HTTP routes to structured JSON responses.

    WebSocket errors never reach these handlers; ConnectionSession turns
    them into notification frames.
    """

    @app.exception_handler(MessageStoreError)
    async def handle_message_store_error(request: Request, exc: MessageStoreError):
        rid = request_id_var.get("")
        logger.error("[%s] Message store error: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=503,
            content={
                "error": "message_store_unavailable",
                "message": exc.message,
                "request_id": rid,
            },
        )

    @app.exception_handler(GrantDeskError)
    async def handle_grantdesk_error(request: Request, exc: GrantDeskError):
        rid = request_id_var.get("")
        logger.error("[%s] Application error: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content={
                "error": "server_error",
                "message": exc.message,
                "request_id": rid,
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    relay: Optional[RelayService] = None,
    token_verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        relay: Pre-built relay (tests inject one with a known message log)
        token_verifier: Pre-built verifier; defaults to the JWT service
    """
    app = FastAPI(
        title="GrantDesk API",
        description=(
            "Grant application support backend. Applicants and reviewers chat "
            f"in real time over the WebSocket at {settings.ws_path}."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.relay = relay
    app.state.token_verifier = token_verifier
    app.state.db_engine = None

    # Middleware executes in REVERSE order of addition
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(chat.router)
    app.include_router(health.router)

    return app


app = create_app()
