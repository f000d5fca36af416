from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
import uvicorn

from collector_messaging.api.v1.router import api_router
from collector_messaging.core.errors import add_exception_handlers, success_response
from collector_messaging.core.logging import configure_logging
from collector_messaging.core.settings import Settings, get_settings
import collector_messaging.db.session as db_session
from collector_messaging.db.session import init_db
from collector_messaging.realtime import ConnectionManager, RealtimeDispatcher, RealtimePublisher

logger = logging.getLogger(__name__)


def _open_db_session():
    if db_session.SessionLocal is None:
        raise RuntimeError("Database session factory is not configured")
    return db_session.SessionLocal()


def _build_realtime(app: FastAPI, settings: Settings) -> None:
    # The outbox dispatcher pushes committed message inserts to WebSocket subscribers.
    app.state.connection_manager = ConnectionManager(
        max_subscriptions_per_connection=settings.ws_max_subscriptions_per_connection
    )
    app.state.realtime_publisher = RealtimePublisher(app.state.connection_manager)
    app.state.realtime_dispatcher = RealtimeDispatcher(
        publisher=app.state.realtime_publisher,
        session_factory=_open_db_session,
        poll_interval_sec=settings.realtime_dispatcher_poll_ms / 1000.0,
        batch_size=settings.realtime_dispatcher_batch_size,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("Messaging service startup started")
    init_db()
    _build_realtime(app, settings)
    if settings.realtime_dispatcher_enabled:
        await app.state.realtime_dispatcher.start()
    else:
        logger.warning("Realtime dispatcher disabled; subscribers will not receive message events")
    logger.info("Messaging service startup completed")
    yield
    await app.state.realtime_dispatcher.stop()
    logger.info("Messaging service shutdown completed connections=%s", app.state.connection_manager.connection_count)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    logger.debug("Creating messaging app prefix=%s", settings.api_v1_prefix)
    app = FastAPI(
        title=settings.app_name,
        lifespan=lifespan,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=settings.cors_origins,
                allow_credentials=True,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
    )
    app.state.settings = settings

    if settings.debug:
        @app.middleware("http")
        async def request_debug_logger(request: Request, call_next) -> Response:
            start = perf_counter()
            response = await call_next(request)
            logger.debug(
                "HTTP request completed method=%s path=%s status=%s duration_ms=%.2f",
                request.method,
                request.url.path,
                response.status_code,
                (perf_counter() - start) * 1000,
            )
            return response

    add_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/health")
    def health_check(request: Request):
        dispatcher: RealtimeDispatcher | None = getattr(request.app.state, "realtime_dispatcher", None)
        manager: ConnectionManager | None = getattr(request.app.state, "connection_manager", None)
        return success_response(
            {
                "ok": True,
                "realtime_dispatcher_running": dispatcher is not None and dispatcher.running,
                "websocket_connections": manager.connection_count if manager is not None else 0,
            }
        )

    return app


configure_logging(debug=get_settings().debug)
app = create_app()


def run() -> None:
    """Serve the messaging API with uvicorn (``collector-messaging-server``)."""
    uvicorn.run("collector_messaging.main:app", host="0.0.0.0", port=8000, log_config=None)
