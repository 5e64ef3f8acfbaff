"""FastAPI application for the token-warden admin API."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from warden import __version__
from warden.api.scheduler import Scheduler
from warden.api.websocket import WebSocketRegistry
from warden.config import WardenConfig

logger = logging.getLogger(__name__)

WS_KEEPALIVE_INTERVAL = 30  # seconds between WebSocket pings


def _build_allowed_origins(host: str, port: int) -> list[str]:
    """Build the CORS allowed origins list.

    >>> _build_allowed_origins("127.0.0.1", 8321)
    ['http://127.0.0.1:8321', 'http://localhost:8321']
    >>> _build_allowed_origins("0.0.0.0", 8321)
    ['*']
    """
    if host == "0.0.0.0":
        return ["*"]
    return [f"http://127.0.0.1:{port}", f"http://localhost:{port}"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the refresh stack explicitly and hang it off app.state."""
    config = WardenConfig.from_env()
    app.state.config = config

    try:
        from warden.web.database import Database

        app.state.db = Database(config.db_path)
        logger.info("Credential store initialized at %s", config.db_path)
    except Exception as e:
        logger.warning("Credential store init failed: %s", e)
        app.state.db = None

    # Tokens that were refreshed but never saved on the last run
    if app.state.db is not None:
        try:
            from warden.web.token_recovery import apply_token_recovery

            restored = apply_token_recovery(app.state.db, config.recovery_path)
            if restored:
                logger.info("Restored %d account(s) from token recovery file", restored)
        except Exception as e:
            logger.warning("Token recovery at startup failed: %s", e)

    app.state.ws_registry = WebSocketRegistry()
    app.state.coordinator = None
    app.state.scheduler = None

    if app.state.db is not None:
        from warden.web.refresh import RefreshCoordinator

        app.state.coordinator = RefreshCoordinator(
            app.state.db,
            max_concurrency=config.max_concurrency,
            refresh_buffer=config.refresh_buffer,
            token_url=config.token_url,
            client_id=config.client_id,
            recovery_path=config.recovery_path,
            events=app.state.ws_registry,
        )
        app.state.scheduler = Scheduler(
            app.state.coordinator, interval=config.refresh_interval
        )
        if config.autostart:
            app.state.scheduler.start()

    yield

    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()
        await scheduler.wait_idle()

    db = getattr(app.state, "db", None)
    if db is not None:
        try:
            db.close()
        except Exception as e:
            logger.debug("Credential store close failed: %s", e)


app = FastAPI(
    title="token-warden",
    description="Keeps upstream OAuth account tokens refreshed.",
    version=__version__,
    lifespan=lifespan,
)

_startup_config = WardenConfig.from_env()
_cors_origins = _build_allowed_origins(_startup_config.host, _startup_config.port)
# allow_credentials must be False when origins is ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials="*" not in _cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Exception handlers ---


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": {"message": str(exc), "code": "VALIDATION_ERROR"}},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {"message": "An internal error occurred", "code": "INTERNAL_ERROR"}
        },
    )


# --- WebSocket event bus ---


@app.websocket("/api/ws")
async def websocket_endpoint(ws: WebSocket):
    """Refresh event stream. ``/api/ws?topics=accounts_refreshed,scheduler``"""
    await ws.accept()

    raw_topics = ws.query_params.get("topics", "*")
    topics = [t.strip() for t in raw_topics.split(",") if t.strip()] or ["*"]

    registry: WebSocketRegistry = app.state.ws_registry
    await registry.connect(ws, topics)

    async def _keepalive():
        while True:
            await asyncio.sleep(WS_KEEPALIVE_INTERVAL)
            try:
                await ws.send_text(json.dumps({"type": "ping"}))
            except Exception:
                break

    keepalive_task = asyncio.create_task(_keepalive())
    try:
        while True:
            # Client messages are ignored; receiving detects disconnects
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        keepalive_task.cancel()
        try:
            await keepalive_task
        except asyncio.CancelledError:
            pass
        registry.disconnect(ws)


# --- Include route modules ---

from warden.api.routes import refresh  # noqa: E402

app.include_router(refresh.router, prefix="/api", tags=["refresh"])
