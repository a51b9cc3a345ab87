from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authsession.api.error_handling import register_exception_handlers
from authsession.api.routes import build_router
from authsession.config import Settings, get_settings
from authsession.logging import get_logger, set_correlation_id
from authsession.service.credentials import ARGON2ID_V1, CredentialVerifier, HashParameters
from authsession.service.errors import PersistenceError
from authsession.service.protocols import AuthStore
from authsession.service.sessions import SessionManager
from authsession.service.tokens import SecretSource
from authsession.storage.memory import MemoryStore
from authsession.storage.postgres import PostgresStore

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


def build_store(settings: Settings) -> AuthStore:
    """Open the configured backing store; a Postgres connect failure is fatal."""
    if settings.use_memory_store:
        logger.info("store_selected", backend="memory")
        return MemoryStore()
    logger.info("store_selected", backend="postgres")
    return PostgresStore(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        timeout=settings.db_connect_timeout,
    )


async def _run_session_sweep(manager: SessionManager, interval_seconds: int) -> None:
    """Background loop that deletes sessions nobody has presented since expiry."""
    try:
        while True:
            try:
                await asyncio.to_thread(manager.purge_expired)
            except PersistenceError as exc:
                logger.warning("session_sweep_failed", error=exc.message)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("session_sweep_cancelled")


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[AuthStore] = None,
    hash_params: HashParameters = ARGON2ID_V1,
    secret_source: Optional[SecretSource] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store if store is not None else build_store(settings)
    credentials = CredentialVerifier(
        store, params=hash_params, secret_source=secret_source
    )
    sessions = SessionManager(
        store,
        ttl=timedelta(minutes=settings.session_ttl_minutes),
        secret_source=secret_source,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweep_task: asyncio.Task | None = None
        if settings.session_sweep_interval_seconds > 0:
            sweep_task = asyncio.create_task(
                _run_session_sweep(sessions, settings.session_sweep_interval_seconds)
            )
            logger.info(
                "session_sweep_started",
                interval_seconds=settings.session_sweep_interval_seconds,
            )

        yield

        if sweep_task:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task
        close = getattr(store, "close", None)
        if callable(close):
            close()
        logger.info("shutdown_complete")

    app = FastAPI(title="authsession", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.sessions = sessions
    app.state.credentials = credentials

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with its X-Request-ID and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(build_router(sessions, credentials, settings))

    @app.get("/healthz")
    async def health():
        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
                )
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        storage_ok = await _run_bounded("storage", store.verify_connection)
        body: Dict[str, Any] = {
            "status": "healthy" if storage_ok else "unhealthy",
            "checks": {
                "storage": {
                    "status": "healthy" if storage_ok else "unhealthy",
                    "type": type(store).__name__,
                }
            },
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return JSONResponse(status_code=200 if storage_ok else 503, content=body)

    return app
