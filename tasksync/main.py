import logging
from contextlib import asynccontextmanager
from functools import partial

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Mount

from tasksync.auth import router as auth_router
from tasksync.config import Settings, get_settings
from tasksync.exceptions import (
    AuthenticationError,
    IntegrationError,
    PersistenceFailure,
    RateLimitError,
    RemoteUnavailable,
    TaskNotFoundError,
)
from tasksync.models.common import ErrorResponse
from tasksync.models.tasks import Snapshot
from tasksync.routers.tasks import router as tasks_router
from tasksync.services.cache import SyncCache
from tasksync.services.notify import ObserverChannel
from tasksync.services.storage import LocalStore
from tasksync.services.sync import SyncEngine
from tasksync.services.tasks import build_client
from tasksync.services.workspace import TaskWorkspace

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_services(settings: Settings) -> tuple[SyncEngine, TaskWorkspace]:
    """Wire the cache, store, client and engine.

    Without a usable token or network the workspace starts local-only and the
    engine retries building the client on every cycle.
    """
    store = LocalStore(settings.cache_file)
    try:
        snapshot = store.load()
    except PersistenceFailure as e:
        logger.warning("Ignoring unreadable task cache: %s", e)
        snapshot = Snapshot()
    cache = SyncCache(snapshot)

    connect = partial(build_client, settings.account)
    try:
        client = connect()
    except RemoteUnavailable as e:
        logger.warning("Google Tasks unavailable, working from the local cache only: %s", e)
        client = None

    channel = ObserverChannel(settings.notify_buffer)
    engine = SyncEngine(
        client,
        cache,
        store,
        channel,
        interval=settings.sync_interval,
        max_depth=settings.max_depth,
        connect=connect,
    )
    return engine, TaskWorkspace(cache, store, engine=engine)


# --- Localhost-only middleware ---

class LocalhostOnlyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        client_host = request.client.host if request.client else None
        if client_host not in ("127.0.0.1", "::1", "localhost"):
            return JSONResponse(
                status_code=403,
                content=ErrorResponse(error_code="forbidden", message="Localhost access only").model_dump(),
            )
        return await call_next(request)


# --- FastAPI app ---

api = FastAPI(title="tasksync", version="0.1.0")
api.include_router(auth_router)
api.include_router(tasks_router)


# --- Exception handlers ---

def _error_response(status_code: int, error_code: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_code=error_code, message=str(exc)).model_dump(),
    )


@api.exception_handler(AuthenticationError)
async def auth_error_handler(request: Request, exc: AuthenticationError):
    return _error_response(401, "auth_error", exc)


@api.exception_handler(RateLimitError)
async def rate_limit_error_handler(request: Request, exc: RateLimitError):
    return _error_response(429, "rate_limit", exc)


@api.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError):
    return _error_response(502, "integration_error", exc)


@api.exception_handler(RemoteUnavailable)
async def remote_unavailable_handler(request: Request, exc: RemoteUnavailable):
    return _error_response(502, "remote_unavailable", exc)


@api.exception_handler(PersistenceFailure)
async def persistence_error_handler(request: Request, exc: PersistenceFailure):
    return _error_response(500, "persistence_error", exc)


@api.exception_handler(TaskNotFoundError)
async def not_found_handler(request: Request, exc: TaskNotFoundError):
    return _error_response(404, "not_found", exc)


@api.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error_response(422, "invalid_request", exc)


# --- Starlette root app ---

@asynccontextmanager
async def lifespan(_app):
    settings = get_settings()
    configure_logging(settings.log_level)
    engine, workspace = build_services(settings)
    api.state.engine = engine
    api.state.workspace = workspace
    engine.start(run_immediately=True)
    try:
        yield
    finally:
        engine.stop(timeout=settings.sync_interval)


app = Starlette(
    middleware=[Middleware(LocalhostOnlyMiddleware)],
    routes=[Mount("/", app=api)],
    lifespan=lifespan,
)


def run():
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "tasksync.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
