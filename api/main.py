"""
api/main.py -- FastAPI host application for the Gatehouse auth engine.

The auth endpoints themselves (login, refresh, links) belong to the
embedding application. This module only provides what every host needs:

  - lifespan wiring: stores, AuthService and the mail sender on app.state,
    where auth/dependencies.py looks for them;
  - the periodic maintenance task (revocation sweep, lockout prune);
  - a uniform error envelope, including for AuthError raised by handlers;
  - GET /api/v1/health and GET /api/v1/auth/me.

Run with:  uvicorn asgi:app --reload
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse, MeResponse
from auth.dependencies import get_current_user
from auth.errors import AuthError
from auth.models import User
from auth.revocation import RevocationStore
from auth.service import AuthService
from auth.store import RoleStore, UserStore
from core.config import get_settings
from core.mailer import build_sender

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


def run_maintenance(service: AuthService) -> tuple[int, int]:
    """Sweep expired revocation records and stale lockout counters.

    Returns (revocation records removed, lockout counters removed).
    """
    swept = service.revocations.sweep_expired()
    pruned = service.lockout.prune()
    logger.info("Maintenance: %d revocation records swept, %d lockout counters pruned", swept, pruned)
    return swept, pruned


async def _maintenance_loop(app: FastAPI, interval: int) -> None:
    """Run maintenance every `interval` seconds until cancelled.

    No ordering dependency on request traffic. A failing sweep is logged
    and retried on the next tick rather than killing the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(run_maintenance, app.state.auth_service)
        except Exception:
            logger.exception("Maintenance sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create stores and the AuthService on startup; close them on shutdown.

    Default roles are seeded first so users created afterwards pick up the
    default role.
    """
    settings = get_settings()
    logger.info("Gatehouse API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.role_store = RoleStore(settings.database_url)
    app.state.revocation_store = RevocationStore(settings.database_url, secret_key=settings.secret_key)
    seeded = app.state.role_store.ensure_default_roles()
    if seeded:
        logger.info("Seeded %d default roles", seeded)
    app.state.auth_service = AuthService(
        users=app.state.user_store,
        roles=app.state.role_store,
        revocations=app.state.revocation_store,
        mailer=build_sender(settings),
        settings=settings,
    )
    app.state.maintenance_task = asyncio.create_task(
        _maintenance_loop(app, settings.revocation_sweep_interval_seconds)
    )

    yield

    app.state.maintenance_task.cancel()
    app.state.user_store.close()
    app.state.role_store.close()
    app.state.revocation_store.close()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Authentication, session and access-control engine.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Domain auth failures raised straight out of a handler."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured dict details (from auth.dependencies) are passed through as the error field."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected errors. The exception is logged, never echoed to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness plus a cheap database round trip. No authentication."""
    components = {"app": "ok"}
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable")
        components["database"] = "error"
    return HealthResponse(version=VERSION, components=components)


@app.get("/api/v1/auth/me", tags=["Auth"])
def me(request: Request, user: User = Depends(get_current_user)) -> MeResponse:
    """The authenticated user with assigned role keys and effective permissions."""
    resolver = request.app.state.auth_service.resolver
    return MeResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role.value,
        roles=sorted(role.key for role in resolver.assigned_roles(user)),
        permissions=sorted(resolver.effective_permissions(user)),
        is_email_verified=user.is_email_verified,
    )
