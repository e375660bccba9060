"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and access control.

Bearer tokens are accepted from two places, checked in priority order:
  1. JWT cookie ("access_token") -- browser clients.
  2. Authorization: Bearer <token> header -- API clients.

Either way the token goes through AuthService.verify_bearer() (signature,
expiry, revocation store) and then the user is reloaded from the store, so a
deactivated user is locked out immediately even with a live token.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_roles() / require_permissions() build dependencies that also run
the PermissionResolver checks and raise HTTP 403 listing what is missing.

The host application puts an AuthService on app.state.auth_service (see
api/main.py lifespan).

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthError
from auth.models import User
from auth.service import AuthService


def http_error(exc: AuthError) -> HTTPException:
    """Map a domain AuthError onto the API's {"code", "message"} error detail."""
    return HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message},
    )


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def bearer_token(request: Request) -> str | None:
    """Return the raw bearer token from the cookie or Authorization header, if any."""
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request. Returns the User (secrets stripped) or None.

    Never raises for bad credentials -- callers that need a hard 401 should
    use get_current_user().
    """
    token = bearer_token(request)
    if not token:
        return None
    service = _service(request)
    payload = service.verify_bearer(token)
    if payload is None:
        return None
    user = service.users.get_by_id(payload["user_id"])
    if user is None or not user.is_active:
        return None
    return user.public()


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_roles(*roles: str) -> Callable[[Request], User]:
    """Build a dependency that allows users holding ANY of roles.

    The legacy role field and assigned roles both count; admin passes.

        @router.get("/content", dependencies=[Depends(require_roles("editor"))])
    """
    required = list(roles)

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        try:
            _service(request).resolver.require_any_role(user, required)
        except AuthError as exc:
            raise http_error(exc) from exc
        return user

    return dependency


def require_permissions(*permissions: str) -> Callable[[Request], User]:
    """Build a dependency that allows users holding ALL of permissions.

    Effective permissions are re-resolved from the store on every request;
    the snapshot inside the bearer token is not trusted for this.
    The admin legacy role bypasses the check.

        @router.delete("/users/{id}", dependencies=[Depends(require_permissions("delete:users"))])
    """
    required = list(permissions)

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        try:
            _service(request).resolver.require_all_permissions(user, required)
        except AuthError as exc:
            raise http_error(exc) from exc
        return user

    return dependency


require_admin = require_roles("admin")
