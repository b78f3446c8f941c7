# device_loans/middleware/authentication.py
from typing import Optional, Set, Callable, Awaitable

from fastapi import Request
from fastapi.security.utils import get_authorization_scheme_param
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp
from loguru import logger

from device_loans.core.errors import Unauthorized
from device_loans.core.security import IdentityVerifier

# Paths that never look at credentials
PUBLIC_PATHS: Set[str] = {
    "/",
    "/docs",
    "/openapi.json",
    "/redoc",
}


def is_public_path(path: str) -> bool:
    if path in PUBLIC_PATHS:
        return True
    if path.startswith("/docs") or path.startswith("/redoc"):
        return True
    if path.startswith("/health"):
        return True
    return False


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Resolves the bearer token (if any) to a subject on request.state.

    Rejection is left to the endpoints: routes that require a user depend on
    `get_current_subject`, which turns `request.state.auth_error` into a 401.
    Several routes (approve, return, join-by-loan) accept anonymous calls.
    """

    def __init__(self, app: ASGIApp, verifier: IdentityVerifier):
        super().__init__(app)
        self.verifier = verifier

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        path = request.url.path
        request_id = getattr(request.state, "request_id", "N/A")
        request.state.subject = None
        request.state.auth_error = None

        if is_public_path(path):
            return await call_next(request)

        authorization: Optional[str] = request.headers.get("Authorization")
        if not authorization:
            request.state.auth_error = "No authorization header provided"
            return await call_next(request)

        scheme, token = get_authorization_scheme_param(authorization)
        if scheme.lower() != "bearer" or not token:
            logger.warning(f"RID:{request_id} Auth failed: malformed Authorization header for {path}.")
            request.state.auth_error = "Invalid authorization header format"
            return await call_next(request)

        try:
            request.state.subject = self.verifier.verify(token)
            logger.debug(f"RID:{request_id} Token validated for user '{request.state.subject}' on {path}.")
        except Unauthorized as e:
            logger.warning(f"RID:{request_id} Auth failed for {path}: {e.message}")
            request.state.auth_error = e.message

        return await call_next(request)
