from __future__ import annotations

from typing import Iterable, Optional

from fastapi import Request

from portfolio_auth.api.error_handling import error_response, service_error_response
from portfolio_auth.logging import get_logger, log_security_event
from portfolio_auth.service.errors import ForbiddenError, MissingTokenError, ServiceError
from portfolio_auth.service.ratelimit import client_address
from portfolio_auth.service.runtime import get_runtime
from portfolio_auth.service.tokens import Claims, extract_bearer

logger = get_logger(__name__)


def is_public_path(path: str, public_paths: Iterable[str]) -> bool:
    """Exact match or a sub-path of a configured public prefix."""
    for prefix in public_paths:
        prefix = prefix.rstrip("/") or "/"
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def request_address(request: Request) -> str:
    peer = request.client.host if request.client else None
    return client_address(request.headers, peer)


async def auth_gate(request: Request, call_next):
    """Bearer-token gate for every non-public route.

    Failed verifications count against the general limiter for the client
    address; a successful one clears it and stores the claims on
    ``request.state.identity``.
    """
    runtime = get_runtime()
    if request.method.upper() == "OPTIONS" or is_public_path(
        request.url.path, runtime.settings.public_paths
    ):
        return await call_next(request)

    address = request_address(request)
    limiter = runtime.general_limiter
    if limiter.is_blocked(address):
        retry_after = limiter.retry_after(address)
        log_security_event(
            "auth_gate_blocked", client_ip=address, path=request.url.path, retry_after=retry_after
        )
        return error_response(
            429,
            "too many failed authentication attempts",
            code="rate_limited",
            headers={"Retry-After": str(retry_after)},
        )

    try:
        token = extract_bearer(request.headers.get("Authorization"))
        claims = runtime.credentials.authenticate(token)
    except ServiceError as exc:
        limiter.record_failure(address)
        logger.info(
            "auth_gate_rejected",
            path=request.url.path,
            client_ip=address,
            error_code=exc.error_code,
        )
        return service_error_response(exc)

    limiter.reset(address)
    request.state.identity = claims
    return await call_next(request)


def get_identity(request: Request) -> Claims:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise MissingTokenError("authentication required")
    return identity


def optional_identity(request: Request) -> Optional[Claims]:
    """Identity when a valid bearer token is present, otherwise ``None``."""
    identity = getattr(request.state, "identity", None)
    if identity is not None:
        return identity
    header = request.headers.get("Authorization")
    if not header:
        return None
    try:
        return get_runtime().credentials.authenticate(extract_bearer(header))
    except ServiceError:
        return None


class RequireRole:
    """Dependency that admits only identities holding one of ``roles``."""

    def __init__(self, *roles: str) -> None:
        self.roles = frozenset(roles)

    def __call__(self, request: Request) -> Claims:
        identity = get_identity(request)
        if identity.role not in self.roles:
            log_security_event(
                "role_check_failed",
                user_id=identity.user_id,
                role=identity.role,
                path=request.url.path,
            )
            raise ForbiddenError("insufficient permissions")
        return identity


RequireAdmin = RequireRole("admin")
