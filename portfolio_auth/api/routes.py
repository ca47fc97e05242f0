from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import RedirectResponse

from portfolio_auth.api.middleware import (
    RequireAdmin,
    get_identity,
    optional_identity,
    request_address,
)
from portfolio_auth.api.schemas import (
    AdminLoginRequest,
    AdminLoginResponse,
    AdminSetupCompleteRequest,
    AdminSetupRequest,
    AdminUserResponse,
    AuthResponse,
    BackupCodesResponse,
    ClaimsResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    MFAStatusResponse,
    MFAVerificationRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    RefreshTokenRequest,
    RegisterRequest,
    SetupStatusResponse,
    TokenPairResponse,
    TOTPCodeRequest,
    TOTPDisableRequest,
    TOTPSetupResponse,
    UserResponse,
    ValidateResponse,
)
from portfolio_auth.logging import get_logger
from portfolio_auth.service.admin import ADMIN_ROLE, AdminLoginResult
from portfolio_auth.service.errors import RateLimitedError, ServiceError, ValidationError
from portfolio_auth.service.ratelimit import auth_key
from portfolio_auth.service.runtime import get_runtime
from portfolio_auth.service.tokens import Claims, TokenPair
from portfolio_auth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

__version__ = "0.1.0"
HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(**user.public_dict())


def _tokens_to_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(**pair.as_dict())


def _claims_to_response(claims: Claims) -> ClaimsResponse:
    return ClaimsResponse(
        user_id=claims.user_id,
        username=claims.username,
        email=claims.email,
        role=claims.role,
        issuer=claims.issuer,
        audience=list(claims.audience),
        expires_at=claims.expires_at,
        issued_at=claims.issued_at,
        token_id=claims.token_id,
    )


def _admin_login_response(result: AdminLoginResult) -> AdminLoginResponse:
    if result.requires_mfa:
        return AdminLoginResponse(
            requires_mfa=True, mfa_type=result.mfa_type, temp_token=result.temp_token
        )
    user = result.user
    return AdminLoginResponse(
        requires_mfa=False,
        token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
        user=AdminUserResponse(
            id=user.id,
            email=user.email,
            username=user.username,
            is_admin=user.role == ADMIN_ROLE,
        ),
    )


class LoginThrottle:
    """Per-address lockout around a login attempt using the auth limiter.

    Blocked addresses are refused before credentials are looked at; 401 and
    403 outcomes count as failures and a success clears the entry.
    """

    def __init__(self, request: Request) -> None:
        self.limiter = get_runtime().auth_limiter
        self.address = request_address(request)
        self.key = auth_key(self.address)

    async def __aenter__(self) -> "LoginThrottle":
        if self.limiter.is_blocked(self.key):
            retry_after = self.limiter.retry_after(self.key)
            logger.warning("login_throttled", client_ip=self.address, retry_after=retry_after)
            raise RateLimitedError(
                "too many failed login attempts, try again later", retry_after=retry_after
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            self.limiter.reset(self.key)
        elif isinstance(exc, ServiceError) and exc.status_code in (401, 403):
            self.limiter.record_failure(self.key)
        return False


# user authentication


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a regular user account and sign it in.

    Raises:
        400: If the passwords differ or the password is too weak
        409: If the email or username is taken
    """
    if body.password != body.confirm_password:
        raise ValidationError("passwords do not match")
    runtime = get_runtime()
    user = await runtime.credentials.register(
        body.email, body.username, body.password, full_name=body.full_name
    )
    pair = await runtime.credentials.issue_pair_for(user)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(user),
            tokens=_tokens_to_response(pair),
            message="Registration successful",
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email or username and password.

    Raises:
        401: If credentials are invalid or the account is deactivated
        429: If the client address is locked out
    """
    runtime = get_runtime()
    async with LoginThrottle(request):
        user, pair = await runtime.credentials.login(body.email_or_username, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(user),
            tokens=_tokens_to_response(pair),
            message="Login successful",
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshTokenRequest):
    runtime = get_runtime()
    pair = await runtime.credentials.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(tokens=_tokens_to_response(pair), message="Token refreshed successfully"),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: RefreshTokenRequest):
    runtime = get_runtime()
    await runtime.credentials.logout(body.refresh_token)
    return Envelope(status="ok", data=MessageResponse(message="Logout successful"))


@router.get("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate_token(identity: Claims = Depends(get_identity)):
    runtime = get_runtime()
    user = runtime.credentials.get_profile(identity.user_id)
    return Envelope(
        status="ok",
        data=ValidateResponse(
            valid=True, user=_user_to_response(user), claims=_claims_to_response(identity)
        ),
    )


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(identity: Claims = Depends(get_identity)):
    runtime = get_runtime()
    user = runtime.credentials.get_profile(identity.user_id)
    return Envelope(status="ok", data=AuthResponse(user=_user_to_response(user)))


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, identity: Claims = Depends(get_identity)):
    """Change the caller's password; every refresh token of the user is revoked."""
    if body.new_password != body.confirm_password:
        raise ValidationError("passwords do not match")
    runtime = get_runtime()
    await runtime.credentials.change_password(
        identity.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="Password updated successfully"))


# admin authentication


@router.post("/admin/login", response_model=Envelope, tags=["admin"])
async def admin_login(body: AdminLoginRequest, request: Request):
    """Admin login; the email allow-list is checked before the password.

    Returns a temporary token instead of a session when TOTP is enabled.
    """
    runtime = get_runtime()
    async with LoginThrottle(request):
        result = await runtime.admin.login(body.email, body.password)
    return Envelope(status="ok", data=_admin_login_response(result))


@router.post("/admin/mfa/verify", response_model=Envelope, tags=["admin"])
async def admin_verify_mfa(body: MFAVerificationRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.admin.verify_mfa_and_login(
        body.temp_token,
        body.mfa_code,
        body.is_backup_code,
        ip_address=request_address(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(status="ok", data=_admin_login_response(result))


@router.post("/admin/setup/request", response_model=Envelope, tags=["admin"])
async def admin_setup_request(body: AdminSetupRequest):
    runtime = get_runtime()
    await runtime.admin.request_setup(body.email)
    return Envelope(status="ok", data=MessageResponse(message="Setup email sent successfully"))


@router.post("/admin/setup/complete", response_model=Envelope, tags=["admin"])
async def admin_setup_complete(body: AdminSetupCompleteRequest):
    runtime = get_runtime()
    await runtime.admin.complete_setup(
        body.email, body.password, body.confirm_password, body.setup_token
    )
    return Envelope(
        status="ok", data=MessageResponse(message="Admin account created successfully")
    )


@router.get("/admin/setup/status", response_model=Envelope, tags=["admin"])
async def admin_setup_status(identity: Optional[Claims] = Depends(optional_identity)):
    """Public setup state; a valid admin token also marks the caller as admin."""
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=SetupStatusResponse(
            has_admin=runtime.admin.has_admin_account(),
            setup_enabled=runtime.admin.setup_enabled,
            is_admin=identity is not None and identity.role == ADMIN_ROLE,
        ),
    )


@router.get("/admin/validate", response_model=Envelope, tags=["admin"])
async def admin_validate(identity: Claims = Depends(RequireAdmin)):
    return Envelope(
        status="ok",
        data=AdminUserResponse(
            id=identity.user_id,
            email=identity.email,
            username=identity.username,
            is_admin=True,
        ),
    )


@router.get("/admin/mfa/status", response_model=Envelope, tags=["admin"])
async def admin_mfa_status(identity: Claims = Depends(RequireAdmin)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=MFAStatusResponse(**runtime.admin.mfa_status(identity.user_id))
    )


@router.post("/admin/mfa/setup", response_model=Envelope, tags=["admin"])
async def admin_mfa_setup(body: PasswordConfirmRequest, identity: Claims = Depends(RequireAdmin)):
    """Start TOTP enrollment; the secret and backup codes are shown once."""
    runtime = get_runtime()
    setup = await runtime.admin.setup_totp(identity.user_id, body.password)
    return Envelope(
        status="ok",
        data=TOTPSetupResponse(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            backup_codes=setup.backup_codes,
        ),
    )


@router.post("/admin/mfa/enable", response_model=Envelope, tags=["admin"])
async def admin_mfa_enable(body: TOTPCodeRequest, identity: Claims = Depends(RequireAdmin)):
    runtime = get_runtime()
    await runtime.admin.enable_totp(identity.user_id, body.code)
    return Envelope(status="ok", data=MessageResponse(message="MFA enabled"))


@router.post("/admin/mfa/disable", response_model=Envelope, tags=["admin"])
async def admin_mfa_disable(body: TOTPDisableRequest, identity: Claims = Depends(RequireAdmin)):
    runtime = get_runtime()
    await runtime.admin.disable_totp(identity.user_id, body.password, body.code)
    return Envelope(status="ok", data=MessageResponse(message="MFA disabled"))


@router.post("/admin/mfa/backup-codes", response_model=Envelope, tags=["admin"])
async def admin_regenerate_backup_codes(
    body: PasswordConfirmRequest, identity: Claims = Depends(RequireAdmin)
):
    runtime = get_runtime()
    codes = await runtime.admin.regenerate_backup_codes(identity.user_id, body.password)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


# admin OAuth


@router.get("/auth/admin/oauth/callback/{provider}", tags=["oauth"])
async def oauth_callback(
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
    error_description: Optional[str] = Query(None, max_length=1024),
):
    """Finish the provider round trip and hand the session to the frontend."""
    runtime = get_runtime()
    target = await runtime.oauth.handle_callback(
        provider, code, state, error=error, error_description=error_description
    )
    return RedirectResponse(target, status_code=307)


@router.get("/auth/admin/oauth/{provider}", tags=["oauth"])
async def oauth_initiate(
    provider: str = Path(..., max_length=32),
    redirect: Optional[str] = Query(None, max_length=2048),
):
    runtime = get_runtime()
    url = await runtime.oauth.initiate(provider, redirect)
    return RedirectResponse(url, status_code=307)


@router.get("/health", tags=["system"])
async def health():
    """Liveness plus bounded checks of the repository and cache."""
    runtime = get_runtime()
    checks: dict = {}

    async def _probe(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_probe = getattr(runtime.store, "verify_connection", None)
    store_ok = await _probe("database", store_probe) if store_probe else True
    checks["database"] = {"status": "healthy" if store_ok else "unhealthy"}
    cache_ok = await _probe("cache", runtime.cache.verify_connection)
    checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy"}

    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
