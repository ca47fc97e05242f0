from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - invalid_credentials, account_deactivated, token_expired, token_invalid,
      missing_token, mfa_required, mfa_invalid (401)
    - forbidden, email_not_authorized, setup_disabled, setup_token_invalid (403)
    - not_found (404)
    - already_exists / conflict (409)
    - rate_limited (429)
    - validation_error, weak_password, redirect_not_allowed,
      oauth_state_invalid (400)
    - oauth_provider_error (502)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPasswordError(ValidationError):
    """Password does not satisfy the strength policy (400)."""
    error_code = "weak_password"


class PasswordTooShortError(WeakPasswordError):
    pass


class PasswordTooWeakError(WeakPasswordError):
    pass


class PasswordTooLongError(WeakPasswordError):
    pass


class RedirectNotAllowedError(ValidationError):
    """Post-login redirect target is not same-origin or allow-listed (400)."""
    error_code = "redirect_not_allowed"


class OAuthStateInvalidError(ValidationError):
    """OAuth state missing, expired, replayed or bound to another provider (400)."""
    error_code = "oauth_state_invalid"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown user or wrong password; deliberately indistinguishable (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordMismatchError(InvalidCredentialsError):
    pass


class AccountDeactivatedError(AuthenticationError):
    error_code = "account_deactivated"

    def __init__(self, message: str = "account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MissingTokenError(AuthenticationError):
    error_code = "missing_token"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    """Malformed token, wrong algorithm, issuer or audience (401)."""
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SignatureMismatchError(TokenInvalidError):
    pass


class RefreshTokenNotFoundError(TokenInvalidError):
    pass


class MFARequiredError(AuthenticationError):
    error_code = "mfa_required"


class MFAInvalidError(AuthenticationError):
    error_code = "mfa_invalid"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotAuthorizedError(ForbiddenError):
    error_code = "email_not_authorized"

    def __init__(
        self, message: str = "email not authorized for admin access", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class SetupDisabledError(ForbiddenError):
    error_code = "setup_disabled"


class SetupTokenInvalidError(ForbiddenError):
    error_code = "setup_token_invalid"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyExistsError(ConflictError):
    error_code = "already_exists"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). ``retry_after`` is in seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class OAuthProviderError(ServiceError):
    """Upstream OAuth provider failed or reported an error (502)."""
    status_code = 502
    error_code = "oauth_provider_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "PasswordTooShortError",
    "PasswordTooWeakError",
    "PasswordTooLongError",
    "RedirectNotAllowedError",
    "OAuthStateInvalidError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "PasswordMismatchError",
    "AccountDeactivatedError",
    "MissingTokenError",
    "TokenExpiredError",
    "TokenInvalidError",
    "SignatureMismatchError",
    "RefreshTokenNotFoundError",
    "MFARequiredError",
    "MFAInvalidError",
    "ForbiddenError",
    "EmailNotAuthorizedError",
    "SetupDisabledError",
    "SetupTokenInvalidError",
    "NotFoundError",
    "ConflictError",
    "AlreadyExistsError",
    "RateLimitedError",
    "ServerError",
    "OAuthProviderError",
]
