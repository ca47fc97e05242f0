from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from portfolio_auth.logging import get_logger
from portfolio_auth.service.errors import (
    MissingTokenError,
    SignatureMismatchError,
    TokenExpiredError,
    TokenInvalidError,
)
from portfolio_auth.service.refresh_store import RefreshIdentity, RefreshTokenStore

logger = get_logger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_MFA_PENDING = "mfa_pending"
# Fixed subject of temp tokens so they can never pass as a user's access token
MFA_PENDING_SUBJECT = "mfa-pending"

MIN_ACCESS_TTL_SECONDS = 15 * 60
MIN_REFRESH_TTL_SECONDS = 24 * 60 * 60
REFRESH_TOKEN_BYTES = 32


@dataclass(frozen=True)
class Claims:
    user_id: str
    username: str
    email: str
    role: str
    issuer: str
    audience: Tuple[str, ...]
    expires_at: int
    issued_at: int
    not_before: int
    token_id: str
    subject: str
    token_type: str = TOKEN_TYPE_ACCESS

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.subject,
            "uid": self.user_id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "iss": self.issuer,
            "aud": list(self.audience),
            "exp": self.expires_at,
            "iat": self.issued_at,
            "nbf": self.not_before,
            "jti": self.token_id,
            "token_type": self.token_type,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Claims":
        aud = payload.get("aud")
        audience = (aud,) if isinstance(aud, str) else tuple(aud or ())
        try:
            return cls(
                user_id=str(payload["uid"]),
                username=str(payload.get("username", "")),
                email=str(payload.get("email", "")),
                role=str(payload.get("role", "")),
                issuer=str(payload.get("iss", "")),
                audience=audience,
                expires_at=int(payload["exp"]),
                issued_at=int(payload.get("iat", 0)),
                not_before=int(payload.get("nbf", 0)),
                token_id=str(payload.get("jti", "")),
                subject=str(payload.get("sub", "")),
                token_type=str(payload.get("token_type", TOKEN_TYPE_ACCESS)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalidError("invalid token claims") from exc


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not header:
        raise MissingTokenError("authorization header required")
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise MissingTokenError("authorization header must be 'Bearer <token>'")
    return parts[1]


class TokenCodec:
    """Issues and verifies HS256 session tokens.

    Verification is pure: it only needs the shared secret and the clock, so
    it is safe to call from any number of concurrent requests.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        refresh_store: RefreshTokenStore,
        *,
        access_ttl_seconds: int = MIN_ACCESS_TTL_SECONDS,
        refresh_ttl_seconds: int = 7 * MIN_REFRESH_TTL_SECONDS,
        temp_ttl_seconds: int = 5 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.refresh_store = refresh_store
        self.access_ttl_seconds = max(int(access_ttl_seconds), MIN_ACCESS_TTL_SECONDS)
        self.refresh_ttl_seconds = max(int(refresh_ttl_seconds), MIN_REFRESH_TTL_SECONDS)
        self.temp_ttl_seconds = int(temp_ttl_seconds)
        self._clock = clock

    def _sign(self, signing_input: str) -> bytes:
        return hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._sign(signing_input))}"

    def _build_claims(
        self,
        user_id: str,
        username: str,
        email: str,
        role: str,
        *,
        ttl_seconds: int,
        subject: str,
        token_type: str,
    ) -> Claims:
        now = int(self._clock())
        return Claims(
            user_id=user_id,
            username=username,
            email=email,
            role=role,
            issuer=self.issuer,
            audience=(self.audience,),
            expires_at=now + ttl_seconds,
            issued_at=now,
            not_before=now,
            token_id=str(uuid.uuid4()),
            subject=subject,
            token_type=token_type,
        )

    def issue_access_token(
        self, user_id: str, username: str, email: str, role: str
    ) -> str:
        claims = self._build_claims(
            user_id,
            username,
            email,
            role,
            ttl_seconds=self.access_ttl_seconds,
            subject=user_id,
            token_type=TOKEN_TYPE_ACCESS,
        )
        return self.encode(claims.to_payload())

    def issue_temp_token(self, user_id: str, username: str, email: str, role: str) -> str:
        """Short-lived token proving the password step of an MFA login."""
        claims = self._build_claims(
            user_id,
            username,
            email,
            role,
            ttl_seconds=self.temp_ttl_seconds,
            subject=MFA_PENDING_SUBJECT,
            token_type=TOKEN_TYPE_MFA_PENDING,
        )
        return self.encode(claims.to_payload())

    async def issue_pair(
        self, user_id: str, username: str, email: str, role: str
    ) -> TokenPair:
        access_token = self.issue_access_token(user_id, username, email, role)
        refresh_token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        await self.refresh_store.store(
            refresh_token,
            RefreshIdentity(user_id=user_id, username=username, email=email, role=role),
            self.refresh_ttl_seconds,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl_seconds,
        )

    def verify(self, token: str) -> Claims:
        """Return the token's claims or raise a typed error.

        ``TokenExpiredError`` is only raised for correctly signed tokens, so
        callers can safely treat it as a cue to refresh.
        """
        parts = token.split(".") if token else []
        if len(parts) != 3:
            raise TokenInvalidError("malformed token")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalidError("malformed token header")
        if not isinstance(header, dict):
            raise TokenInvalidError("malformed token header")
        if header.get("alg") != ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError("unexpected signing algorithm")

        if not sig_b64.isascii():
            raise TokenInvalidError("malformed token signature")
        expected_sig = _encode_segment(self._sign(f"{header_b64}.{payload_b64}"))
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            raise SignatureMismatchError("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalidError("malformed token payload")
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token payload")
        claims = Claims.from_payload(payload)

        now = int(self._clock())
        if claims.expires_at <= now:
            raise TokenExpiredError()
        if claims.not_before > now:
            raise TokenInvalidError("token not yet valid")
        if claims.issuer != self.issuer:
            raise TokenInvalidError("token issuer mismatch")
        if self.audience not in claims.audience:
            raise TokenInvalidError("token audience mismatch")
        return claims
