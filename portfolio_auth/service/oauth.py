from __future__ import annotations

import base64
import hashlib
import secrets
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlencode, urlparse

import httpx

from portfolio_auth.logging import get_logger, log_security_event
from portfolio_auth.service.admin import ADMIN_ROLE, email_allowed, username_from_email
from portfolio_auth.service.credentials import CredentialService, UserStore, normalize_email
from portfolio_auth.service.crypto import TokenCipher
from portfolio_auth.service.errors import (
    AccountDeactivatedError,
    EmailNotAuthorizedError,
    OAuthProviderError,
    OAuthStateInvalidError,
    RedirectNotAllowedError,
    ServerError,
    ValidationError,
)
from portfolio_auth.service.refresh_store import Cache
from portfolio_auth.storage.errors import ConstraintViolation, StorageUnavailable
from portfolio_auth.storage.models import OAuthTokenRecord, User, utcnow

logger = get_logger(__name__)

STATE_KEY_PREFIX = "oauth:state:"


@dataclass(frozen=True)
class ProviderConfig:
    client_id: str
    client_secret: str
    redirect_url: str
    scopes: List[str]


@dataclass(frozen=True)
class AuthURL:
    url: str
    verifier: str = ""


@dataclass(frozen=True)
class ProviderToken:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"


@dataclass(frozen=True)
class ProviderUserInfo:
    provider_user_id: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None


def _pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(32)
    challenge = base64.urlsafe_b64encode(
        hashlib.sha256(verifier.encode("ascii")).digest()
    ).decode("ascii").rstrip("=")
    return verifier, challenge


class OAuthProvider:
    """Authorization-code adapter for one identity provider."""

    name = ""
    auth_endpoint = ""
    token_endpoint = ""
    uses_pkce = True

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client

    def _auth_params(self, state: str, nonce: str) -> Dict[str, str]:
        return {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_url,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "state": state,
        }

    def get_auth_url(self, state: str, nonce: str) -> AuthURL:
        params = self._auth_params(state, nonce)
        verifier = ""
        if self.uses_pkce:
            verifier, challenge = _pkce_pair()
            params["code_challenge"] = challenge
            params["code_challenge_method"] = "S256"
        return AuthURL(url=f"{self.auth_endpoint}?{urlencode(params)}", verifier=verifier)

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
                url=url,
            )
            raise OAuthProviderError(f"{self.name} returned status {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_request_failed", provider=self.name, url=url, error=str(exc))
            raise OAuthProviderError(f"{self.name} request failed") from exc

    async def _token_request(self, data: Dict[str, str]) -> ProviderToken:
        payload = await self._request_json(
            "POST",
            self.token_endpoint,
            data=data,
            headers={"Accept": "application/json"},
        )
        if not isinstance(payload, dict) or not payload.get("access_token"):
            error = payload.get("error") if isinstance(payload, dict) else None
            raise OAuthProviderError(f"{self.name} token response invalid: {error or 'no access token'}")
        expires_in = payload.get("expires_in")
        if expires_in is not None:
            try:
                expires_in = int(expires_in)
            except (TypeError, ValueError) as exc:
                raise OAuthProviderError(f"{self.name} returned an invalid expires_in") from exc
        return ProviderToken(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=expires_in,
            token_type=payload.get("token_type", "Bearer"),
        )

    async def exchange_code(self, code: str, verifier: str = "") -> ProviderToken:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_url,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        if verifier:
            data["code_verifier"] = verifier
        return await self._token_request(data)

    async def refresh_token(self, refresh_token: str) -> ProviderToken:
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            }
        )

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        raise NotImplementedError

    async def revoke_token(self, token: str) -> None:
        raise NotImplementedError

    async def _expect_success(self, method: str, url: str, **kwargs: Any) -> None:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise OAuthProviderError(f"{self.name} revoke failed") from exc
        if response.status_code not in (200, 204):
            raise OAuthProviderError(
                f"{self.name} revoke returned status {response.status_code}"
            )


class GoogleProvider(OAuthProvider):
    name = "google"
    auth_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    userinfo_endpoint = "https://www.googleapis.com/oauth2/v2/userinfo"
    revoke_endpoint = "https://oauth2.googleapis.com/revoke"

    def _auth_params(self, state: str, nonce: str) -> Dict[str, str]:
        params = super()._auth_params(state, nonce)
        params.update({"access_type": "offline", "prompt": "consent", "nonce": nonce})
        return params

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        data = await self._request_json(
            "GET",
            self.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        uid = data.get("id") or data.get("sub")
        if not uid or not data.get("email"):
            raise OAuthProviderError("google user info incomplete")
        verified = data.get("verified_email", data.get("email_verified", False))
        return ProviderUserInfo(
            provider_user_id=str(uid),
            email=data["email"],
            email_verified=bool(verified),
            name=data.get("name"),
            picture=data.get("picture"),
        )

    async def revoke_token(self, token: str) -> None:
        await self._expect_success("POST", self.revoke_endpoint, params={"token": token})


class GitHubProvider(OAuthProvider):
    name = "github"
    auth_endpoint = "https://github.com/login/oauth/authorize"
    token_endpoint = "https://github.com/login/oauth/access_token"
    uses_pkce = False
    api_base = "https://api.github.com"

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github.v3+json",
        }

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        data = await self._request_json(
            "GET", f"{self.api_base}/user", headers=self._headers(access_token)
        )
        if not data.get("id"):
            raise OAuthProviderError("github user info incomplete")
        email = data.get("email")
        verified = bool(email)
        if not email:
            email, verified = await self._primary_email(access_token)
        return ProviderUserInfo(
            provider_user_id=str(data["id"]),
            email=email,
            email_verified=verified,
            name=data.get("name") or data.get("login"),
            picture=data.get("avatar_url"),
        )

    async def _primary_email(self, access_token: str) -> tuple[str, bool]:
        emails = await self._request_json(
            "GET", f"{self.api_base}/user/emails", headers=self._headers(access_token)
        )
        if not isinstance(emails, list):
            raise OAuthProviderError("no email found for github user")
        entries = [
            entry
            for entry in emails
            if isinstance(entry, dict) and isinstance(entry.get("email"), str) and entry["email"]
        ]
        if not entries:
            raise OAuthProviderError("no email found for github user")
        for entry in entries:
            if entry.get("primary") and entry.get("verified"):
                return entry["email"], True
        first = entries[0]
        return first["email"], bool(first.get("verified"))

    async def revoke_token(self, token: str) -> None:
        await self._expect_success(
            "DELETE",
            f"{self.api_base}/applications/{self.config.client_id}/token",
            auth=(self.config.client_id, self.config.client_secret),
            json={"access_token": token},
            headers={"Accept": "application/vnd.github.v3+json"},
        )


class MicrosoftProvider(OAuthProvider):
    name = "microsoft"
    auth_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    token_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    userinfo_endpoint = "https://graph.microsoft.com/v1.0/me"
    revoke_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/logout"

    def _auth_params(self, state: str, nonce: str) -> Dict[str, str]:
        params = super()._auth_params(state, nonce)
        params["nonce"] = nonce
        return params

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        data = await self._request_json(
            "GET",
            self.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        email = data.get("mail") or data.get("userPrincipalName")
        if not data.get("id") or not email:
            raise OAuthProviderError("microsoft user info incomplete")
        # Work and school accounts are verified by the tenant
        return ProviderUserInfo(
            provider_user_id=str(data["id"]),
            email=email,
            email_verified=True,
            name=data.get("displayName"),
            picture=None,
        )

    async def revoke_token(self, token: str) -> None:
        await self._expect_success(
            "POST",
            self.revoke_endpoint,
            data={
                "token": token,
                "token_type_hint": "access_token",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )


PROVIDER_CLASSES = {
    "google": GoogleProvider,
    "github": GitHubProvider,
    "microsoft": MicrosoftProvider,
}


def build_providers(
    configs: Dict[str, Dict[str, Any]], client: httpx.AsyncClient
) -> Dict[str, OAuthProvider]:
    """Instantiate the providers whose client id and secret are configured."""
    providers: Dict[str, OAuthProvider] = {}
    for name, cls in PROVIDER_CLASSES.items():
        cfg = configs.get(name) or {}
        if not cfg.get("client_id") or not cfg.get("client_secret"):
            continue
        providers[name] = cls(
            ProviderConfig(
                client_id=cfg["client_id"],
                client_secret=cfg["client_secret"],
                redirect_url=cfg.get("redirect_url") or "",
                scopes=list(cfg.get("scopes") or []),
            ),
            client,
        )
    return providers


@dataclass
class OAuthState:
    state: str
    nonce: str
    provider: str
    session_id: str
    created_at: float
    verifier: str = ""
    redirect_url: str = ""


class OAuthStateStore:
    """Single-use OAuth correlation records kept in the shared cache."""

    def __init__(self, cache: Cache, ttl_seconds: int = 300, clock=time.time) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def new_state(self, provider: str, redirect_url: str) -> OAuthState:
        return OAuthState(
            state=secrets.token_urlsafe(32),
            nonce=secrets.token_urlsafe(32),
            provider=provider,
            session_id=secrets.token_urlsafe(16),
            created_at=self._clock(),
            redirect_url=redirect_url,
        )

    async def save(self, state: OAuthState) -> None:
        try:
            await self.cache.set_json(
                f"{STATE_KEY_PREFIX}{state.state}", asdict(state), self.ttl_seconds
            )
        except StorageUnavailable as exc:
            logger.error("oauth_state_store_failed", error=str(exc))
            raise ServerError("unable to start OAuth flow") from exc

    async def consume(self, state: str) -> OAuthState:
        """Atomically fetch and delete ``state``; replays and stale states fail."""
        if not state:
            raise OAuthStateInvalidError("state parameter is required")
        try:
            data = await self.cache.pop_json(f"{STATE_KEY_PREFIX}{state}")
        except StorageUnavailable as exc:
            logger.warning("oauth_state_lookup_failed", error=str(exc))
            raise OAuthStateInvalidError("invalid or expired state") from exc
        if not isinstance(data, dict):
            raise OAuthStateInvalidError("invalid or expired state")
        try:
            record = OAuthState(**data)
        except TypeError as exc:
            raise OAuthStateInvalidError("invalid or expired state") from exc
        if self._clock() - record.created_at > self.ttl_seconds:
            raise OAuthStateInvalidError("state expired")
        return record


class OAuth2Flow:
    """Admin-only federated login: initiate, callback, provisioning."""

    def __init__(
        self,
        providers: Dict[str, OAuthProvider],
        state_store: OAuthStateStore,
        store: UserStore,
        credentials: CredentialService,
        cipher: TokenCipher,
        *,
        allowed_emails: Iterable[str] = (),
        frontend_url: str = "http://localhost:3000",
        allowed_redirect_origins: Iterable[str] = (),
        default_redirect: str = "/devpanel",
    ) -> None:
        self.providers = providers
        self.state_store = state_store
        self.store = store
        self.credentials = credentials
        self.cipher = cipher
        self.allowed_emails = [e.lower() for e in allowed_emails]
        self.frontend_url = frontend_url.rstrip("/")
        self.allowed_redirect_origins = {o.rstrip("/") for o in allowed_redirect_origins}
        self.default_redirect = default_redirect
        self.logger = logger

    def get_provider(self, name: str) -> OAuthProvider:
        provider = self.providers.get((name or "").lower())
        if provider is None:
            raise ValidationError(f"OAuth provider '{name}' is not configured")
        return provider

    def validate_redirect(self, target: Optional[str]) -> str:
        """Accept relative paths, the frontend URL, or an allow-listed origin."""
        if not target:
            return self.default_redirect
        if "\\" in target or any(ord(ch) < 0x20 for ch in target):
            raise RedirectNotAllowedError("redirect URL not allowed")
        if target.startswith("/"):
            if target.startswith("//"):
                raise RedirectNotAllowedError("redirect URL not allowed")
            return target
        parsed = urlparse(target)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc or "@" in parsed.netloc:
            raise RedirectNotAllowedError("redirect URL not allowed")
        if target == self.frontend_url or target.startswith(self.frontend_url + "/"):
            return target
        origin = f"{parsed.scheme}://{parsed.netloc}".lower()
        if origin in self.allowed_redirect_origins:
            return target
        raise RedirectNotAllowedError("redirect URL not allowed")

    async def initiate(self, provider_name: str, redirect: Optional[str] = None) -> str:
        provider = self.get_provider(provider_name)
        redirect_url = self.validate_redirect(redirect)
        state = self.state_store.new_state(provider.name, redirect_url)
        auth = provider.get_auth_url(state.state, state.nonce)
        state.verifier = auth.verifier
        await self.state_store.save(state)
        self.logger.info("oauth_initiated", provider=provider.name, session_id=state.session_id)
        return auth.url

    async def handle_callback(
        self,
        provider_name: str,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> str:
        """Complete the flow and return the frontend URL carrying the token fragment."""
        if error:
            log_security_event(
                "oauth_provider_denied", provider=provider_name, reason=error
            )
            raise OAuthProviderError(
                f"{error}: {error_description}" if error_description else error,
                status_code=400,
                detail={"error": error, "error_description": error_description},
            )
        if not code or not state:
            raise OAuthStateInvalidError("missing code or state")
        provider = self.get_provider(provider_name)
        record = await self.state_store.consume(state)
        if record.provider != provider.name:
            log_security_event(
                "oauth_provider_mismatch", expected=record.provider, actual=provider.name
            )
            raise OAuthStateInvalidError("provider mismatch")

        token = await provider.exchange_code(code, record.verifier)
        info = await provider.get_user_info(token.access_token)

        if not email_allowed(info.email, self.allowed_emails):
            log_security_event("oauth_email_rejected", provider=provider.name, email=info.email)
            raise EmailNotAuthorizedError()
        if not info.email_verified:
            log_security_event("oauth_email_unverified", provider=provider.name, email=info.email)
            raise EmailNotAuthorizedError("email not verified by provider")

        user = self.find_or_create_user(provider.name, info)
        if not user.is_active:
            raise AccountDeactivatedError()
        self.store_provider_tokens(user.id, provider.name, token)
        pair = await self.credentials.issue_pair_for(user)
        self.logger.info("oauth_login_succeeded", provider=provider.name, user_id=user.id)
        return self.build_frontend_redirect(record.redirect_url, pair.access_token, pair.expires_in)

    def find_or_create_user(self, provider: str, info: ProviderUserInfo) -> User:
        email = normalize_email(info.email)
        user = self.store.get_user_by_email(email)
        if user:
            if info.name:
                user.full_name = info.name
            if info.picture:
                user.avatar_url = info.picture
            user.oauth_provider = provider
            user.oauth_provider_id = info.provider_user_id
            user.last_login = utcnow()
            return self.store.save_user(user)

        base = username_from_email(email)
        username = base
        while self.store.get_user_by_username(username):
            username = f"{base}_{secrets.token_hex(2)}"
        user = User.new(
            email,
            username,
            role=ADMIN_ROLE,
            is_verified=True,
            full_name=info.name,
            avatar_url=info.picture,
        )
        user.oauth_provider = provider
        user.oauth_provider_id = info.provider_user_id
        user.last_login = utcnow()
        try:
            user = self.store.create_user(user)
        except ConstraintViolation:
            # Lost a race with a concurrent callback for the same address
            existing = self.store.get_user_by_email(email)
            if existing is None:
                raise
            return existing
        log_security_event("oauth_admin_provisioned", provider=provider, user_id=user.id)
        return user

    def store_provider_tokens(self, user_id: str, provider: str, token: ProviderToken) -> None:
        expiry = (
            utcnow() + timedelta(seconds=token.expires_in) if token.expires_in else None
        )
        self.store.upsert_oauth_token(
            OAuthTokenRecord(
                user_id=user_id,
                provider=provider,
                access_token=self.cipher.encrypt(token.access_token),
                refresh_token=self.cipher.encrypt(token.refresh_token)
                if token.refresh_token
                else None,
                token_expiry=expiry,
            )
        )

    def build_frontend_redirect(self, redirect_url: str, access_token: str, expires_in: int) -> str:
        fragment = urlencode(
            {"access_token": access_token, "token_type": "Bearer", "expires_in": expires_in}
        )
        target = redirect_url or self.default_redirect
        if target.startswith("/"):
            target = f"{self.frontend_url}{target}"
        # Fragment keeps the token out of server logs and Referer headers
        return f"{target.split('#', 1)[0]}#{fragment}"

    def decrypt_provider_token(self, record: OAuthTokenRecord) -> str:
        return self.cipher.decrypt(record.access_token)

    async def revoke_provider_tokens(self, user_id: str, provider_name: str) -> bool:
        """Revoke the stored provider token for ``user_id`` at the provider."""
        record = self.store.get_oauth_token(user_id, provider_name)
        if record is None:
            return False
        provider = self.get_provider(provider_name)
        await provider.revoke_token(self.decrypt_provider_token(record))
        self.logger.info("oauth_token_revoked", provider=provider_name, user_id=user_id)
        return True
