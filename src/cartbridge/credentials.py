"""Bearer credential cache, refresh and durable backup."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

import httpx

from .config import Settings
from .errors import CartbridgeError, ConfigurationError, Upstream4xxError, upstream_error
from .http_client import request_json
from .models import Credential, TokenPayload, _now_ms

logger = logging.getLogger(__name__)

REFRESH_BUFFER_MS = 60_000
DEFAULT_TTL_MS = 10 * 60 * 1000

PASSWORD_GRANT = "custom-password-grant"
REFRESH_GRANT = "refresh_token"

ACCESS_TOKEN_COOKIE = "external_access_token"
REFRESH_TOKEN_COOKIE = "external_refresh_token"
EXPIRES_AT_COOKIE = "external_token_expires_at"
ISSUED_AT_COOKIE = "external_token_issued_at"
TOKEN_COOKIES = (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, EXPIRES_AT_COOKIE, ISSUED_AT_COOKIE)
COOKIE_MAX_AGE = 60 * 60 * 24 * 7


class CredentialBackup(Protocol):
    """Durable storage a later request can rehydrate the credential from."""

    def load(self) -> Credential | None:
        ...

    def save(self, credential: Credential) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryBackup:
    """Backup held in a plain attribute. Used by the CLI and tests."""

    def __init__(self, credential: Credential | None = None):
        self.credential = credential

    def load(self) -> Credential | None:
        return self.credential

    def save(self, credential: Credential) -> None:
        self.credential = Credential.from_dict(credential.to_dict())

    def clear(self) -> None:
        self.credential = None


class CookieBackup:
    """Backup in client-held cookies.

    Reads come from the incoming request cookies. Writes are collected in
    ``pending`` and copied onto the outgoing response by ``apply``.
    """

    def __init__(self, cookies: Mapping[str, str]):
        self._cookies = {k: v for k, v in cookies.items() if k in TOKEN_COOKIES}
        self.pending: dict[str, str | None] = {}

    def load(self) -> Credential | None:
        if not self._cookies:
            return None
        return Credential(
            access_token=self._cookies.get(ACCESS_TOKEN_COOKIE) or None,
            refresh_token=self._cookies.get(REFRESH_TOKEN_COOKIE) or None,
            expires_at=_parse_int(self._cookies.get(EXPIRES_AT_COOKIE)),
            issued_at=_parse_int(self._cookies.get(ISSUED_AT_COOKIE)),
        )

    def save(self, credential: Credential) -> None:
        values = {
            ACCESS_TOKEN_COOKIE: credential.access_token,
            REFRESH_TOKEN_COOKIE: credential.refresh_token,
            EXPIRES_AT_COOKIE: str(credential.expires_at) if credential.expires_at else None,
            ISSUED_AT_COOKIE: str(credential.issued_at) if credential.issued_at else None,
        }
        # Only non-empty fields are written; absent ones keep their old cookie.
        for name, value in values.items():
            if value:
                self._cookies[name] = value
                self.pending[name] = value

    def clear(self) -> None:
        for name in TOKEN_COOKIES:
            self._cookies.pop(name, None)
            self.pending[name] = None

    def apply(self, response: Any) -> None:
        """Copy pending writes onto a Starlette/FastAPI response."""
        for name, value in self.pending.items():
            if value is None:
                response.delete_cookie(name, path="/")
            else:
                response.set_cookie(
                    name,
                    value,
                    max_age=COOKIE_MAX_AGE,
                    path="/",
                    httponly=True,
                    samesite="lax",
                )
        self.pending.clear()


def _parse_int(value: str | None) -> int:
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


class RefreshGroup:
    """Single-flight guard: one in-flight refresh per refresh token.

    Concurrent callers presenting the same refresh token await the same
    task instead of issuing duplicate token requests.
    """

    def __init__(self):
        self._inflight: dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(
        self, key: str, factory: Callable[[], Awaitable[TokenPayload | None]]
    ) -> TokenPayload | None:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]


class TokenClient:
    """Calls the upstream token-issuing endpoint."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    async def _request(self, form: dict[str, str]) -> tuple[int, Any]:
        header = self.settings.basic_header
        if header is None:
            raise ConfigurationError("EXTERNAL_AUTH_BASIC")
        return await request_json(
            self.http,
            "POST",
            self.settings.token_url,
            data=form,
            headers={"Authorization": header},
        )

    async def password_grant(self, identifier: str, secret: str) -> TokenPayload:
        """Exchange a login id and password for a token.

        Raises:
            ConfigurationError: If client credentials are not configured.
            UpstreamRejectedError: If the token endpoint refuses the login.
            NetworkFailureError: If the token endpoint cannot be reached.
        """
        status, body = await self._request(
            {"grant_type": PASSWORD_GRANT, "username": identifier, "credentials": secret}
        )
        payload = _token_from_body(body)
        if status >= 500:
            raise upstream_error(status, _message(body) or "Authentication failed", body)
        # A refused login is a 401 whatever 4xx the token endpoint chose.
        if status >= 400:
            raise Upstream4xxError(401, _message(body) or "Authentication failed", body)
        if payload is None:
            raise Upstream4xxError(401, _message(body) or "Authentication failed", body)
        return payload

    async def refresh_grant(self, refresh_token: str) -> TokenPayload | None:
        """Renew a token. Any failure yields None."""
        try:
            status, body = await self._request(
                {"grant_type": REFRESH_GRANT, "refresh_token": refresh_token}
            )
        except CartbridgeError as e:
            logger.warning("Token refresh failed: %s", e)
            return None
        if status >= 400:
            logger.warning("Token refresh rejected with status %s", status)
            return None
        return _token_from_body(body)


def _message(body: Any) -> str | None:
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return None


def _token_from_body(body: Any) -> TokenPayload | None:
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or not data.get("accessToken"):
        return None
    try:
        expires_in = int(data.get("expiresIn") or 0)
    except (TypeError, ValueError):
        expires_in = 0
    refresh = data.get("refreshToken")
    return TokenPayload(
        access_token=str(data["accessToken"]),
        refresh_token=str(refresh) if refresh else None,
        expires_in=expires_in,
    )


class CredentialStore:
    """Supplies a currently-valid bearer token, refreshing it when near expiry.

    One store is bound to one credential identity (a browser session). The
    refresh single-flight guard is shared process-wide.
    """

    def __init__(
        self,
        client: TokenClient,
        backup: CredentialBackup,
        refresh_group: RefreshGroup | None = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.client = client
        self.backup = backup
        self.refresh_group = refresh_group or RefreshGroup()
        self._clock = clock
        self._cache = Credential()

    @property
    def credential(self) -> Credential:
        return self._cache

    def hydrate(self) -> None:
        """Reload cached fields from the durable backup."""
        stored = self.backup.load()
        if stored is None or stored.is_empty:
            self._cache = Credential()
            return
        if stored.access_token:
            self._cache.access_token = stored.access_token
        if stored.refresh_token:
            self._cache.refresh_token = stored.refresh_token
        if stored.expires_at:
            self._cache.expires_at = stored.expires_at
        if stored.issued_at:
            self._cache.issued_at = stored.issued_at

    def apply_token(self, payload: TokenPayload) -> None:
        """Install a newly issued token and persist it."""
        now = self._clock()
        self._cache.access_token = payload.access_token
        if payload.refresh_token:
            self._cache.refresh_token = payload.refresh_token
        if payload.expires_in > 0:
            self._cache.expires_at = now + payload.expires_in * 1000
        else:
            self._cache.expires_at = now + DEFAULT_TTL_MS
        self._cache.issued_at = now
        self.backup.save(self._cache)

    async def _refresh(self) -> bool:
        refresh_token = self._cache.refresh_token
        if not refresh_token:
            return False
        payload = await self.refresh_group.run(
            refresh_token, lambda: self.client.refresh_grant(refresh_token)
        )
        if payload is None:
            return False
        self.apply_token(payload)
        return True

    async def get_access_token(self) -> str | None:
        """Return a valid token, or None if the caller must act as a guest."""
        self.hydrate()
        if self._cache.is_valid(self._clock(), REFRESH_BUFFER_MS):
            return self._cache.access_token
        if await self._refresh():
            return self._cache.access_token
        return None

    async def get_auth_header(self) -> str | None:
        token = await self.get_access_token()
        return f"Bearer {token}" if token else None

    async def state(self) -> Credential:
        """Snapshot after the usual validity check and refresh attempt."""
        token = await self.get_access_token()
        snapshot = Credential.from_dict(self._cache.to_dict())
        snapshot.access_token = token
        return snapshot

    async def login(self, identifier: str, secret: str) -> None:
        """Run the password grant and install the resulting token."""
        payload = await self.client.password_grant(identifier, secret)
        self.apply_token(payload)
        logger.info("Issued credential for %s", identifier)

    def clear(self) -> None:
        """Forget the credential (logout)."""
        self._cache = Credential()
        self.backup.clear()
