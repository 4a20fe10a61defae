"""Dropbox bearer-token provider with refresh-grant support."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
import structlog

from ..config import DropboxSettings
from ..errors import CredentialError, UpstreamAuthError, UpstreamTimeoutError
from ..logging import get_logger


@dataclass(frozen=True)
class Credential:
    """Access token plus absolute expiry (epoch seconds).

    ``expires_at`` is ``None`` for a configured token whose lifetime is not
    known; it is trusted until the provider rejects it.
    """

    access_token: str
    expires_at: Optional[float] = None

    def is_valid(self, now: float, safety_margin: float) -> bool:
        if self.expires_at is None:
            return True
        return now < self.expires_at - safety_margin


class CredentialProvider:
    """Supplies a valid bearer token, refreshing it when it is about to expire."""

    def __init__(
        self,
        settings: DropboxSettings,
        http: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.time,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self.settings = settings
        self._http = http
        self._clock = clock
        self._logger = logger or get_logger("dropfolio.auth")
        self._lock = asyncio.Lock()
        self.refresh_count = 0
        self._credential: Optional[Credential] = None
        if settings.has_static_token:
            self._credential = Credential(access_token=settings.access_token)

    @property
    def can_refresh(self) -> bool:
        return self.settings.has_refresh_credentials

    @property
    def is_static(self) -> bool:
        return self.settings.has_static_token and not self.can_refresh

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def seed(self, credential: Credential) -> None:
        """Install a previously obtained credential (e.g. restored from storage)."""

        self._credential = credential

    async def get_valid_token(self) -> str:
        """Return a token that is valid for at least the safety margin."""

        if self.is_static:
            return self.settings.access_token

        current = self._credential
        margin = self.settings.token_safety_margin_seconds
        if current is not None and current.is_valid(self._clock(), margin):
            return current.access_token

        async with self._lock:
            current = self._credential
            if current is not None and current.is_valid(self._clock(), margin):
                return current.access_token
            return await self._refresh()

    async def force_refresh(self, rejected_token: Optional[str] = None) -> str:
        """Replace the current token after the provider rejected it.

        Concurrent callers that saw the same rejected token share one exchange.
        """

        async with self._lock:
            current = self._credential
            if (
                rejected_token is not None
                and current is not None
                and current.access_token != rejected_token
            ):
                return current.access_token
            return await self._refresh()

    async def _refresh(self) -> str:
        if not self.can_refresh:
            raise CredentialError(
                "Dropbox refresh credentials are not configured. "
                "Set DROPBOX_REFRESH_TOKEN, DROPBOX_APP_KEY and DROPBOX_APP_SECRET."
            )

        self._logger.info("auth.refresh.start")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.settings.refresh_token,
            "client_id": self.settings.app_key,
            "client_secret": self.settings.app_secret,
        }
        try:
            response = await self._http.post(
                self.settings.token_url,
                data=data,
                timeout=self.settings.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            self._logger.error("auth.refresh.timeout")
            raise UpstreamTimeoutError("Token refresh timed out", endpoint="oauth2/token") from exc
        except httpx.HTTPError as exc:
            self._logger.error("auth.refresh.network_error", error=str(exc))
            raise UpstreamAuthError(f"Token refresh failed: {exc}") from exc

        self.refresh_count += 1
        if response.status_code != 200:
            self._logger.error("auth.refresh.rejected", status=response.status_code, body=response.text[:200])
            raise UpstreamAuthError(f"Token refresh rejected: {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamAuthError("Token refresh returned invalid JSON") from exc

        access_token = payload.get("access_token")
        if not access_token:
            raise UpstreamAuthError("Token refresh response did not include access_token")

        expires_in = payload.get("expires_in")
        expires_at = self._clock() + float(expires_in) if expires_in is not None else None
        self._credential = Credential(access_token=access_token, expires_at=expires_at)
        self._logger.info("auth.refresh.completed", expires_in=expires_in)
        return access_token
