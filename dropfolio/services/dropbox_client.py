"""Thin async wrapper around the Dropbox HTTP API."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from ..auth import CredentialProvider
from ..config import DropboxSettings, RetryPolicy
from ..errors import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamRateLimitError,
    UpstreamTimeoutError,
)
from ..logging import get_logger
from ..models import LinkFailure, LinkResult, LinkSuccess, ListEntry, parse_entry

LIST_FOLDER = "files/list_folder"
LIST_FOLDER_CONTINUE = "files/list_folder/continue"
GET_TEMPORARY_LINK = "files/get_temporary_link"
GET_TEMPORARY_LINK_BATCH = "files/get_temporary_link_batch"
CURRENT_ACCOUNT = "users/get_current_account"

BATCH_LIMIT = 25


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def _error_summary(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and payload.get("error_summary"):
        return str(payload["error_summary"])
    return response.text[:200]


@dataclass
class ListPage:
    """One page of ``list_folder`` output."""

    entries: List[ListEntry] = field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ListPage":
        entries = []
        for raw in payload.get("entries", []):
            entry = parse_entry(raw)
            if entry is not None:
                entries.append(entry)
        return cls(
            entries=entries,
            cursor=payload.get("cursor"),
            has_more=bool(payload.get("has_more")),
        )


class DropboxService:
    """High-level Dropbox helpers with token refresh and bounded retries."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        credentials: CredentialProvider,
        settings: DropboxSettings,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self._http = http
        self.credentials = credentials
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._logger = logger or get_logger("dropfolio.dropbox")
        self.api_calls = 0

    async def call(self, endpoint: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST ``body`` to ``endpoint`` and return the decoded JSON response.

        Retryable failures (timeouts, 429, 5xx, transport errors) are retried
        with exponential backoff up to ``retry_policy.attempts`` times.
        """

        attempt = 0
        # One forced token refresh per call, shared across retry attempts.
        refresh_state = {"refreshed": False}
        while True:
            attempt += 1
            try:
                return await self._call_authorized(endpoint, body, refresh_state)
            except UpstreamError as exc:
                if not exc.retryable or attempt >= self.retry_policy.attempts:
                    raise
                delay = self.retry_policy.delay_for(attempt)
                if isinstance(exc, UpstreamRateLimitError) and exc.retry_after is not None:
                    delay = exc.retry_after
                self._logger.warning(
                    "dropbox.retry",
                    endpoint=endpoint,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                await self._sleep(delay)

    async def _call_authorized(
        self,
        endpoint: str,
        body: Optional[Dict[str, Any]],
        refresh_state: Dict[str, bool],
    ) -> Dict[str, Any]:
        token = await self.credentials.get_valid_token()
        response = await self._post(endpoint, body, token)
        if response.status_code == 401:
            if not self.credentials.can_refresh:
                raise UpstreamAuthError(f"Dropbox rejected the configured token ({endpoint})")
            if refresh_state["refreshed"]:
                raise UpstreamAuthError(f"Dropbox rejected the refreshed token ({endpoint})")
            self._logger.info("dropbox.unauthorized_refreshing", endpoint=endpoint)
            refresh_state["refreshed"] = True
            token = await self.credentials.force_refresh(rejected_token=token)
            response = await self._post(endpoint, body, token)
            if response.status_code == 401:
                raise UpstreamAuthError(f"Dropbox rejected the refreshed token ({endpoint})")
        return self._decode(endpoint, response)

    async def _post(self, endpoint: str, body: Optional[Dict[str, Any]], token: str) -> httpx.Response:
        url = f"{self.settings.api_url.rstrip('/')}/{endpoint}"
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        self.api_calls += 1
        try:
            if body is None:
                # Parameterless endpoints expect a literal JSON null body.
                return await self._http.post(
                    url, headers=headers, content=b"null", timeout=self.settings.timeout_seconds
                )
            return await self._http.post(url, headers=headers, json=body, timeout=self.settings.timeout_seconds)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"Dropbox call timed out: {endpoint}", endpoint=endpoint) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"Dropbox call failed: {endpoint}: {exc}", endpoint=endpoint, retryable=True
            ) from exc

    @staticmethod
    def _decode(endpoint: str, response: httpx.Response) -> Dict[str, Any]:
        status = response.status_code
        if status == 429:
            raise UpstreamRateLimitError(
                f"Dropbox rate limit hit: {endpoint}",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                endpoint=endpoint,
            )
        if status >= 500:
            raise UpstreamError(
                f"Dropbox API error: {status} - {_error_summary(response)}",
                endpoint=endpoint,
                status=status,
                retryable=True,
            )
        if status >= 400:
            raise UpstreamError(
                f"Dropbox API error: {status} - {_error_summary(response)}",
                endpoint=endpoint,
                status=status,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(f"Dropbox returned invalid JSON: {endpoint}", endpoint=endpoint) from exc
        return payload if isinstance(payload, dict) else {"result": payload}

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    async def list_folder(self, path: str, *, recursive: bool = False) -> ListPage:
        payload = await self.call(
            LIST_FOLDER,
            {
                "path": "" if path in {"", "/"} else path,
                "recursive": recursive,
                "include_deleted": False,
                "include_has_explicit_shared_members": False,
                "include_mounted_folders": True,
            },
        )
        return ListPage.from_payload(payload)

    async def list_folder_continue(self, cursor: str) -> ListPage:
        payload = await self.call(LIST_FOLDER_CONTINUE, {"cursor": cursor})
        return ListPage.from_payload(payload)

    # ------------------------------------------------------------------
    # Temporary links
    # ------------------------------------------------------------------
    async def get_temporary_link(self, path: str) -> str:
        payload = await self.call(GET_TEMPORARY_LINK, {"path": path})
        link = payload.get("link")
        if not link:
            raise UpstreamError(f"No temporary link returned for {path}", endpoint=GET_TEMPORARY_LINK)
        return str(link)

    async def get_temporary_links_batch(self, paths: List[str]) -> List[LinkResult]:
        """Resolve up to ``BATCH_LIMIT`` paths in one call.

        Result entries are returned in request order and tagged
        ``success``/``failure``.
        """

        if len(paths) > BATCH_LIMIT:
            raise ValueError(f"At most {BATCH_LIMIT} paths per batch call")
        payload = await self.call(GET_TEMPORARY_LINK_BATCH, {"entries": [{"path": path} for path in paths]})
        raw_entries = payload.get("entries")
        if not isinstance(raw_entries, list) or len(raw_entries) != len(paths):
            raise UpstreamError("Malformed batch link response", endpoint=GET_TEMPORARY_LINK_BATCH)

        results: List[LinkResult] = []
        for path, raw in zip(paths, raw_entries):
            tag = raw.get(".tag") if isinstance(raw, dict) else None
            if tag == "success" and raw.get("link"):
                results.append(LinkSuccess(path=path, url=str(raw["link"])))
            elif tag == "failure":
                results.append(LinkFailure(path=path, reason=str(raw.get("failure") or "unknown")))
            else:
                results.append(LinkFailure(path=path, reason=f"unexpected entry tag: {tag}"))
        return results

    async def current_account(self) -> Dict[str, Any]:
        return await self.call(CURRENT_ACCOUNT)
