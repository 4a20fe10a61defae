"""In-process asset cache with freshness policy and durable snapshots."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from .config import BucketSettings, CacheSettings
from .errors import AggregateFetchError, DropfolioError, UpstreamError, UpstreamLinkError
from .logging import get_logger
from .models import BucketSnapshot, FolderListing, ImageAsset, ScanError, timestamp_iso, utcnow_iso
from .services import LinkResolver, RemoteLister
from .store import SnapshotStore


def snapshot_key(bucket: str) -> str:
    return f"bucket:{bucket}"


@dataclass
class BucketState:
    """A named, wholesale-replaceable collection of image assets."""

    name: str
    folder: str
    recursive: bool = True
    assets: Tuple[ImageAsset, ...] = ()
    last_fetch: Optional[float] = None
    generation: int = 0
    source: str = "empty"

    def replace(self, assets: Iterable[ImageAsset], fetched_at: float, *, source: str) -> None:
        self.assets = tuple(assets)
        self.last_fetch = fetched_at
        self.generation += 1
        self.source = source

    def age(self, now: float) -> Optional[float]:
        if self.last_fetch is None:
            return None
        return now - self.last_fetch

    def snapshot(self) -> BucketSnapshot:
        return BucketSnapshot(
            bucket=self.name,
            folder=self.folder,
            fetched_at=self.last_fetch or 0.0,
            images=self.assets,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "folder": self.folder,
            "count": len(self.assets),
            "lastFetch": timestamp_iso(self.last_fetch),
            "generation": self.generation,
            "source": self.source,
        }


@dataclass
class ScanDiagnostics:
    """Rolling record of recent scans, exposed by the debug endpoint."""

    error_limit: int = 50
    last_scan: Optional[str] = None
    api_calls: int = 0
    extensions: set = field(default_factory=set)
    errors: Deque[Dict[str, Any]] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.errors = deque(self.errors, maxlen=self.error_limit)

    def begin(self) -> None:
        self.last_scan = utcnow_iso()

    def record_listing(self, bucket: str, listing: FolderListing) -> None:
        self.api_calls += listing.api_calls
        self.extensions.update(listing.extensions)
        for error in listing.errors:
            self.errors.append({"bucket": bucket, "type": "list_folder", **error.to_dict()})

    def record_link_errors(self, bucket: str, errors: Sequence[UpstreamLinkError]) -> None:
        for error in errors:
            self.errors.append(
                {
                    "bucket": bucket,
                    "type": "temporary_link",
                    "path": error.path,
                    "message": error.message,
                    "timestamp": utcnow_iso(),
                }
            )

    def record_failure(self, bucket: str, folder: str, message: str) -> None:
        self.errors.append({"bucket": bucket, "type": "refresh", **ScanError(folder, message).to_dict()})

    def recent_errors(self, limit: int = 5) -> List[Dict[str, Any]]:
        return list(self.errors)[-limit:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastScan": self.last_scan,
            "totalApiCalls": self.api_calls,
            "uniqueFileExtensions": sorted(self.extensions),
            "totalErrors": len(self.errors),
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class BucketRefresh:
    """Outcome of refreshing one bucket."""

    bucket: str
    images: int
    ok: bool
    errors: int = 0
    kept_previous: bool = False
    message: Optional[str] = None


class AssetCache:
    """Buckets of resolved images, refreshed from Dropbox when they age out."""

    def __init__(
        self,
        buckets: Dict[str, BucketSettings],
        lister: RemoteLister,
        resolver: LinkResolver,
        settings: Optional[CacheSettings] = None,
        *,
        store: Optional[SnapshotStore] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self.settings = settings or CacheSettings()
        self.lister = lister
        self.resolver = resolver
        self.store = store
        self._clock = clock
        self._logger = logger or get_logger("dropfolio.cache")
        self._buckets: Dict[str, BucketState] = {
            name: BucketState(name=name, folder=bucket.folder, recursive=bucket.recursive)
            for name, bucket in buckets.items()
        }
        self._refresh_lock = asyncio.Lock()
        self._background: Dict[Tuple[str, ...], asyncio.Task] = {}
        self.diagnostics = ScanDiagnostics(error_limit=self.settings.diagnostics_error_limit)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def names(self) -> List[str]:
        return list(self._buckets)

    def bucket(self, name: str) -> BucketState:
        try:
            return self._buckets[name]
        except KeyError:
            raise KeyError(f"Unknown bucket: {name}") from None

    def get(self, name: str) -> Tuple[ImageAsset, ...]:
        return self.bucket(name).assets

    def needs_refresh(self, name: str) -> bool:
        state = self.bucket(name)
        if state.last_fetch is None or not state.assets:
            return True
        return self._clock() - state.last_fetch > self.settings.timeout_seconds

    def is_stale(self, name: str) -> bool:
        """``True`` once a bucket is old enough to revalidate in the background."""

        stale_after = self.settings.stale_after_seconds
        age = self.bucket(name).age(self._clock())
        return stale_after is not None and age is not None and age > stale_after

    # ------------------------------------------------------------------
    # Request-time orchestration
    # ------------------------------------------------------------------
    async def ensure_fresh(self, names: Sequence[str], *, force: bool = False) -> bool:
        """Make ``names`` servable; return ``True`` when no live scan was awaited."""

        if force:
            await self.refresh(names)
            return False

        blocking: List[str] = []
        background: List[str] = []
        for name in names:
            if self.needs_refresh(name) and self.store is not None:
                await self.hydrate(name)
            if self.needs_refresh(name):
                blocking.append(name)
            elif self.is_stale(name):
                background.append(name)

        if blocking:
            await self.refresh(blocking, only_if_needed=True)
        if background:
            self.schedule_background_refresh(background)
        return not blocking

    async def hydrate(self, name: str) -> bool:
        """Adopt the durable snapshot for ``name`` when it is newer than memory."""

        if self.store is None:
            return False
        state = self.bucket(name)
        try:
            payload = await self.store.get(snapshot_key(name))
            snapshot = BucketSnapshot.from_dict(payload) if payload else None
        except (OSError, KeyError, TypeError, ValueError) as exc:
            self._logger.warning("cache.snapshot_unreadable", bucket=name, error=str(exc))
            return False
        if snapshot is None:
            return False
        if state.last_fetch is not None and snapshot.fetched_at <= state.last_fetch:
            return False

        state.replace(snapshot.images, snapshot.fetched_at, source="store")
        self._logger.info(
            "cache.hydrated",
            bucket=name,
            images=len(snapshot.images),
            age_seconds=round(self._clock() - snapshot.fetched_at, 1),
        )
        return True

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    async def refresh(
        self,
        names: Optional[Sequence[str]] = None,
        *,
        only_if_needed: bool = False,
        only_if_stale: bool = False,
    ) -> Dict[str, BucketRefresh]:
        """Rescan ``names`` (default: all buckets) and replace their contents.

        Buckets are listed concurrently. A bucket that fails completely keeps
        its previous contents (memory or durable store); when no previous
        contents exist, ``AggregateFetchError`` is raised after the other
        buckets have been applied. Credential failures propagate unchanged.
        """

        targets = list(names) if names is not None else self.names
        for name in targets:
            self.bucket(name)

        async with self._refresh_lock:
            if only_if_needed:
                targets = [name for name in targets if self.needs_refresh(name)]
            elif only_if_stale:
                targets = [name for name in targets if self.needs_refresh(name) or self.is_stale(name)]
            if not targets:
                return {}

            self._logger.info("cache.refresh.start", buckets=targets)
            self.diagnostics.begin()
            outcomes = await asyncio.gather(
                *(self._fetch_bucket(self._buckets[name]) for name in targets),
                return_exceptions=True,
            )

            results: Dict[str, BucketRefresh] = {}
            unrecoverable: Dict[str, str] = {}
            fatal: Optional[BaseException] = None
            for name, outcome in zip(targets, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, UpstreamError):
                        fatal = fatal or outcome
                        continue
                    result = await self._apply_failure(name, str(outcome))
                else:
                    assets, errors = outcome
                    if not assets and errors:
                        result = await self._apply_failure(name, errors[0])
                    else:
                        result = await self._apply_success(name, assets, len(errors))
                results[name] = result
                if not result.ok and not result.kept_previous:
                    unrecoverable[name] = result.message or "fetch failed"

        if fatal is not None:
            if isinstance(fatal, DropfolioError):
                self._logger.error("cache.refresh.aborted", error=str(fatal))
            raise fatal

        self._logger.info(
            "cache.refresh.completed",
            **{name: result.images for name, result in results.items()},
        )
        if unrecoverable:
            raise AggregateFetchError(
                "Failed to fetch images for " + ", ".join(sorted(unrecoverable)),
                failures=unrecoverable,
            )
        return results

    async def _fetch_bucket(self, state: BucketState) -> Tuple[List[ImageAsset], List[str]]:
        mode = "recursive" if state.recursive else "iterative"
        listing = await self.lister.list_images(state.folder, mode=mode)
        self.diagnostics.record_listing(state.name, listing)

        link_errors: List[UpstreamLinkError] = []
        links = await self.resolver.resolve_links([entry.path for entry in listing.files], link_errors)
        self.diagnostics.record_link_errors(state.name, link_errors)

        urls = {link.path: link.url for link in links}
        assets = [
            ImageAsset(name=entry.name, path=entry.path, url=urls[entry.path], size=entry.size)
            for entry in listing.files
            if entry.path in urls
        ]
        errors = [error.message for error in listing.errors] + [error.message for error in link_errors]
        return assets, errors

    async def _apply_success(self, name: str, assets: List[ImageAsset], error_count: int) -> BucketRefresh:
        state = self._buckets[name]
        state.replace(assets, self._clock(), source="live")
        await self._persist(state)
        if error_count:
            self._logger.warning("cache.refresh.partial", bucket=name, images=len(assets), errors=error_count)
        return BucketRefresh(bucket=name, images=len(assets), ok=True, errors=error_count)

    async def _apply_failure(self, name: str, message: str) -> BucketRefresh:
        state = self._buckets[name]
        self.diagnostics.record_failure(name, state.folder, message)
        if not state.assets:
            await self.hydrate(name)
        if state.assets:
            self._logger.warning(
                "cache.refresh.kept_previous",
                bucket=name,
                images=len(state.assets),
                error=message,
            )
            return BucketRefresh(
                bucket=name,
                images=len(state.assets),
                ok=False,
                errors=1,
                kept_previous=True,
                message=message,
            )
        self._logger.error("cache.refresh.failed", bucket=name, error=message)
        return BucketRefresh(bucket=name, images=0, ok=False, errors=1, message=message)

    async def _persist(self, state: BucketState) -> None:
        if self.store is None:
            return
        try:
            await self.store.put(
                snapshot_key(state.name),
                state.snapshot().to_dict(),
                self.settings.snapshot_ttl_seconds,
            )
        except OSError as exc:
            self._logger.error("cache.snapshot_write_failed", bucket=state.name, error=str(exc))

    # ------------------------------------------------------------------
    # Background revalidation
    # ------------------------------------------------------------------
    def schedule_background_refresh(self, names: Sequence[str]) -> asyncio.Task:
        """Start (or join) a non-blocking refresh of ``names``."""

        key = tuple(sorted(set(names)))
        existing = self._background.get(key)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.get_running_loop().create_task(
            self.refresh(list(key), only_if_stale=True),
            name=f"dropfolio-refresh:{','.join(key)}",
        )
        self._background[key] = task
        task.add_done_callback(partial(self._on_background_done, key))
        self._logger.info("cache.background_refresh.scheduled", buckets=list(key))
        return task

    def _on_background_done(self, key: Tuple[str, ...], task: asyncio.Task) -> None:
        if self._background.get(key) is task:
            self._background.pop(key, None)
        if task.cancelled():
            self._logger.info("cache.background_refresh.cancelled", buckets=list(key))
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("cache.background_refresh.failed", buckets=list(key), error=str(exc))
        else:
            self._logger.info("cache.background_refresh.completed", buckets=list(key))

    @property
    def pending_refreshes(self) -> List[asyncio.Task]:
        return [task for task in self._background.values() if not task.done()]

    async def wait_for_background(self) -> None:
        pending = self.pending_refreshes
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        for task in self.pending_refreshes:
            task.cancel()
        await self.wait_for_background()

    def summary(self) -> Dict[str, Any]:
        return {name: state.summary() for name, state in self._buckets.items()}
