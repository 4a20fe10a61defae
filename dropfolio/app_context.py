"""Shared application context for the Dropfolio web app and CLI commands."""

from __future__ import annotations

import asyncio
import os
import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx

from .auth import CredentialProvider
from .cache import AssetCache
from .config import ConfigPaths, GlobalConfig, load_global_config
from .logging import get_logger
from .pairing import PairEngine, Shuffle
from .scheduler import RefreshScheduler
from .services import DropboxService, LinkResolver, RemoteLister
from .store import SnapshotStore, build_store

CONFIG_DIR_ENV = "DROPFOLIO_CONFIG_DIR"

_CONFIGURED_STORE: Any = object()


@dataclass
class AppContext:
    """Container for the configuration and the long-lived service objects."""

    paths: ConfigPaths
    config: GlobalConfig
    http: httpx.AsyncClient
    credentials: CredentialProvider
    service: DropboxService
    lister: RemoteLister
    resolver: LinkResolver
    cache: AssetCache
    engine: PairEngine
    scheduler: Optional[RefreshScheduler] = None

    def source_generations(self) -> tuple:
        """Generations of the paired buckets; a change invalidates the pair queue."""

        base, overlay = self.config.pair_buckets
        return (self.cache.bucket(base).generation, self.cache.bucket(overlay).generation)

    async def aclose(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.shutdown()
        await self.cache.close()
        await self.http.aclose()


def resolve_config_dir(override: Optional[Path] = None) -> Optional[Path]:
    if override:
        return Path(override).expanduser()
    env_value = os.getenv(CONFIG_DIR_ENV)
    if env_value:
        return Path(env_value).expanduser()
    return None


def determine_paths(config_dir: Optional[Path]) -> ConfigPaths:
    """Resolve configuration paths based on optional CLI override."""

    return ConfigPaths.from_base_dir(config_dir) if config_dir else ConfigPaths.default()


def build_context(
    config: GlobalConfig,
    paths: Optional[ConfigPaths] = None,
    *,
    http: Optional[httpx.AsyncClient] = None,
    store: Any = _CONFIGURED_STORE,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
    shuffle: Optional[Shuffle] = None,
) -> AppContext:
    """Wire the service graph for ``config``.

    ``store`` defaults to the one named by ``cache.store``; pass ``None`` to
    disable durable snapshots or an instance to inject one.
    """

    paths = paths or ConfigPaths.default()
    http = http or httpx.AsyncClient(timeout=config.dropbox.timeout_seconds)
    snapshot_store: Optional[SnapshotStore]
    if store is _CONFIGURED_STORE:
        snapshot_store = build_store(config.cache.store, config.runtime.storage_dir)
    else:
        snapshot_store = store

    credentials = CredentialProvider(config.dropbox, http, clock=clock)
    service = DropboxService(http, credentials, config.dropbox, config.retry_policy, sleep=sleep)
    lister = RemoteLister(service)
    resolver = LinkResolver(service, use_batch=config.dropbox.batch_links)
    cache = AssetCache(
        config.buckets,
        lister,
        resolver,
        config.cache,
        store=snapshot_store,
        clock=clock,
    )
    engine = PairEngine(
        config.pairing.mode,
        recency_cap=config.pairing.recency_cap,
        rng=rng,
        shuffle=shuffle,
    )

    scheduler = None
    if config.schedule.interval:
        scheduler = RefreshScheduler(
            cache,
            config.schedule.interval,
            timezone=config.runtime.timezone,
            logger=get_logger("dropfolio.scheduler"),
        )

    return AppContext(
        paths=paths,
        config=config,
        http=http,
        credentials=credentials,
        service=service,
        lister=lister,
        resolver=resolver,
        cache=cache,
        engine=engine,
        scheduler=scheduler,
    )


def load_context(paths: ConfigPaths, **kwargs: Any) -> AppContext:
    """Load the global configuration from disk and build the service graph."""

    config = load_global_config(paths.global_config)
    return build_context(config, paths, **kwargs)
