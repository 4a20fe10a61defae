"""Durable key/value stores for bucket snapshots."""

from __future__ import annotations

import asyncio
import json
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from cachetools import TLRUCache

STORE_VERSION = 1


class SnapshotStore(Protocol):
    """Simple get/put capability with per-entry TTL."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        ...


class MemorySnapshotStore:
    """Process-local store; useful for tests and single-instance deployments."""

    def __init__(self, maxsize: int = 256, timer: Callable[[], float] = time.time) -> None:
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=self._expiry, timer=timer)

    @staticmethod
    def _expiry(_key: str, value: Tuple[Dict[str, Any], int], now: float) -> float:
        return now + value[1]

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._cache.get(key)
        return None if entry is None else entry[0]

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        self._cache[key] = (value, ttl_seconds)

    def keys(self) -> List[str]:
        return list(self._cache.keys())


def _safe_filename(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", key) + ".json"


class FileSnapshotStore:
    """JSON-file store under ``storage_dir``; one file per key."""

    def __init__(self, storage_dir: Path, clock: Callable[[], float] = time.time) -> None:
        self.storage_dir = Path(storage_dir).expanduser()
        self._clock = clock

    def path_for(self, key: str) -> Path:
        return self.storage_dir / _safe_filename(key)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        await asyncio.to_thread(self._write, key, value, ttl_seconds)

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle) or {}
        except (OSError, ValueError):
            return None
        if not isinstance(payload, dict):
            return None

        expires_at = payload.get("expires_at")
        if expires_at is not None and self._clock() >= float(expires_at):
            try:
                path.unlink()
            except OSError:
                pass
            return None
        value = payload.get("value")
        return value if isinstance(value, dict) else None

    def _write(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        now = self._clock()
        payload = {
            "version": STORE_VERSION,
            "key": key,
            "updated_at": now,
            "expires_at": now + ttl_seconds,
            "value": value,
        }
        tmp_path = path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        tmp_path.replace(path)

    def keys(self) -> List[str]:
        if not self.storage_dir.exists():
            return []
        keys = []
        for path in sorted(self.storage_dir.glob("*.json")):
            try:
                with path.open("r", encoding="utf-8") as handle:
                    payload = json.load(handle) or {}
            except (OSError, ValueError):
                continue
            if payload.get("key"):
                keys.append(str(payload["key"]))
        return keys


def build_store(kind: str, storage_dir: Path) -> Optional[SnapshotStore]:
    """Return the store configured by ``cache.store``."""

    if kind == "none":
        return None
    if kind == "memory":
        return MemorySnapshotStore()
    if kind == "file":
        return FileSnapshotStore(storage_dir)
    raise ValueError(f"Unknown snapshot store: {kind}")
