"""Configuration models and helpers for Dropfolio."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

DEFAULT_DROPBOX_PLACEHOLDER = "SET_ME"

ENV_OVERRIDES = {
    "DROPBOX_ACCESS_TOKEN": "access_token",
    "DROPBOX_REFRESH_TOKEN": "refresh_token",
    "DROPBOX_APP_KEY": "app_key",
    "DROPBOX_APP_SECRET": "app_secret",
}


@dataclass(frozen=True)
class BootstrapReport:
    """Summary of files/directories created during initialisation."""

    base_created: bool
    state_dir_created: bool
    global_config_created: bool
    global_config_overwritten: bool


class ConfigError(RuntimeError):
    """Raised when configuration files cannot be parsed or are invalid."""


@dataclass(frozen=True)
class ConfigPaths:
    """Resolved filesystem locations used by the application."""

    base_dir: Path
    global_config: Path

    @classmethod
    def default(cls) -> "ConfigPaths":
        """Return default locations under the user's home directory."""

        base = Path.home() / ".dropfolio"
        return cls.from_base_dir(base)

    @classmethod
    def from_base_dir(cls, base_dir: Path) -> "ConfigPaths":
        """Construct paths using ``base_dir`` as root."""

        base_dir = base_dir.expanduser()
        return cls(base_dir=base_dir, global_config=base_dir / "config.yml")

    @property
    def state_dir(self) -> Path:
        """Default directory for durable bucket snapshots."""

        return self.base_dir / "state"


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for retryable provider failures."""

    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=0.5, ge=0.0)
    max_backoff_seconds: float = Field(default=8.0, ge=0.0)

    model_config = ConfigDict(extra="forbid")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1 = first retry)."""

        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** (attempt - 1)))


class DropboxSettings(BaseModel):
    """Dropbox API credentials and endpoints."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    app_key: Optional[str] = None
    app_secret: Optional[str] = None
    api_url: str = Field(default="https://api.dropboxapi.com/2")
    token_url: str = Field(default="https://api.dropbox.com/oauth2/token")
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    token_safety_margin_seconds: int = Field(default=300, ge=0)
    batch_links: bool = Field(default=True)

    model_config = ConfigDict(extra="forbid")

    @staticmethod
    def _configured(value: Optional[str]) -> bool:
        return bool(value) and value != DEFAULT_DROPBOX_PLACEHOLDER

    @property
    def has_static_token(self) -> bool:
        return self._configured(self.access_token)

    @property
    def has_refresh_credentials(self) -> bool:
        return all(self._configured(value) for value in (self.refresh_token, self.app_key, self.app_secret))

    @property
    def is_configured(self) -> bool:
        return self.has_static_token or self.has_refresh_credentials


class BucketSettings(BaseModel):
    """A remote folder cached under a bucket name."""

    folder: str
    recursive: bool = Field(default=True)

    model_config = ConfigDict(extra="forbid")


def _default_buckets() -> Dict[str, BucketSettings]:
    return {
        "baseImages": BucketSettings(folder="/Homepage/large_rectangle_database"),
        "overlayImages": BucketSettings(folder="/Homepage/small_rectangle_database"),
    }


class CacheSettings(BaseModel):
    """Freshness policy for cached buckets."""

    timeout_seconds: int = Field(default=3600, gt=0)
    link_validity_seconds: int = Field(default=4 * 3600, gt=0)
    stale_after_seconds: Optional[int] = Field(default=1800, gt=0)
    snapshot_ttl_seconds: int = Field(default=4 * 3600, gt=0)
    store: Literal["none", "memory", "file"] = Field(default="file")
    diagnostics_error_limit: int = Field(default=50, ge=1)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def check_timeout(self) -> "CacheSettings":
        if self.timeout_seconds >= self.link_validity_seconds:
            raise ValueError("cache timeout must be shorter than the temporary link validity window")
        return self


class PairingSettings(BaseModel):
    """Which buckets are paired and how."""

    mode: Literal["cycle", "recency"] = Field(default="cycle")
    base_bucket: str = Field(default="baseImages")
    overlay_bucket: str = Field(default="overlayImages")
    recency_cap: int = Field(default=10, ge=1)

    model_config = ConfigDict(extra="forbid")


class CorsSettings(BaseModel):
    """Origins allowed to read API responses cross-origin."""

    allowed_origins: List[str] = Field(
        default_factory=lambda: [
            "https://luccas-portfolio.com",
            "http://localhost:3000",
            "http://localhost:3001",
            "http://localhost:5173",
        ]
    )
    allowed_suffixes: List[str] = Field(default_factory=lambda: [".luccas-portfolio.com", ".pages.dev"])

    model_config = ConfigDict(extra="forbid")


class ScheduleSettings(BaseModel):
    """Periodic cache warm independent of request traffic."""

    interval: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class RuntimeSettings(BaseModel):
    """Runtime-level defaults."""

    timezone: str = Field(default="UTC")
    storage_dir: Path = Field(default_factory=lambda: ConfigPaths.default().state_dir)
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    default_retry: Optional[RetryPolicy] = None

    model_config = ConfigDict(extra="forbid")


class GlobalConfig(BaseModel):
    """Top-level configuration file model."""

    dropbox: DropboxSettings = Field(default_factory=DropboxSettings)
    buckets: Dict[str, BucketSettings] = Field(default_factory=_default_buckets)
    collections: List[str] = Field(default_factory=list)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    pairing: PairingSettings = Field(default_factory=PairingSettings)
    cors: CorsSettings = Field(default_factory=CorsSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def check_bucket_references(self) -> "GlobalConfig":
        referenced = [self.pairing.base_bucket, self.pairing.overlay_bucket, *self.collections]
        missing = sorted({name for name in referenced if name not in self.buckets})
        if missing:
            raise ValueError(f"Unknown bucket(s) referenced: {', '.join(missing)}")
        return self

    @property
    def retry_policy(self) -> RetryPolicy:
        """Return the configured retry policy with defaults applied."""

        if self.runtime.default_retry is not None:
            return self.runtime.default_retry
        return RetryPolicy()

    @property
    def pair_buckets(self) -> List[str]:
        return [self.pairing.base_bucket, self.pairing.overlay_bucket]


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:  # pragma: no cover - depends on invalid input
        raise ConfigError(f"Failed to parse YAML file: {path}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Expected mapping at top level of {path}")
    return data


def apply_env_overrides(payload: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Overlay Dropbox secrets from the environment onto a raw config mapping."""

    environ = os.environ if environ is None else environ
    dropbox = dict(payload.get("dropbox") or {})
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            dropbox[key] = value
    merged = dict(payload)
    merged["dropbox"] = dropbox
    return merged


def parse_global_config(payload: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> GlobalConfig:
    """Validate a raw mapping (after env overrides) into ``GlobalConfig``."""

    try:
        return GlobalConfig.model_validate(apply_env_overrides(payload, environ))
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_global_config(path: Path, environ: Optional[Dict[str, str]] = None) -> GlobalConfig:
    """Load and validate the global configuration file.

    A missing file is not fatal: defaults plus environment variables are used,
    which matches how the service is deployed with secrets only in the env.
    """

    payload = _read_yaml(path) if path.exists() else {}
    return parse_global_config(payload, environ)


def _default_global_config(paths: ConfigPaths) -> Dict[str, Any]:
    """Dictionary representing the starter global configuration."""

    return {
        "dropbox": {
            "access_token": DEFAULT_DROPBOX_PLACEHOLDER,
            "refresh_token": None,
            "app_key": None,
            "app_secret": None,
            "timeout_seconds": 30,
        },
        "buckets": {
            "baseImages": {"folder": "/Homepage/large_rectangle_database", "recursive": True},
            "overlayImages": {"folder": "/Homepage/small_rectangle_database", "recursive": True},
        },
        "collections": [],
        "cache": {
            "timeout_seconds": 3600,
            "stale_after_seconds": 1800,
            "snapshot_ttl_seconds": 14400,
            "store": "file",
        },
        "pairing": {"mode": "cycle"},
        "schedule": {"interval": "30m"},
        "runtime": {
            "timezone": "UTC",
            "storage_dir": str(paths.state_dir),
            "log_level": "INFO",
            "default_retry": {"attempts": 3, "backoff_seconds": 0.5},
        },
    }


def _write_yaml(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)


def bootstrap(paths: ConfigPaths, overwrite: bool = False) -> BootstrapReport:
    """Create the config dir, the snapshot ``state`` dir and a starter ``config.yml``.

    The starter file points the two buckets at the homepage rectangle folders,
    uses the file snapshot store under ``state`` and holds a placeholder token
    for the ``DROPBOX_*`` environment variables to override. An existing
    ``config.yml`` is only replaced when ``overwrite`` is set.
    """

    base_created = False
    state_dir_created = False
    global_config_created = False
    global_config_overwritten = False

    if not paths.base_dir.exists():
        paths.base_dir.mkdir(parents=True, exist_ok=True)
        base_created = True

    if not paths.state_dir.exists():
        paths.state_dir.mkdir(parents=True, exist_ok=True)
        state_dir_created = True

    existing_global = paths.global_config.exists()
    if not existing_global or overwrite:
        _write_yaml(paths.global_config, _default_global_config(paths))
        global_config_created = True
        global_config_overwritten = existing_global and overwrite

    return BootstrapReport(
        base_created=base_created,
        state_dir_created=state_dir_created,
        global_config_created=global_config_created,
        global_config_overwritten=global_config_overwritten,
    )
