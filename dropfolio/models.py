"""Value types exchanged between the lister, resolver, cache and router."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp"})


def is_image_name(name: str) -> bool:
    """Return ``True`` when ``name`` carries an allowed image extension."""

    _, dot, extension = name.rpartition(".")
    return bool(dot) and extension.lower() in IMAGE_EXTENSIONS


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def timestamp_iso(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class ImageAsset:
    """A listed image with its provider-issued temporary URL."""

    name: str
    path: str
    url: str
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "path": self.path, "url": self.url, "size": self.size}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ImageAsset":
        return cls(
            name=str(payload["name"]),
            path=str(payload["path"]),
            url=str(payload["url"]),
            size=int(payload.get("size") or 0),
        )


# ----------------------------------------------------------------------
# Provider listing entries (``.tag`` discriminated)
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class FileEntry:
    name: str
    path: str
    size: int = 0

    @property
    def is_image(self) -> bool:
        return is_image_name(self.name)


@dataclass(frozen=True)
class FolderEntry:
    name: str
    path: str


@dataclass(frozen=True)
class DeletedEntry:
    name: str
    path: str


ListEntry = Union[FileEntry, FolderEntry, DeletedEntry]


def parse_entry(payload: Dict[str, Any]) -> Optional[ListEntry]:
    """Convert a raw ``list_folder`` entry into its tagged variant.

    Unknown tags return ``None`` so callers can skip them.
    """

    tag = payload.get(".tag")
    name = payload.get("name", "")
    path = payload.get("path_display") or payload.get("path_lower") or ""
    if tag == "file":
        return FileEntry(name=name, path=path, size=int(payload.get("size") or 0))
    if tag == "folder":
        return FolderEntry(name=name, path=path)
    if tag == "deleted":
        return DeletedEntry(name=name, path=path)
    return None


# ----------------------------------------------------------------------
# Batch link results (success/failure discriminated)
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class LinkSuccess:
    path: str
    url: str


@dataclass(frozen=True)
class LinkFailure:
    path: str
    reason: str


LinkResult = Union[LinkSuccess, LinkFailure]


@dataclass(frozen=True)
class ResolvedLink:
    path: str
    url: str


# ----------------------------------------------------------------------
# Listing results
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ScanError:
    """Structured record of a folder or page that could not be listed."""

    folder: str
    message: str
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, str]:
        return {"folder": self.folder, "message": self.message, "timestamp": self.timestamp}


@dataclass
class FolderListing:
    """Image files found under a folder plus the errors met on the way."""

    folder: str
    files: List[FileEntry] = field(default_factory=list)
    errors: List[ScanError] = field(default_factory=list)
    extensions: set = field(default_factory=set)
    api_calls: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.errors)


@dataclass(frozen=True)
class BucketSnapshot:
    """Serialisable copy of a bucket kept in the durable store."""

    bucket: str
    folder: str
    fetched_at: float
    images: tuple

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket": self.bucket,
            "folder": self.folder,
            "fetched_at": self.fetched_at,
            "images": [image.to_dict() for image in self.images],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "BucketSnapshot":
        return cls(
            bucket=str(payload["bucket"]),
            folder=str(payload.get("folder", "")),
            fetched_at=float(payload["fetched_at"]),
            images=tuple(ImageAsset.from_dict(item) for item in payload.get("images", [])),
        )
