"""Enumerate image files under a Dropbox folder."""

from __future__ import annotations

from typing import List, Literal, Optional

import structlog

from ..errors import UpstreamError, UpstreamListError
from ..logging import get_logger
from ..models import DeletedEntry, FileEntry, FolderEntry, FolderListing, ListEntry, ScanError
from .dropbox_client import DropboxService, ListPage

ListingMode = Literal["recursive", "iterative"]


class RemoteLister:
    """List image files, following pagination and tolerating per-folder failures."""

    def __init__(
        self,
        service: DropboxService,
        *,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self.service = service
        self._logger = logger or get_logger("dropfolio.lister")

    async def list_images(self, folder: str, *, mode: ListingMode = "recursive") -> FolderListing:
        """Return every image file under ``folder``.

        ``recursive`` asks the provider for the whole tree in one paginated
        listing; ``iterative`` walks subfolders with an explicit work stack.
        Raises ``UpstreamListError`` only when nothing was found and the root
        folder itself could not be listed.
        """

        listing = FolderListing(folder=folder)
        root_failed = False

        stack: List[str] = [folder]
        while stack:
            current = stack.pop()
            recursive = mode == "recursive"
            ok = await self._scan(current, recursive, listing, stack)
            if not ok and current == folder:
                root_failed = True

        self._logger.info(
            "lister.scan_complete",
            folder=folder,
            mode=mode,
            images=len(listing.files),
            errors=len(listing.errors),
        )

        if root_failed and not listing.files:
            message = listing.errors[0].message if listing.errors else "listing failed"
            raise UpstreamListError(
                f"Failed to list {folder}: {message}",
                folder=folder,
                errors=listing.errors,
            )
        return listing

    async def _scan(self, path: str, recursive: bool, listing: FolderListing, stack: List[str]) -> bool:
        """List one folder and all of its pages; return ``False`` if the first page failed."""

        try:
            page = await self.service.list_folder(path, recursive=recursive)
        except UpstreamError as exc:
            self._record_error(listing, path, exc)
            return False
        listing.api_calls += 1
        self._collect(page, path, recursive, listing, stack)

        while page.has_more and page.cursor:
            try:
                page = await self.service.list_folder_continue(page.cursor)
            except UpstreamError as exc:
                self._record_error(listing, path, exc)
                break
            listing.api_calls += 1
            self._collect(page, path, recursive, listing, stack)
        return True

    def _collect(
        self,
        page: ListPage,
        path: str,
        recursive: bool,
        listing: FolderListing,
        stack: List[str],
    ) -> None:
        for entry in page.entries:
            self._handle_entry(entry, path, recursive, listing, stack)

    @staticmethod
    def _handle_entry(
        entry: ListEntry,
        path: str,
        recursive: bool,
        listing: FolderListing,
        stack: List[str],
    ) -> None:
        if isinstance(entry, FileEntry):
            _, dot, extension = entry.name.rpartition(".")
            if dot:
                listing.extensions.add(extension.lower())
            if entry.is_image:
                listing.files.append(entry)
        elif isinstance(entry, FolderEntry):
            # A recursive listing already includes descendants.
            if not recursive and entry.path and entry.path.lower() != path.lower():
                stack.append(entry.path)
        elif isinstance(entry, DeletedEntry):
            pass
        else:  # pragma: no cover - parse_entry only yields the variants above
            raise TypeError(f"Unhandled entry type: {type(entry).__name__}")

    def _record_error(self, listing: FolderListing, folder: str, exc: Exception) -> None:
        record = ScanError(folder=folder, message=str(exc))
        listing.errors.append(record)
        self._logger.error("lister.folder_failed", **record.to_dict())
