"""Turn listed file paths into temporary download URLs."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import structlog

from ..errors import UpstreamError, UpstreamLinkError
from ..logging import get_logger
from ..models import LinkFailure, LinkSuccess, ResolvedLink
from .dropbox_client import BATCH_LIMIT, DropboxService


def chunked(items: Sequence[str], size: int) -> Iterable[List[str]]:
    for offset in range(0, len(items), size):
        yield list(items[offset : offset + size])


class LinkResolver:
    """Resolve temporary links in batches, falling back to single calls."""

    def __init__(
        self,
        service: DropboxService,
        *,
        use_batch: bool = True,
        batch_size: int = BATCH_LIMIT,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        if not 1 <= batch_size <= BATCH_LIMIT:
            raise ValueError(f"batch_size must be between 1 and {BATCH_LIMIT}")
        self.service = service
        self.use_batch = use_batch
        self.batch_size = batch_size
        self._logger = logger or get_logger("dropfolio.links")

    async def resolve_links(
        self,
        paths: Sequence[str],
        errors: Optional[List[UpstreamLinkError]] = None,
    ) -> List[ResolvedLink]:
        """Return ``{path, url}`` for every path that could be resolved.

        Never raises for provider failures; failed paths are logged, appended
        to ``errors`` when given, and left out of the result.
        """

        if errors is None:
            errors = []
        resolved: List[ResolvedLink] = []
        if not paths:
            return resolved

        for chunk in chunked(list(paths), self.batch_size):
            if self.use_batch:
                resolved.extend(await self._resolve_batch(chunk, errors))
            else:
                resolved.extend(await self._resolve_individually(chunk, errors))

        self._logger.info("links.resolved", requested=len(paths), resolved=len(resolved))
        return resolved

    async def _resolve_batch(self, chunk: List[str], errors: List[UpstreamLinkError]) -> List[ResolvedLink]:
        try:
            results = await self.service.get_temporary_links_batch(chunk)
        except UpstreamError as exc:
            self._logger.warning("links.batch_failed", size=len(chunk), error=str(exc))
            return await self._resolve_individually(chunk, errors)

        resolved: List[ResolvedLink] = []
        for result in results:
            if isinstance(result, LinkSuccess):
                resolved.append(ResolvedLink(path=result.path, url=result.url))
            elif isinstance(result, LinkFailure):
                self._record(errors, UpstreamLinkError(result.reason, path=result.path))
            else:  # pragma: no cover - batch results only carry the two variants
                raise TypeError(f"Unhandled link result: {type(result).__name__}")
        return resolved

    async def _resolve_individually(
        self, chunk: List[str], errors: List[UpstreamLinkError]
    ) -> List[ResolvedLink]:
        resolved: List[ResolvedLink] = []
        for path in chunk:
            try:
                url = await self.service.get_temporary_link(path)
            except UpstreamError as exc:
                self._record(errors, UpstreamLinkError(str(exc), path=path, status=exc.status))
                continue
            resolved.append(ResolvedLink(path=path, url=url))
        return resolved

    def _record(self, errors: List[UpstreamLinkError], error: UpstreamLinkError) -> None:
        errors.append(error)
        self._logger.error("links.failed", path=error.path, error=error.message)
