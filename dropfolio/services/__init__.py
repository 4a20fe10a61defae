"""Dropbox-facing services: API client, folder lister and link resolver."""

from .dropbox_client import BATCH_LIMIT, DropboxService, ListPage
from .links import LinkResolver
from .lister import RemoteLister

__all__ = [
    "BATCH_LIMIT",
    "DropboxService",
    "LinkResolver",
    "ListPage",
    "RemoteLister",
]
