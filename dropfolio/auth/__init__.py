"""Authentication helpers for Dropfolio."""

from .dropbox import Credential, CredentialProvider

__all__ = [
    "Credential",
    "CredentialProvider",
]
