"""Error taxonomy shared by the provider client, cache and web layer."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DropfolioError(RuntimeError):
    """Base class for errors that surface through the HTTP layer.

    ``code`` is the stable machine-readable value returned in the JSON
    ``error`` field; ``status_code`` is the HTTP status the router uses.
    """

    code = "internal_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.code, "details": self.message}


class CredentialError(DropfolioError):
    """Raised when storage credentials are missing or unusable."""

    code = "credential_error"


class UpstreamAuthError(DropfolioError):
    """Raised when the provider rejects the token even after one refresh."""

    code = "upstream_auth_error"


class UpstreamError(DropfolioError):
    """Raised when a provider call fails."""

    code = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        endpoint: Optional[str] = None,
        status: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status
        if retryable is not None:
            self.retryable = retryable


class UpstreamTimeoutError(UpstreamError):
    """Raised when a provider call exceeds its timeout."""

    code = "upstream_timeout"
    retryable = True


class UpstreamRateLimitError(UpstreamError):
    """Raised when the provider responds with a 429 rate limit."""

    code = "upstream_rate_limited"
    retryable = True

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any) -> None:
        super().__init__(message, status=429, **kwargs)
        self.retry_after = retry_after


class UpstreamListError(UpstreamError):
    """Raised when a folder listing failed without producing any image."""

    code = "upstream_list_error"

    def __init__(self, message: str, *, folder: str, errors: Optional[List[Any]] = None) -> None:
        super().__init__(message)
        self.folder = folder
        self.errors = list(errors or [])


class UpstreamLinkError(UpstreamError):
    """Raised when a temporary link could not be issued for a path."""

    code = "upstream_link_error"

    def __init__(self, message: str, *, path: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.path = path


class EmptyBucketError(DropfolioError):
    """Raised when a bucket has no assets to select from."""

    code = "empty_bucket"
    status_code = 404

    def __init__(self, message: str, *, counts: Optional[Dict[str, int]] = None) -> None:
        super().__init__(message)
        self.counts = dict(counts or {})


class AggregateFetchError(DropfolioError):
    """Raised when every constituent fetch of a refresh failed."""

    code = "aggregate_fetch_error"

    def __init__(self, message: str, *, failures: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.failures = dict(failures or {})
