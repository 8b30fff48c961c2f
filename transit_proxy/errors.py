"""
Error taxonomy for upstream fetches and cached reads.
"""
from typing import Optional


class UpstreamError(Exception):
    """Base class for a failed upstream fetch."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UpstreamTimeout(UpstreamError):
    """An attempt exceeded its timeout."""
    retryable = True


class UpstreamTransportError(UpstreamError):
    """Connection refused, DNS failure, reset, etc."""
    retryable = True


class UpstreamBadStatus(UpstreamError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"upstream returned HTTP {status}", status=status)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status >= 500

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500


class UpstreamInvalidResponse(UpstreamError):
    """Upstream answered 2xx with a body that is not JSON."""


class NoCachedFallbackAvailable(Exception):
    """
    The fetch failed and nothing usable was cached for the key.

    The underlying failure is kept as `cause` (and as __cause__ when raised
    with `from`).
    """

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"No cached data for {key}: {cause}")
        self.key = key
        self.cause = cause

    @property
    def upstream_status(self) -> Optional[int]:
        return getattr(self.cause, "status", None)


class InvalidParameter(ValueError):
    """A request parameter failed validation before any cache/fetch work."""

    def __init__(self, name: str, value, expected: str):
        super().__init__(
            f"Parameter {name} must be {expected}, got {value!r}"
        )
        self.name = name
        self.value = value
