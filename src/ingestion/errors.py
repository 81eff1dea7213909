"""Exception taxonomy for the provider sync engine.

Recoverable vs. fatal is encoded in the type, so callers never need to
inspect messages:

    RateLimitError        — recoverable; pause and resume after ``retry_after``
    AuthExpiredError      — fatal for the run; the user must reconnect
    DetailFetchError      — per-item; the orchestrator falls back to the summary
    TransientNetworkError — per-item during detailing, fatal while listing
    ProviderRequestError  — non-retryable provider response (4xx)
    InvariantViolation    — programmer-facing, e.g. a malformed token bundle
"""

from __future__ import annotations

from datetime import datetime


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class RateLimitError(SyncError):
    """A quota window is exhausted, either locally or at the provider.

    Attributes:
        window:      Name of the exhausted window (e.g. '15min', 'daily').
        retry_after: UTC datetime after which the run may resume.
    """

    def __init__(self, window: str, retry_after: datetime) -> None:
        super().__init__(f"Rate limit exceeded: {window} window")
        self.window = window
        self.retry_after = retry_after


class AuthExpiredError(SyncError):
    """The provider rejected the credential and a refresh did not help."""


class DetailFetchError(SyncError):
    """Fetching the detail record for one item failed."""

    def __init__(self, activity_id: str, message: str) -> None:
        super().__init__(f"Detail fetch failed for activity {activity_id}: {message}")
        self.activity_id = activity_id


class TransientNetworkError(SyncError):
    """Transport failure or provider 5xx; may succeed on a later run."""


class ProviderRequestError(SyncError):
    """The provider answered with a non-retryable error status."""

    def __init__(self, status_code: int, endpoint: str) -> None:
        super().__init__(f"Provider returned HTTP {status_code} for {endpoint}")
        self.status_code = status_code
        self.endpoint = endpoint


class InvariantViolation(SyncError):
    """Internal contract broken, e.g. a token bundle missing a field."""
