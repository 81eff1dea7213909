"""Base classes and canonical data models for the Waypoint sync engine.

Every provider adapter must subclass ProviderAdapter and return the canonical
ActivityRecord / PhotoRecord models.  These types are the single source of
truth consumed by the orchestrator, the dedup inserter and the store.

Geometry is always held in longitude-then-latitude order (the WKT
convention).  Providers hand out ``[lat, lng]`` pairs; the swap happens once,
in the transformer, and nowhere else.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

from src.ingestion.errors import InvariantViolation

logger = logging.getLogger("waypoint.ingestion")

#: Ordered (lon, lat) pair.
LonLat = tuple[float, float]


# ---------------------------------------------------------------------------
# OAuth credential
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenBundle:
    """Decrypted OAuth credential for one user + provider.

    Only ever exists inside a single call's memory.  ``repr`` masks the
    tokens so a bundle can never leak through a log line.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    Absolute expiry, unix seconds.
    """

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "accessToken": self.access_token,
                "refreshToken": self.refresh_token,
                "expiresAt": self.expires_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "TokenBundle":
        """Parse the ``{accessToken, refreshToken, expiresAt}`` wire form.

        Raises:
            InvariantViolation: If the JSON is malformed or a field is missing.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise InvariantViolation("Token bundle is not valid JSON") from exc
        if not isinstance(data, dict):
            raise InvariantViolation("Token bundle must be a JSON object")

        access = data.get("accessToken")
        refresh = data.get("refreshToken")
        expires = data.get("expiresAt")
        if not access or not refresh or expires is None:
            raise InvariantViolation(
                "Token bundle requires accessToken, refreshToken and expiresAt"
            )
        try:
            expires_at = int(expires)
        except (TypeError, ValueError) as exc:
            raise InvariantViolation("Token bundle expiresAt must be unix seconds") from exc
        return cls(access_token=access, refresh_token=refresh, expires_at=expires_at)


# ---------------------------------------------------------------------------
# Canonical records
# ---------------------------------------------------------------------------


@dataclass
class ActivityRecord:
    """Canonical activity record.

    Natural key: ``(user_id, provider_activity_id)``.

    Attributes:
        user_id:              Internal user id.
        provider_activity_id: Provider-native id, as a string.
        activity_type:        Canonical activity type ('Running', 'Cycling', ...).
        name:                 Human-readable name from the provider.
        start_time:           UTC start timestamp.
        timezone:             IANA zone derived from the start point, or None.
        start_point:          (lon, lat) of the start, if known.
        end_point:            (lon, lat) of the end, if known.
        track_line:           Ordered (lon, lat) sequence decoded from the polyline.
        kudos_count / comment_count / photo_count / achievement_count:
                              Social counters, always integers.
        provider_url:         Link back to the activity on the provider site.
    """

    user_id: int
    provider_activity_id: str
    activity_type: str | None = None
    name: str | None = None
    description: str | None = None
    start_time: datetime | None = None
    timezone: str | None = None
    start_point: LonLat | None = None
    end_point: LonLat | None = None
    duration_seconds: int | None = None
    moving_time_seconds: int | None = None
    distance_meters: float | None = None
    elevation_gain: float | None = None
    calories: float | None = None
    avg_speed: float | None = None
    max_speed: float | None = None
    avg_heart_rate: float | None = None
    max_heart_rate: float | None = None
    avg_cadence: float | None = None
    avg_watts: float | None = None
    track_line: list[LonLat] | None = None
    kudos_count: int = 0
    comment_count: int = 0
    photo_count: int = 0
    achievement_count: int = 0
    is_private: bool = False
    provider_url: str | None = None

    @property
    def natural_key(self) -> tuple[int, str]:
        return (self.user_id, self.provider_activity_id)

    @property
    def start_point_wkt(self) -> str | None:
        return point_wkt(self.start_point)

    @property
    def end_point_wkt(self) -> str | None:
        return point_wkt(self.end_point)

    @property
    def track_line_wkt(self) -> str | None:
        return linestring_wkt(self.track_line)


@dataclass
class PhotoRecord:
    """Canonical photo attached to a stored activity.

    Natural key: ``provider_photo_id`` (globally unique per provider).
    """

    activity_internal_id: int
    provider_photo_id: str
    url_full: str | None = None
    url_mid: str | None = None
    url_small: str | None = None
    caption: str | None = None
    point: LonLat | None = None
    created_at: datetime | None = None

    @property
    def point_wkt(self) -> str | None:
        return point_wkt(self.point)


@dataclass
class StoredActivity:
    """Minimal view of a persisted activity row, as read back by the photo pass."""

    id: int
    user_id: int
    provider_activity_id: str
    photo_count: int = 0
    start_time: datetime | None = None


def point_wkt(point: LonLat | None) -> str | None:
    """Render a (lon, lat) pair as ``POINT(lon lat)``."""
    if point is None:
        return None
    lon, lat = point
    return f"POINT({lon} {lat})"


def linestring_wkt(line: list[LonLat] | None) -> str | None:
    """Render an ordered (lon, lat) sequence as ``LINESTRING(lon lat, ...)``.

    PostGIS rejects single-vertex linestrings, so fewer than two points
    render as None.
    """
    if not line or len(line) < 2:
        return None
    return "LINESTRING(" + ",".join(f"{lon} {lat}" for lon, lat in line) + ")"


# ---------------------------------------------------------------------------
# Sync run state
# ---------------------------------------------------------------------------


class SyncState(str, Enum):
    LISTING = "listing"
    DETAILING = "detailing"
    INSERTING = "inserting"
    CHECKPOINTED = "checkpointed"
    PAUSED = "paused"
    FAILED = "failed"
    DONE = "done"


class SyncPhase(str, Enum):
    ACTIVITIES = "activities"
    PHOTOS = "photos"


@dataclass(frozen=True)
class SyncCursor:
    """Opaque resume marker persisted by the job queue between runs.

    Attributes:
        before: Oldest durably processed timestamp (unix seconds).  A resumed
                run requests only records strictly older than this.
        phase:  Which pass the marker belongs to.
        after:  Lower bound (unix seconds, exclusive) of the interrupted run;
                None for a full historical run.  A resume keeps this bound
                even if the last-sync marker has moved since.
    """

    before: int
    phase: SyncPhase = SyncPhase.ACTIVITIES
    after: int | None = None

    def to_json(self) -> dict:
        return {"before": self.before, "phase": self.phase.value, "after": self.after}

    @classmethod
    def from_json(cls, data: Mapping[str, Any] | None) -> "SyncCursor | None":
        if not data or data.get("before") is None:
            return None
        try:
            before = int(data["before"])
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed sync cursor: %r", data)
            return None
        try:
            phase = SyncPhase(data.get("phase", SyncPhase.ACTIVITIES.value))
        except ValueError:
            phase = SyncPhase.ACTIVITIES
        try:
            after = int(data["after"]) if data.get("after") is not None else None
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed lower bound in sync cursor: %r", data)
            after = None
        return cls(before=before, phase=phase, after=after)


@dataclass
class SyncProgress:
    """One snapshot in the stream a sync run yields.

    Never persisted directly; the job runner derives the next SyncCursor and
    any credential write-back from it.

    Attributes:
        state:                      Orchestrator state at the time of the snapshot.
        fetched:                    Summaries listed so far.
        detailed:                   Summaries processed through the detail phase.
        inserted:                   Activity rows actually written by this run.
        oldest_processed_timestamp: Oldest timestamp in a batch that was written.
        activities_processed:       Activities visited by the photo pass.
        total_activities:           Activities the photo pass will visit.
        photos_inserted:            Photo rows actually written by this run.
        cursor:                     Resume marker (None once the run is DONE).
        credential:                 Refreshed TokenBundle the caller must persist,
                                    or None if the previous one is still current.
        limit_type:                 Exhausted quota window when PAUSED.
        reset_at:                   When the exhausted window frees up.
    """

    state: SyncState
    fetched: int = 0
    detailed: int = 0
    inserted: int = 0
    oldest_processed_timestamp: int | None = None
    activities_processed: int = 0
    total_activities: int = 0
    photos_inserted: int = 0
    cursor: SyncCursor | None = None
    credential: TokenBundle | None = None
    limit_type: str | None = None
    reset_at: datetime | None = None


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Abstract base class for all activity provider adapters.

    An adapter describes a provider's REST surface (URLs, endpoints,
    parameter names, rate-limit headers) and owns the mapping from its
    native JSON to the canonical records.  It performs no I/O itself;
    the ProviderGateway does.
    """

    #: Unique slug (e.g. 'strava').
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    API_BASE: str = ""
    TOKEN_URL: str = ""
    AUTHORIZE_URL: str = ""
    DEFAULT_SCOPE: str = ""

    @abstractmethod
    def list_endpoint(self) -> str:
        """Return the paginated summary listing path."""

    @abstractmethod
    def list_params(
        self,
        page: int,
        per_page: int,
        after: int | None = None,
        before: int | None = None,
    ) -> dict[str, Any]:
        """Build query params for one listing page."""

    @abstractmethod
    def detail_endpoint(self, activity_id: str) -> str:
        """Return the path of the detail record for one activity."""

    @abstractmethod
    def photos_endpoint(self, activity_id: str) -> str:
        """Return the path listing an activity's photos."""

    @abstractmethod
    def native_id(self, native: Mapping[str, Any]) -> str:
        """Extract the provider-native id of a summary or detail record."""

    @abstractmethod
    def record_timestamp(self, native: Mapping[str, Any]) -> int | None:
        """Return the record's start as unix seconds, or None if absent."""

    @abstractmethod
    def transform(self, native: Mapping[str, Any], user_id: int) -> ActivityRecord:
        """Map a native activity into an ActivityRecord."""

    @abstractmethod
    def transform_photo(
        self, native: Mapping[str, Any], activity_internal_id: int
    ) -> PhotoRecord:
        """Map a native photo descriptor into a PhotoRecord."""

    def photo_params(self, size: int) -> dict[str, Any]:
        """Query params for the photo endpoint.  Override if the provider differs."""
        return {"size": size}

    def parse_rate_limit(
        self, headers: Mapping[str, str], now: datetime
    ) -> tuple[str, datetime] | None:
        """Derive (window, retry_after) from a 429 response's headers.

        Default honours a plain ``Retry-After`` seconds header.  Returns None
        when the headers say nothing useful.
        """
        retry_after = _safe_int(headers.get("Retry-After"))
        if retry_after is None:
            return None
        return "provider", now + timedelta(seconds=retry_after)


# ---------------------------------------------------------------------------
# Shared helpers for all adapters
# ---------------------------------------------------------------------------


def _safe_int(value: object) -> int | None:
    """Safely coerce a value to int, returning None on failure.

    Providers occasionally send integer domains as ``12.0`` or ``"12"``.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _safe_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 datetime string to an aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if the value is None
    or unparseable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
