"""Strava API v3 adapter.

Describes Strava's REST surface for the gateway and maps its JSON into the
canonical records via RecordTransformer.

API base: https://www.strava.com/api/v3

Endpoints used:
    /athlete/activities          — Paginated activity summaries (page, per_page, after, before)
    /activities/{id}             — Detailed activity (full polyline, description, calories)
    /activities/{id}/photos      — Photo descriptors with per-size URLs (size hint)
    /oauth/token                 — Authorization-code and refresh-token grants

Rate limits are reported on every response:
    X-RateLimit-Limit: "100,1000"   (15-minute, daily)
    X-RateLimit-Usage: "101,340"
The 15-minute window resets on natural quarter hours, the daily one at
midnight UTC.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Mapping

from src.ingestion.base import (
    ActivityRecord,
    PhotoRecord,
    ProviderAdapter,
    _parse_iso_datetime,
    _safe_int,
)
from src.ingestion.errors import InvariantViolation
from src.ingestion.transformer import RecordTransformer, TimezoneLookup, timestamp_of

logger = logging.getLogger("waypoint.ingestion.strava")

_STRAVA_API_BASE = "https://www.strava.com/api/v3"
_STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
_STRAVA_AUTH_URL = "https://www.strava.com/oauth/authorize"


class StravaAdapter(ProviderAdapter):
    """Strava activity + photo adapter.

    Strava uses plain OAuth2 (no PKCE) and returns an absolute
    ``expires_at`` from its token endpoint.
    """

    SOURCE_ID = "strava"
    DISPLAY_NAME = "Strava"

    API_BASE = _STRAVA_API_BASE
    TOKEN_URL = _STRAVA_TOKEN_URL
    AUTHORIZE_URL = _STRAVA_AUTH_URL
    DEFAULT_SCOPE = "read,activity:read_all"

    def __init__(
        self,
        transformer: RecordTransformer | None = None,
        timezone_lookup: TimezoneLookup | None = None,
    ) -> None:
        """Initialize the Strava adapter.

        Args:
            transformer:     Pre-built transformer (takes precedence).
            timezone_lookup: Resolver used when building a default transformer.
        """
        self._transformer = transformer or RecordTransformer(
            timezone_lookup=timezone_lookup,
            activity_url_template="https://www.strava.com/activities/{id}",
        )

    @property
    def transformer(self) -> RecordTransformer:
        return self._transformer

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def list_endpoint(self) -> str:
        return "/athlete/activities"

    def list_params(
        self,
        page: int,
        per_page: int,
        after: int | None = None,
        before: int | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"page": page, "per_page": per_page}
        if after is not None:
            params["after"] = after
        if before is not None:
            params["before"] = before
        return params

    def detail_endpoint(self, activity_id: str) -> str:
        return f"/activities/{activity_id}"

    def photos_endpoint(self, activity_id: str) -> str:
        return f"/activities/{activity_id}/photos"

    # ------------------------------------------------------------------
    # Record accessors
    # ------------------------------------------------------------------

    def native_id(self, native: Mapping[str, Any]) -> str:
        value = native.get("id")
        if value is None:
            raise InvariantViolation("Strava record has no id")
        return str(value)

    def record_timestamp(self, native: Mapping[str, Any]) -> int | None:
        return timestamp_of(
            _parse_iso_datetime(native.get("start_date") or native.get("start_date_local"))
        )

    def transform(self, native: Mapping[str, Any], user_id: int) -> ActivityRecord:
        return self._transformer.transform(native, user_id)

    def transform_photo(
        self, native: Mapping[str, Any], activity_internal_id: int
    ) -> PhotoRecord:
        return self._transformer.transform_photo(native, activity_internal_id)

    # ------------------------------------------------------------------
    # Rate-limit headers
    # ------------------------------------------------------------------

    def parse_rate_limit(
        self, headers: Mapping[str, str], now: datetime
    ) -> tuple[str, datetime] | None:
        """Work out which Strava window a 429 refers to and when it resets."""
        limits = _split_pair(headers.get("X-RateLimit-Limit"))
        usage = _split_pair(headers.get("X-RateLimit-Usage"))
        if limits and usage:
            short_limit, daily_limit = limits
            short_used, daily_used = usage
            if daily_limit is not None and daily_used is not None and daily_used >= daily_limit:
                return "daily", _next_utc_midnight(now)
            if short_limit is not None and short_used is not None and short_used >= short_limit:
                return "15min", _next_quarter_hour(now)
        return super().parse_rate_limit(headers, now)


def _split_pair(value: str | None) -> tuple[int | None, int | None] | None:
    if not value:
        return None
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 2:
        logger.debug("Unexpected Strava rate-limit header: %r", value)
        return None
    return _safe_int(parts[0]), _safe_int(parts[1])


def _next_quarter_hour(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    floored = now.replace(minute=(now.minute // 15) * 15, second=0, microsecond=0)
    return floored + timedelta(minutes=15)


def _next_utc_midnight(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=timezone.utc)
