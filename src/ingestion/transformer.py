"""Map native provider records into canonical ActivityRecord / PhotoRecord.

The transformer is pure: no I/O, no clock.  Timezone derivation is the
one external dependency, injected as a ``(lat, lon) -> zone | None``
callable so the lookup table stays outside this package.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from src.ingestion import polyline
from src.ingestion.base import (
    ActivityRecord,
    LonLat,
    PhotoRecord,
    _parse_iso_datetime,
    _safe_float,
    _safe_int,
)
from src.ingestion.errors import InvariantViolation

logger = logging.getLogger("waypoint.ingestion.transformer")

TimezoneLookup = Callable[[float, float], "str | None"]

# Provider enum → canonical vocabulary.  Values not listed pass through
# unchanged so new provider types still land in the store.
ACTIVITY_TYPE_MAP: dict[str, str] = {
    "Run": "Running",
    "TrailRun": "Running",
    "Ride": "Cycling",
    "MountainBikeRide": "Cycling",
    "GravelRide": "Cycling",
    "Swim": "Swimming",
    "Walk": "Walking",
    "Hike": "Hiking",
    "AlpineSki": "Skiing",
    "BackcountrySki": "Skiing",
    "NordicSki": "Skiing",
    "Snowboard": "Snowboarding",
    "IceSkate": "Ice Skating",
    "InlineSkate": "Inline Skating",
    "Workout": "Gym",
    "WeightTraining": "Strength",
    "Yoga": "Yoga",
    "Elliptical": "Elliptical",
    "StairStepper": "Stair Stepper",
    "Rowing": "Rowing",
    "RockClimbing": "Rock Climbing",
    "Canoeing": "Canoeing",
    "Kayaking": "Kayaking",
    "Surfing": "Surfing",
    "Snowshoe": "Snowshoeing",
    "Soccer": "Soccer",
    "Golf": "Golf",
    "Tennis": "Tennis",
    "Badminton": "Badminton",
    "Squash": "Squash",
    "Pickleball": "Pickleball",
    "VirtualRide": "Virtual Cycling",
    "VirtualRun": "Virtual Running",
    "EMountainBikeRide": "E-Mountain Biking",
    "EBikeRide": "E-Biking",
    "Velomobile": "Velomobile",
    "Handcycle": "Handcycle",
    "Wheelchair": "Wheelchair",
    "Crossfit": "CrossFit",
    "HighIntensityIntervalTraining": "HIIT",
    "Pilates": "Pilates",
}


def map_activity_type(native_type: str | None) -> str | None:
    """Return the canonical activity type, or the input unchanged if unmapped."""
    if native_type is None:
        return None
    return ACTIVITY_TYPE_MAP.get(native_type, native_type)


def lat_lng_to_point(value: Sequence[Any] | None) -> LonLat | None:
    """Convert a provider ``[lat, lng]`` pair into a (lon, lat) point.

    Anything that is not a two-element numeric sequence yields None; Strava
    sends ``[]`` for indoor activities.
    """
    if not value or len(value) != 2:
        return None
    lat = _safe_float(value[0])
    lon = _safe_float(value[1])
    if lat is None or lon is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        logger.warning("Discarding out-of-range coordinate: lat=%s lon=%s", lat, lon)
        return None
    return (lon, lat)


def decode_track_line(native: Mapping[str, Any]) -> list[LonLat] | None:
    """Decode the best available polyline into an ordered (lon, lat) line.

    The detailed ``map.polyline`` wins over ``map.summary_polyline``.  A
    polyline that fails to decode yields None, never an exception.
    """
    map_info = native.get("map") or {}
    encoded = map_info.get("polyline") or map_info.get("summary_polyline")
    if not encoded:
        return None
    try:
        coords = polyline.decode(encoded)
    except polyline.PolylineDecodeError as exc:
        logger.warning(
            "Unreadable polyline on activity %s: %s", native.get("id"), exc
        )
        return None
    if not coords:
        return None
    return polyline.to_lon_lat(coords)


class RecordTransformer:
    """Turn Strava-shaped activity and photo JSON into canonical records.

    Usage::

        transformer = RecordTransformer(timezone_lookup=tz_finder)
        record = transformer.transform(detail_json, user_id=42)
    """

    def __init__(
        self,
        timezone_lookup: TimezoneLookup | None = None,
        activity_url_template: str = "https://www.strava.com/activities/{id}",
    ) -> None:
        """Initialize the transformer.

        Args:
            timezone_lookup:       Optional ``(lat, lon) -> IANA zone`` resolver.
                                   Without one, every timezone is None.
            activity_url_template: Format string for ``provider_url``.
        """
        self._timezone_lookup = timezone_lookup
        self._activity_url_template = activity_url_template

    def transform(self, native: Mapping[str, Any], user_id: int) -> ActivityRecord:
        """Convert one native activity (summary or detail) into an ActivityRecord.

        Args:
            native:  Provider JSON for the activity.
            user_id: Internal id of the owning user.

        Returns:
            ActivityRecord in canonical form.

        Raises:
            InvariantViolation: If the record has no provider id.
        """
        native_id = native.get("id")
        if native_id is None or native_id == "":
            raise InvariantViolation("Provider activity record has no id")
        activity_id = str(native_id)

        start_point = lat_lng_to_point(native.get("start_latlng"))
        end_point = lat_lng_to_point(native.get("end_latlng"))

        return ActivityRecord(
            user_id=user_id,
            provider_activity_id=activity_id,
            activity_type=map_activity_type(native.get("type") or native.get("sport_type")),
            name=native.get("name"),
            description=native.get("description"),
            start_time=_parse_iso_datetime(
                native.get("start_date") or native.get("start_date_local")
            ),
            timezone=self._resolve_timezone(start_point),
            start_point=start_point,
            end_point=end_point,
            duration_seconds=_safe_int(native.get("elapsed_time")),
            moving_time_seconds=_safe_int(native.get("moving_time")),
            distance_meters=_safe_float(native.get("distance")),
            elevation_gain=_safe_float(native.get("total_elevation_gain")),
            calories=_safe_float(native.get("calories")),
            avg_speed=_safe_float(native.get("average_speed")),
            max_speed=_safe_float(native.get("max_speed")),
            avg_heart_rate=_safe_float(native.get("average_heartrate")),
            max_heart_rate=_safe_float(native.get("max_heartrate")),
            avg_cadence=_safe_float(native.get("average_cadence")),
            avg_watts=_safe_float(native.get("average_watts")),
            track_line=decode_track_line(native),
            kudos_count=_safe_int(native.get("kudos_count")) or 0,
            comment_count=_safe_int(native.get("comment_count")) or 0,
            photo_count=_safe_int(native.get("total_photo_count")) or 0,
            achievement_count=_safe_int(native.get("achievement_count")) or 0,
            is_private=bool(native.get("private", False)),
            provider_url=self._activity_url_template.format(id=activity_id),
        )

    def transform_photo(
        self, native: Mapping[str, Any], activity_internal_id: int
    ) -> PhotoRecord:
        """Convert one native photo descriptor into a PhotoRecord.

        ``unique_id`` is the globally unique identifier; the numeric ``id``
        is only used when it is missing.

        Raises:
            InvariantViolation: If neither identifier is present.
        """
        photo_id = native.get("unique_id") or native.get("id")
        if not photo_id:
            raise InvariantViolation("Provider photo record has no id")

        urls = native.get("urls") or {}
        mid = urls.get("600")
        small = urls.get("300")
        full = mid or urls.get("0") or next(iter(urls.values()), None)

        created_at = native.get("created_at")
        return PhotoRecord(
            activity_internal_id=activity_internal_id,
            provider_photo_id=str(photo_id),
            url_full=full,
            url_mid=mid,
            url_small=small,
            caption=native.get("caption") or None,
            point=lat_lng_to_point(native.get("location")),
            created_at=_parse_iso_datetime(created_at) if isinstance(created_at, str) else None,
        )

    def _resolve_timezone(self, start_point: LonLat | None) -> str | None:
        if start_point is None or self._timezone_lookup is None:
            return None
        lon, lat = start_point
        try:
            return self._timezone_lookup(lat, lon) or None
        except (ValueError, LookupError) as exc:
            logger.warning("Timezone lookup failed for (%s, %s): %s", lat, lon, exc)
            return None


def timestamp_of(start: datetime | None) -> int | None:
    """Unix seconds of an aware datetime, or None."""
    if start is None:
        return None
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return int(start.timestamp())
