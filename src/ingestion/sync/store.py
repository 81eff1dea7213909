"""asyncpg-backed implementations of the sync store contracts.

Tables (PostGIS geography columns hold WKT written via ST_GeogFromText):
    activities          — UNIQUE (user_id, provider_activity_id); photos_synced_at
                           is set once the photo pass has fetched its photos
    activity_photos     — UNIQUE (provider_photo_id)
    provider_credentials — PRIMARY KEY (user_id, provider); encrypted token
                           bundle plus the last successful sync time
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

import asyncpg

from src.ingestion.base import ActivityRecord, PhotoRecord, StoredActivity
from src.ingestion.sync.dedup import build_insert_query
from src.services import db

logger = logging.getLogger("waypoint.ingestion.sync.store")

ACTIVITY_COLUMNS = [
    "user_id",
    "provider",
    "provider_activity_id",
    "activity_type",
    "name",
    "description",
    "start_time",
    "timezone",
    "start_point",
    "end_point",
    "duration_seconds",
    "moving_time_seconds",
    "distance_meters",
    "elevation_gain",
    "calories",
    "avg_speed",
    "max_speed",
    "avg_heart_rate",
    "max_heart_rate",
    "avg_cadence",
    "avg_watts",
    "track_line",
    "kudos_count",
    "comment_count",
    "photo_count",
    "achievement_count",
    "is_private",
    "provider_url",
]

PHOTO_COLUMNS = [
    "activity_id",
    "provider_photo_id",
    "url_full",
    "url_mid",
    "url_small",
    "caption",
    "location",
    "created_at",
]

_INSERT_ACTIVITY_SQL = build_insert_query(
    "activities",
    ACTIVITY_COLUMNS,
    ["user_id", "provider_activity_id"],
    geography_columns=("start_point", "end_point", "track_line"),
)

_INSERT_PHOTO_SQL = build_insert_query(
    "activity_photos",
    PHOTO_COLUMNS,
    ["provider_photo_id"],
    geography_columns=("location",),
)

_STORED_ACTIVITY_COLUMNS = "id, user_id, provider_activity_id, photo_count, start_time"


def _activity_row(record: ActivityRecord, provider: str) -> tuple[Any, ...]:
    return (
        record.user_id,
        provider,
        record.provider_activity_id,
        record.activity_type,
        record.name,
        record.description,
        record.start_time,
        record.timezone,
        record.start_point_wkt,
        record.end_point_wkt,
        record.duration_seconds,
        record.moving_time_seconds,
        record.distance_meters,
        record.elevation_gain,
        record.calories,
        record.avg_speed,
        record.max_speed,
        record.avg_heart_rate,
        record.max_heart_rate,
        record.avg_cadence,
        record.avg_watts,
        record.track_line_wkt,
        record.kudos_count,
        record.comment_count,
        record.photo_count,
        record.achievement_count,
        record.is_private,
        record.provider_url,
    )


def _photo_row(record: PhotoRecord) -> tuple[Any, ...]:
    return (
        record.activity_internal_id,
        record.provider_photo_id,
        record.url_full,
        record.url_mid,
        record.url_small,
        record.caption,
        record.point_wkt,
        record.created_at,
    )


def _stored(row: asyncpg.Record) -> StoredActivity:
    return StoredActivity(
        id=row["id"],
        user_id=row["user_id"],
        provider_activity_id=row["provider_activity_id"],
        photo_count=row["photo_count"] or 0,
        start_time=row["start_time"],
    )


class PostgresActivityStore:
    """Activity and photo persistence for one provider."""

    def __init__(self, provider: str, pool: asyncpg.Pool | None = None) -> None:
        self._provider = provider
        self._pool = pool

    async def insert_activities(self, records: Sequence[ActivityRecord]) -> int:
        """Insert activities in one transaction; returns rows actually written."""
        if not records:
            return 0
        inserted = 0
        async with db.get_connection(self._pool) as conn:
            for record in records:
                row_id = await conn.fetchval(
                    _INSERT_ACTIVITY_SQL, *_activity_row(record, self._provider)
                )
                if row_id is not None:
                    inserted += 1
        logger.debug("Inserted %d/%d %s activities", inserted, len(records), self._provider)
        return inserted

    async def insert_photos(self, records: Sequence[PhotoRecord]) -> int:
        if not records:
            return 0
        inserted = 0
        async with db.get_connection(self._pool) as conn:
            for record in records:
                if await conn.fetchval(_INSERT_PHOTO_SQL, *_photo_row(record)) is not None:
                    inserted += 1
        return inserted

    async def find_by_id(self, activity_id: int) -> StoredActivity | None:
        row = await db.fetchrow(
            f"SELECT {_STORED_ACTIVITY_COLUMNS} FROM activities WHERE id = $1",
            activity_id,
            pool=self._pool,
        )
        return _stored(row) if row else None

    async def find_with_nonzero_photo_count(self, user_id: int) -> list[StoredActivity]:
        """Activities with photos not yet fetched, newest first (the photo pass's visiting order)."""
        rows = await db.fetch(
            f"""
            SELECT {_STORED_ACTIVITY_COLUMNS}
            FROM activities
            WHERE user_id = $1 AND provider = $2 AND photo_count > 0
              AND photos_synced_at IS NULL
            ORDER BY start_time DESC NULLS LAST, id DESC
            """,
            user_id,
            self._provider,
            pool=self._pool,
        )
        return [_stored(r) for r in rows]

    async def mark_photos_synced(self, activity_id: int, at: datetime) -> None:
        await db.execute(
            "UPDATE activities SET photos_synced_at = $2 WHERE id = $1",
            activity_id,
            at,
            pool=self._pool,
        )

    async def update_last_sync_timestamp(self, user_id: int, at: datetime) -> None:
        await db.execute(
            """
            UPDATE provider_credentials
            SET last_sync_at = GREATEST(COALESCE(last_sync_at, $3), $3), updated_at = NOW()
            WHERE user_id = $1 AND provider = $2
            """,
            user_id,
            self._provider,
            at,
            pool=self._pool,
        )


class PostgresCredentialStore:
    """Encrypted credential storage keyed by (user_id, provider)."""

    def __init__(self, provider: str, pool: asyncpg.Pool | None = None) -> None:
        self._provider = provider
        self._pool = pool

    async def get_encrypted_credential(self, user_id: int) -> str | None:
        row = await db.fetchrow(
            "SELECT encrypted_token FROM provider_credentials WHERE user_id = $1 AND provider = $2",
            user_id,
            self._provider,
            pool=self._pool,
        )
        return row["encrypted_token"] if row else None

    async def save_encrypted_credential(self, user_id: int, ciphertext: str) -> None:
        await db.execute(
            """
            INSERT INTO provider_credentials (user_id, provider, encrypted_token)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id, provider)
            DO UPDATE SET encrypted_token = EXCLUDED.encrypted_token, updated_at = NOW()
            """,
            user_id,
            self._provider,
            ciphertext,
            pool=self._pool,
        )
        logger.info("Stored %s credential for user %s", self._provider, user_id)

    async def get_last_sync(self, user_id: int) -> datetime | None:
        row = await db.fetchrow(
            "SELECT last_sync_at FROM provider_credentials WHERE user_id = $1 AND provider = $2",
            user_id,
            self._provider,
            pool=self._pool,
        )
        return row["last_sync_at"] if row else None
