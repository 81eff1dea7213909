"""Deduplicated bulk insertion of canonical records.

The store's UNIQUE constraints are the authoritative dedup mechanism; this
module collapses duplicates inside a batch before the store sees them and
reports only the rows the store actually wrote.

Dedup keys:
    - activities: (user_id, provider_activity_id) — UNIQUE constraint
    - activity_photos: (provider_photo_id) — UNIQUE constraint
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol, Sequence

from src.ingestion.base import ActivityRecord, PhotoRecord, StoredActivity

logger = logging.getLogger("waypoint.ingestion.sync.dedup")


class ActivityStore(Protocol):
    """Persistence contract the sync engine writes through.

    ``insert_*`` must skip rows whose natural key already exists and return
    the number of rows actually written.
    """

    async def insert_activities(self, records: Sequence[ActivityRecord]) -> int: ...

    async def insert_photos(self, records: Sequence[PhotoRecord]) -> int: ...

    async def find_by_id(self, activity_id: int) -> StoredActivity | None: ...

    async def find_with_nonzero_photo_count(self, user_id: int) -> list[StoredActivity]:
        """Activities with photos whose photos have not been fetched yet."""
        ...

    async def mark_photos_synced(self, activity_id: int, at: datetime) -> None: ...

    async def update_last_sync_timestamp(self, user_id: int, at: datetime) -> None: ...


def activity_key(user_id: int, provider_activity_id: str) -> str:
    """Dedup key matching the activities UNIQUE constraint."""
    return f"{user_id}:{provider_activity_id}"


def photo_key(provider_photo_id: str) -> str:
    return str(provider_photo_id)


class InMemoryDedupCache:
    """Set of keys already handled within one batch or run.

    Not a replacement for database UNIQUE constraints; it only stops the
    same record being sent to the store twice in one call.

    Usage::

        cache = InMemoryDedupCache()
        if not cache.is_seen(key):
            cache.mark_seen(key)
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)


def build_insert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    geography_columns: Sequence[str] = (),
    returning: str = "id",
) -> str:
    """Build an ``INSERT ... ON CONFLICT DO NOTHING RETURNING`` statement.

    Columns listed in ``geography_columns`` take WKT text and are wrapped in
    ``ST_GeogFromText``.  Counting the returned rows gives the number of
    rows actually inserted.

    Args:
        table:             Target table name.
        columns:           All columns to insert, in parameter order.
        conflict_columns:  Columns that define the UNIQUE constraint.
        geography_columns: Subset of ``columns`` holding WKT geometry.
        returning:         Column to return for each inserted row.

    Returns:
        Parameterized SQL string.
    """
    geo = set(geography_columns)
    placeholders = ", ".join(
        f"ST_GeogFromText(${i + 1}::text)" if col in geo else f"${i + 1}"
        for i, col in enumerate(columns)
    )
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({', '.join(conflict_columns)}) DO NOTHING "
        f"RETURNING {returning}"
    )


class DedupInserter:
    """Write canonical records through an ActivityStore, counting honestly."""

    def __init__(self, store: ActivityStore) -> None:
        self._store = store

    async def bulk_insert(self, records: Sequence[ActivityRecord]) -> int:
        """Insert activities, skipping any whose natural key already exists.

        Returns:
            The number of rows the store reports as written; 0 for an empty
            batch, in which case the store is not called.
        """
        unique = _collapse(records, lambda r: activity_key(*r.natural_key))
        if not unique:
            return 0
        inserted = await self._store.insert_activities(unique)
        logger.debug(
            "Activity batch: %d submitted, %d unique, %d inserted",
            len(records),
            len(unique),
            inserted,
        )
        return inserted

    async def bulk_insert_photos(self, records: Sequence[PhotoRecord]) -> int:
        """Insert photos, skipping any whose provider photo id already exists."""
        unique = _collapse(records, lambda p: photo_key(p.provider_photo_id))
        if not unique:
            return 0
        inserted = await self._store.insert_photos(unique)
        logger.debug("Photo batch: %d unique, %d inserted", len(unique), inserted)
        return inserted


def _collapse(records, key_fn) -> list:
    cache = InMemoryDedupCache()
    unique = []
    for record in records:
        key = key_fn(record)
        if cache.is_seen(key):
            continue
        cache.mark_seen(key)
        unique.append(record)
    return unique
