"""Sync orchestrator: list, detail, insert and checkpoint provider activities.

A run is an async generator of ``SyncProgress`` snapshots::

    orchestrator = SyncOrchestrator(adapter, gateway, inserter, store, config)
    async for progress in orchestrator.incremental_sync(user_id, bundle, last_sync_at):
        logger.info("Sync progress: %s", progress.state)

The stream is finite and ends with a DONE or PAUSED snapshot.  Fatal errors
(AuthExpiredError, listing failures, store failures, InvariantViolation)
raise out of the iterator unmodified.

Resumability: summaries are processed newest-first, so after each batch
that wrote rows the cursor moves to the oldest timestamp in that batch.  A
resumed run lists only records strictly older than the cursor.  Anything
newer is already durable, anything older has not been touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Iterator, Mapping, Sequence

from src.ingestion.base import (
    ActivityRecord,
    PhotoRecord,
    ProviderAdapter,
    StoredActivity,
    SyncCursor,
    SyncPhase,
    SyncProgress,
    SyncState,
    TokenBundle,
)
from src.ingestion.config_loader import ProviderSyncConfig
from src.ingestion.errors import (
    DetailFetchError,
    InvariantViolation,
    ProviderRequestError,
    RateLimitError,
    TransientNetworkError,
)
from src.ingestion.gateway import GatewayResult, ProviderGateway
from src.ingestion.sync.dedup import ActivityStore, DedupInserter
from src.ingestion.transformer import timestamp_of

logger = logging.getLogger("waypoint.ingestion.sync.orchestrator")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Run:
    """Mutable bookkeeping for one pass; never leaves the orchestrator."""

    user_id: int
    bundle: TokenBundle
    cursor: SyncCursor | None = None
    after: int | None = None
    fetched: int = 0
    detailed: int = 0
    inserted: int = 0
    oldest_processed_timestamp: int | None = None
    activities_processed: int = 0
    total_activities: int = 0
    photos_inserted: int = 0
    pending_credential: TokenBundle | None = None


class SyncOrchestrator:
    """Drive one provider sync for one user.

    Same-user runs must be serialised by the caller; quota state is per user
    and nothing here coordinates two concurrent runs.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        gateway: ProviderGateway,
        inserter: DedupInserter,
        store: ActivityStore,
        config: ProviderSyncConfig,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            adapter:  Provider description and record mapping.
            gateway:  Quota-gated, authenticated HTTP access.
            inserter: Deduplicating bulk writer.
            store:    Read side for the photo pass and last-sync marker.
            config:   Page size, batch size, safety cap, lookback, photo size.
            clock:    Source of "now" (injectable for tests).
        """
        self._adapter = adapter
        self._gateway = gateway
        self._inserter = inserter
        self._store = store
        self._config = config
        self._clock = clock

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    # ------------------------------------------------------------------
    # Run modes
    # ------------------------------------------------------------------

    async def incremental_sync(
        self,
        user_id: int,
        bundle: TokenBundle,
        last_sync_at: datetime | None = None,
        cursor: SyncCursor | None = None,
    ) -> AsyncIterator[SyncProgress]:
        """Activities since ``lookback`` days before the last sync, then photos.

        The lookback overlaps the previous run on purpose; dedup absorbs the
        repeats and late uploads inside the window are picked up.

        A resumed run keeps the lower bound stored in ``cursor``;
        ``last_sync_at`` has moved on with every checkpoint since.
        """
        if cursor is not None:
            after = cursor.after
            logger.info(
                "Resuming incremental %s sync for user %s (lower bound %s)",
                self._adapter.DISPLAY_NAME,
                user_id,
                after,
            )
        else:
            base = last_sync_at or self._clock()
            after_dt = base - timedelta(days=self._config.incremental_lookback_days)
            after = timestamp_of(after_dt)
            logger.info(
                "Incremental %s sync for user %s from %s",
                self._adapter.DISPLAY_NAME,
                user_id,
                after_dt.isoformat(),
            )
        async for progress in self._composite(user_id, bundle, after, cursor):
            yield progress

    async def full_historical_sync(
        self,
        user_id: int,
        bundle: TokenBundle,
        cursor: SyncCursor | None = None,
    ) -> AsyncIterator[SyncProgress]:
        """Every activity the provider has (no lower bound), then photos."""
        logger.info("Full historical %s sync for user %s", self._adapter.DISPLAY_NAME, user_id)
        async for progress in self._composite(user_id, bundle, None, cursor):
            yield progress

    async def _composite(
        self,
        user_id: int,
        bundle: TokenBundle,
        after: int | None,
        cursor: SyncCursor | None,
    ) -> AsyncIterator[SyncProgress]:
        activities_done: SyncProgress | None = None
        carried: TokenBundle | None = None

        if cursor is None or cursor.phase == SyncPhase.ACTIVITIES:
            async for progress in self.sync_activities(user_id, bundle, after=after, cursor=cursor):
                if progress.credential is not None:
                    bundle = progress.credential
                if progress.state == SyncState.DONE:
                    activities_done = progress
                    carried = progress.credential
                    break
                yield progress
                if progress.state == SyncState.PAUSED:
                    return
            cursor = None

        async for progress in self.sync_photos(user_id, bundle, cursor=cursor):
            if carried is not None and progress.credential is None:
                progress = replace(progress, credential=carried)
            carried = None
            if activities_done is not None:
                progress = replace(
                    progress,
                    fetched=activities_done.fetched,
                    detailed=activities_done.detailed,
                    inserted=activities_done.inserted,
                    oldest_processed_timestamp=activities_done.oldest_processed_timestamp,
                )
            yield progress

    # ------------------------------------------------------------------
    # Activity pass
    # ------------------------------------------------------------------

    async def sync_activities(
        self,
        user_id: int,
        bundle: TokenBundle,
        after: int | None = None,
        cursor: SyncCursor | None = None,
    ) -> AsyncIterator[SyncProgress]:
        """List, detail and insert activities.

        Args:
            user_id: Internal user id.
            bundle:  Current credential.
            after:   Lower bound (unix seconds, exclusive); None for no bound.
                     Ignored when resuming: the cursor carries the bound.
            cursor:  Resume marker from a previous PAUSED run.

        Yields:
            SyncProgress snapshots, ending with DONE or PAUSED.
        """
        before = None
        if cursor is not None:
            before, after = cursor.before, cursor.after
            logger.info("Resuming activity sync for user %s before %d", user_id, before)
        run = _Run(user_id=user_id, bundle=bundle, cursor=cursor, after=after)

        # LISTING
        summaries: list[Mapping[str, Any]] = []
        page = 1
        yield self._snapshot(run, SyncState.LISTING)
        while True:
            decision = self._gateway.governor.check_quota(user_id)
            if not decision.allowed:
                yield self._paused(run, decision.limit_type, decision.reset_at)
                return
            params = self._adapter.list_params(
                page, self._config.page_size, after=after, before=before
            )
            try:
                result = await self._call(
                    run, self._adapter.list_endpoint(), params, endpoint_class="list"
                )
            except RateLimitError as exc:
                yield self._paused(run, exc.window, exc.retry_after)
                return

            items = result.payload
            if items is None:
                items = []
            if not isinstance(items, list):
                raise InvariantViolation(
                    f"{self._adapter.DISPLAY_NAME} listing page {page} was not a list"
                )
            if not items:
                break

            summaries.extend(items)
            if len(summaries) >= self._config.safety_cap:
                logger.warning(
                    "Listing for user %s reached the safety cap of %d records, stopping",
                    user_id,
                    self._config.safety_cap,
                )
                del summaries[self._config.safety_cap:]
                run.fetched = len(summaries)
                break
            run.fetched = len(summaries)
            yield self._snapshot(run, SyncState.LISTING)
            page += 1

        logger.info("Listed %d activities for user %s", run.fetched, user_id)

        # DETAILING / INSERTING, newest first
        ordered = sorted(summaries, key=self._sort_key, reverse=True)
        for batch in _batches(ordered, self._config.detail_batch_size, self._adapter.record_timestamp):
            yield self._snapshot(run, SyncState.DETAILING)

            records: list[ActivityRecord] = []
            timestamps: list[int | None] = []
            paused_by: RateLimitError | None = None
            for summary in batch:
                try:
                    native = await self._fetch_detail(run, summary)
                except RateLimitError as exc:
                    paused_by = exc
                    break
                records.append(self._adapter.transform(native, user_id))
                timestamps.append(self._adapter.record_timestamp(summary))
                run.detailed += 1
                if run.pending_credential is not None:
                    yield self._snapshot(run, SyncState.DETAILING)

            if records:
                next_pending = (
                    self._adapter.record_timestamp(batch[len(records)])
                    if len(records) < len(batch)
                    else None
                )
                yield self._snapshot(run, SyncState.INSERTING)
                if await self._insert_batch(run, records, timestamps, next_pending):
                    yield self._snapshot(run, SyncState.CHECKPOINTED)

            if paused_by is not None:
                yield self._paused(run, paused_by.window, paused_by.retry_after)
                return

        logger.info(
            "Activity sync for user %s done: %d fetched, %d inserted",
            user_id,
            run.fetched,
            run.inserted,
        )
        run.cursor = None
        yield self._snapshot(run, SyncState.DONE)

    async def _fetch_detail(self, run: _Run, summary: Mapping[str, Any]) -> Mapping[str, Any]:
        """Return the detail record, or the summary if the detail is unavailable.

        Only RateLimitError and AuthExpiredError escape.
        """
        activity_id = self._adapter.native_id(summary)
        try:
            result = await self._call(
                run, self._adapter.detail_endpoint(activity_id), endpoint_class="detail"
            )
        except (ProviderRequestError, TransientNetworkError) as exc:
            logger.warning("%s; using summary", DetailFetchError(activity_id, str(exc)))
            return summary
        if not isinstance(result.payload, dict):
            logger.warning(
                "%s; using summary", DetailFetchError(activity_id, "payload is not an object")
            )
            return summary
        return result.payload

    async def _insert_batch(
        self,
        run: _Run,
        records: Sequence[ActivityRecord],
        timestamps: Sequence[int | None],
        next_pending: int | None,
    ) -> bool:
        """Write a batch and checkpoint if it wrote anything.

        ``next_pending`` is the timestamp of the first record in the batch
        that was not processed (partial batches only).  If it shares the
        oldest written timestamp the cursor stays one second above it, so the
        unprocessed record is still listed on resume.
        """
        inserted = await self._inserter.bulk_insert(records)
        run.inserted += inserted
        if inserted <= 0:
            logger.debug("Batch of %d wrote nothing; cursor unchanged", len(records))
            return False

        known = [ts for ts in timestamps if ts is not None]
        if known:
            oldest = min(known)
            before = oldest + 1 if next_pending == oldest else oldest
            run.cursor = SyncCursor(before=before, phase=SyncPhase.ACTIVITIES, after=run.after)
            run.oldest_processed_timestamp = oldest
        elif run.cursor is None:
            # rows written but undatable; resume from now so the bound is kept
            run.cursor = SyncCursor(
                before=int(self._clock().timestamp()) + 1,
                phase=SyncPhase.ACTIVITIES,
                after=run.after,
            )
        await self._store.update_last_sync_timestamp(run.user_id, self._clock())
        logger.info(
            "Checkpoint for user %s: %d inserted this batch, cursor %s",
            run.user_id,
            inserted,
            run.cursor.before if run.cursor else None,
        )
        return True

    # ------------------------------------------------------------------
    # Photo pass
    # ------------------------------------------------------------------

    async def sync_photos(
        self,
        user_id: int,
        bundle: TokenBundle,
        cursor: SyncCursor | None = None,
    ) -> AsyncIterator[SyncProgress]:
        """Fetch photos for every stored activity with photos not yet fetched.

        Activities are visited newest-first, one request each.  A resumed
        run skips activities that started at or after ``cursor.before``.
        """
        if cursor is None or cursor.phase != SyncPhase.PHOTOS:
            cursor = SyncCursor(
                before=int(self._clock().timestamp()) + 1, phase=SyncPhase.PHOTOS
            )
        run = _Run(user_id=user_id, bundle=bundle, cursor=cursor)

        activities = await self._store.find_with_nonzero_photo_count(user_id)
        pending = sorted(
            (a for a in activities if _photo_pending(a, cursor.before)),
            key=_activity_sort_key,
            reverse=True,
        )
        run.total_activities = len(pending)
        logger.info("Photo sync for user %s: %d activities with photos", user_id, len(pending))
        yield self._snapshot(run, SyncState.LISTING)

        every = self._config.photo_progress_every
        for index, activity in enumerate(pending):
            try:
                result = await self._call(
                    run,
                    self._adapter.photos_endpoint(activity.provider_activity_id),
                    self._adapter.photo_params(self._config.photo_size),
                    endpoint_class="photos",
                )
            except RateLimitError as exc:
                yield self._paused(run, exc.window, exc.retry_after)
                return
            except (ProviderRequestError, TransientNetworkError) as exc:
                logger.warning(
                    "Skipping photos for activity %s: %s", activity.provider_activity_id, exc
                )
            else:
                records = self._photo_records(result.payload, activity)
                inserted = await self._inserter.bulk_insert_photos(records)
                run.photos_inserted += inserted
                await self._store.mark_photos_synced(activity.id, self._clock())

            run.activities_processed += 1
            ts = timestamp_of(activity.start_time)
            if ts is not None:
                next_ts = (
                    timestamp_of(pending[index + 1].start_time)
                    if index + 1 < len(pending)
                    else None
                )
                before = ts + 1 if next_ts == ts else ts
                run.cursor = SyncCursor(before=before, phase=SyncPhase.PHOTOS)

            if run.activities_processed % every == 0 or run.pending_credential is not None:
                yield self._snapshot(run, SyncState.CHECKPOINTED)

        logger.info(
            "Photo sync for user %s done: %d activities, %d photos inserted",
            user_id,
            run.activities_processed,
            run.photos_inserted,
        )
        run.cursor = None
        yield self._snapshot(run, SyncState.DONE)

    def _photo_records(self, payload: Any, activity: StoredActivity) -> list[PhotoRecord]:
        if not isinstance(payload, list):
            return []
        records = []
        for native in payload:
            try:
                records.append(self._adapter.transform_photo(native, activity.id))
            except InvariantViolation as exc:
                logger.warning("Dropping photo on activity %s: %s", activity.provider_activity_id, exc)
        return records

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _call(
        self,
        run: _Run,
        endpoint: str,
        params: dict[str, Any] | None = None,
        endpoint_class: str = "api",
    ) -> GatewayResult:
        result = await self._gateway.call(
            run.user_id, run.bundle, endpoint, params, endpoint_class=endpoint_class
        )
        if result.refreshed_credential is not None:
            run.bundle = result.refreshed_credential
            run.pending_credential = result.refreshed_credential
        return result

    def _sort_key(self, summary: Mapping[str, Any]) -> tuple[bool, int]:
        ts = self._adapter.record_timestamp(summary)
        return (ts is not None, ts or 0)

    def _snapshot(self, run: _Run, state: SyncState, **extra: Any) -> SyncProgress:
        credential, run.pending_credential = run.pending_credential, None
        return SyncProgress(
            state=state,
            fetched=run.fetched,
            detailed=run.detailed,
            inserted=run.inserted,
            oldest_processed_timestamp=run.oldest_processed_timestamp,
            activities_processed=run.activities_processed,
            total_activities=run.total_activities,
            photos_inserted=run.photos_inserted,
            cursor=run.cursor,
            credential=credential,
            **extra,
        )

    def _paused(
        self, run: _Run, limit_type: str | None, reset_at: datetime | None
    ) -> SyncProgress:
        logger.info(
            "Pausing sync for user %s: %s window exhausted until %s",
            run.user_id,
            limit_type,
            reset_at.isoformat() if reset_at else "unknown",
        )
        return self._snapshot(run, SyncState.PAUSED, limit_type=limit_type, reset_at=reset_at)


def _batches(
    items: Sequence[Mapping[str, Any]],
    size: int,
    key: Callable[[Mapping[str, Any]], int | None],
) -> Iterator[list[Mapping[str, Any]]]:
    """Split into batches of ``size``, extending a batch rather than splitting a tie."""
    batch: list[Mapping[str, Any]] = []
    for item in items:
        if len(batch) >= size and key(item) != key(batch[-1]):
            yield batch
            batch = []
        batch.append(item)
    if batch:
        yield batch


def _photo_pending(activity: StoredActivity, before: int) -> bool:
    ts = timestamp_of(activity.start_time)
    return ts is None or ts < before


def _activity_sort_key(activity: StoredActivity) -> tuple[bool, int, int]:
    ts = timestamp_of(activity.start_time)
    return (ts is not None, ts or 0, activity.id)
