"""Tests for SyncOrchestrator: listing, detailing, checkpoints, pause and resume.

Runs go through the real gateway, governor, vault, transformer and dedup
inserter against a simulated Strava API and an in-memory store.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.ingestion.base import SyncCursor, SyncPhase, SyncState, TokenBundle
from src.ingestion.errors import AuthExpiredError, TransientNetworkError
from src.ingestion.sync.orchestrator import _batches
from src.ingestion.tests.conftest import (
    BASE_TS,
    FIXED_NOW,
    TEST_USER_ID,
    FakeActivityStore,
    FakeStravaProvider,
    build_engine,
    collect,
    make_activity,
    make_provider_config,
)

ALL_IDS = {str(1000 + i) for i in range(7)}


def _ts(index: int) -> int:
    return BASE_TS + index * 3600


@pytest.fixture
def provider() -> FakeStravaProvider:
    return FakeStravaProvider(activities=[make_activity(i) for i in range(7)])


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestFullSync:
    @pytest.mark.asyncio
    async def test_imports_every_activity(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(provider, store)
        events = await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        done = events[-1]
        assert done.state == SyncState.DONE
        assert done.inserted == 7
        assert done.fetched == 7
        assert done.cursor is None
        assert store.stored_ids() == ALL_IDS

    @pytest.mark.asyncio
    async def test_pages_until_empty_page(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(provider, store)
        await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        pages = [int(r.url.params["page"]) for r in provider.list_calls()]
        assert pages == [1, 2, 3, 4]
        assert all("after" not in r.url.params for r in provider.list_calls())
        assert all(r.url.params["per_page"] == "3" for r in provider.list_calls())

    @pytest.mark.asyncio
    async def test_detail_enriches_records(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(provider, store)
        await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        record = store.activities[(TEST_USER_ID, "1003")]
        assert record.description == "detail for 3"
        assert len(record.track_line) == 2
        assert len(provider.detail_calls()) == 7

    @pytest.mark.asyncio
    async def test_checkpoints_move_backwards_in_time(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(provider, store)
        events = await collect(engine.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))

        cursors = [e.cursor.before for e in events if e.state == SyncState.CHECKPOINTED]
        # batches of two, newest first: [6,5] [4,3] [2,1] [0]
        assert cursors == [_ts(5), _ts(3), _ts(1), _ts(0)]
        assert len(store.last_sync_updates) == 4

    @pytest.mark.asyncio
    async def test_safety_cap_truncates_listing(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(provider, store, make_provider_config(safety_cap=5))
        events = await collect(engine.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))

        assert events[-1].fetched == 5
        assert len(provider.list_calls()) == 2
        assert store.stored_ids() == {str(1000 + i) for i in range(2, 7)}


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_lookback_from_last_sync(
        self, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        provider = FakeStravaProvider(activities=[make_activity(i) for i in range(12)])
        engine = build_engine(provider, store)
        last_sync = datetime.fromtimestamp(_ts(10), tz=timezone.utc) + timedelta(days=7)

        events = await collect(
            engine.orchestrator.incremental_sync(TEST_USER_ID, fresh_bundle, last_sync_at=last_sync)
        )

        assert provider.list_calls()[0].url.params["after"] == str(_ts(10))
        assert events[-1].inserted == 1
        assert store.stored_ids() == {"1011"}

    @pytest.mark.asyncio
    async def test_lookback_from_now_without_last_sync(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(provider, store)
        await collect(engine.orchestrator.incremental_sync(TEST_USER_ID, fresh_bundle))

        expected = int((FIXED_NOW - timedelta(days=7)).timestamp())
        assert provider.list_calls()[0].url.params["after"] == str(expected)


# ---------------------------------------------------------------------------
# Dedup and checkpoint discipline
# ---------------------------------------------------------------------------


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_run_inserts_nothing(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(provider, store)
        await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))
        updates_after_first = len(store.last_sync_updates)

        events = await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        assert events[-1].inserted == 0
        assert len(store.activities) == 7
        # nothing written, so nothing checkpointed
        assert not [e for e in events if e.state == SyncState.CHECKPOINTED]
        assert len(store.last_sync_updates) == updates_after_first

    @pytest.mark.asyncio
    async def test_inserted_counts_only_new_rows(
        self, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        provider = FakeStravaProvider(activities=[make_activity(i) for i in range(3)])
        engine = build_engine(provider, store)
        await collect(engine.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))

        provider.activities.extend(make_activity(i) for i in range(3, 7))
        events = await collect(engine.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))

        assert events[-1].inserted == 4
        assert events[-1].fetched == 7
        assert store.stored_ids() == ALL_IDS


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestDetailFailures:
    @pytest.mark.asyncio
    async def test_failed_detail_falls_back_to_summary(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        provider.detail_status[1003] = 500
        provider.detail_status[1004] = 404
        engine = build_engine(provider, store)

        events = await collect(engine.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))

        assert events[-1].state == SyncState.DONE
        assert events[-1].inserted == 7
        assert store.activities[(TEST_USER_ID, "1003")].description is None
        assert store.activities[(TEST_USER_ID, "1004")].description is None
        assert store.activities[(TEST_USER_ID, "1005")].description == "detail for 5"


class TestFatalErrors:
    @pytest.mark.asyncio
    async def test_listing_failure_aborts(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        provider.status_overrides["/athlete/activities"] = [503]
        engine = build_engine(provider, store)

        with pytest.raises(TransientNetworkError):
            await collect(engine.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))
        assert store.insert_calls == 0

    @pytest.mark.asyncio
    async def test_auth_expired_propagates(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        provider.status_overrides["/athlete/activities"] = [401, 401]
        engine = build_engine(provider, store)

        with pytest.raises(AuthExpiredError):
            await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

    @pytest.mark.asyncio
    async def test_store_failure_propagates_unmodified(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        store.fail_inserts = True
        engine = build_engine(provider, store)

        with pytest.raises(RuntimeError, match="store unavailable"):
            await collect(engine.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))
        assert store.last_sync_updates == []


class TestCredentialRefresh:
    @pytest.mark.asyncio
    async def test_refreshed_credential_surfaces_once(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        provider.status_overrides["/athlete/activities"] = [401]
        engine = build_engine(provider, store)

        events = await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        credentials = [e.credential for e in events if e.credential is not None]
        assert [c.access_token for c in credentials] == ["access-1"]
        assert provider.requests[-1].headers["Authorization"] == "Bearer access-1"
        assert events[-1].state == SyncState.DONE


# ---------------------------------------------------------------------------
# Rate limits: pause and resume
# ---------------------------------------------------------------------------


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_listing_denial_pauses_without_writing(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(
            provider, store, make_provider_config(limit_15min=1), governor_clock=lambda: 1000.0
        )

        events = await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        paused = events[-1]
        decision = engine.governor.check_quota(TEST_USER_ID)
        assert paused.state == SyncState.PAUSED
        assert paused.limit_type == decision.limit_type == "15min"
        assert paused.reset_at == decision.reset_at
        assert paused.reset_at == datetime.fromtimestamp(1900, tz=timezone.utc)
        assert paused.cursor is None
        assert len(provider.requests) == 1
        assert store.insert_calls == 0

    @pytest.mark.asyncio
    async def test_pause_flushes_partial_batch_and_resume_completes(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        config = make_provider_config(limit_15min=6, page_size=10, detail_batch_size=3)
        first = build_engine(provider, store, config, governor_clock=lambda: 1000.0)

        events = await collect(first.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        paused = events[-1]
        assert paused.state == SyncState.PAUSED
        assert paused.limit_type == "15min"
        # two list calls + four details, the fifth detail was refused locally
        assert len(provider.requests) == 6
        assert paused.inserted == 4
        assert paused.cursor == SyncCursor(before=_ts(3), phase=SyncPhase.ACTIVITIES)
        assert store.stored_ids() == {"1006", "1005", "1004", "1003"}

        second = build_engine(provider, store, config)
        resumed = await collect(
            second.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle, cursor=paused.cursor)
        )

        assert resumed[-1].state == SyncState.DONE
        assert resumed[-1].inserted == 3
        assert provider.list_calls()[-1].url.params["before"] == str(_ts(3))
        assert store.stored_ids() == ALL_IDS
        detailed = [r.url.path.rsplit("/", 1)[-1] for r in provider.detail_calls()]
        assert sorted(detailed) == sorted(ALL_IDS)

    @pytest.mark.asyncio
    async def test_partial_flush_does_not_skip_timestamp_ties(
        self, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        provider = FakeStravaProvider(
            activities=[
                make_activity(0, ts=BASE_TS + 300),
                make_activity(1, ts=BASE_TS + 200),
                make_activity(2, ts=BASE_TS + 200),
            ]
        )
        config = make_provider_config(limit_15min=4, page_size=10, detail_batch_size=10)
        first = build_engine(provider, store, config, governor_clock=lambda: 1000.0)

        events = await collect(first.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))

        paused = events[-1]
        assert paused.state == SyncState.PAUSED
        assert paused.inserted == 2
        # one record at BASE_TS + 200 is still pending, so the cursor stays above it
        assert paused.cursor.before == BASE_TS + 201

        second = build_engine(provider, store, config)
        resumed = await collect(
            second.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle, cursor=paused.cursor)
        )

        assert resumed[-1].inserted == 1
        assert store.stored_ids() == {"1000", "1001", "1002"}

    @pytest.mark.asyncio
    async def test_provider_429_mid_detail_pauses(
        self, provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        provider.status_overrides["/activities/1005"] = [429]
        provider.rate_limit_headers = {
            "X-RateLimit-Limit": "100,1000",
            "X-RateLimit-Usage": "120,400",
        }
        engine = build_engine(provider, store, make_provider_config(detail_batch_size=3))

        events = await collect(engine.orchestrator.sync_activities(TEST_USER_ID, fresh_bundle))

        paused = events[-1]
        assert paused.state == SyncState.PAUSED
        assert paused.limit_type == "15min"
        assert store.stored_ids() == {"1006"}
        assert paused.cursor.before == _ts(6)

    @pytest.mark.asyncio
    async def test_resumed_incremental_keeps_original_lower_bound(
        self, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        # activities 2, 8, 14, 20, 26 and 32 days old; last sync 30 days ago
        starts = [FIXED_NOW - timedelta(days=2 + 6 * i) for i in range(6)]
        provider = FakeStravaProvider(
            activities=[make_activity(i, ts=int(s.timestamp())) for i, s in enumerate(starts)]
        )
        config = make_provider_config(limit_15min=4, page_size=10, detail_batch_size=2)
        first = build_engine(provider, store, config, governor_clock=lambda: 1000.0)
        last_sync = FIXED_NOW - timedelta(days=30)

        events = await collect(
            first.orchestrator.incremental_sync(TEST_USER_ID, fresh_bundle, last_sync_at=last_sync)
        )

        paused = events[-1]
        expected_after = int((last_sync - timedelta(days=7)).timestamp())
        assert paused.state == SyncState.PAUSED
        assert paused.inserted == 2
        assert paused.cursor == SyncCursor(
            before=int(starts[1].timestamp()), phase=SyncPhase.ACTIVITIES, after=expected_after
        )

        # the checkpoint moved the last-sync marker to now; a resumed run reads it back
        marker = store.last_sync_updates[-1][1]
        assert marker == FIXED_NOW
        second = build_engine(provider, store, config)
        resumed = await collect(
            second.orchestrator.incremental_sync(
                TEST_USER_ID, fresh_bundle, last_sync_at=marker, cursor=paused.cursor
            )
        )

        assert resumed[-1].state == SyncState.DONE
        assert resumed[-1].inserted == 4
        assert store.stored_ids() == {str(1000 + i) for i in range(6)}
        assert {r.url.params["after"] for r in provider.list_calls()} == {str(expected_after)}


# ---------------------------------------------------------------------------
# Photo pass
# ---------------------------------------------------------------------------


@pytest.fixture
def photo_provider(strava_photos_raw: list) -> FakeStravaProvider:
    return FakeStravaProvider(
        activities=[make_activity(i, photos=2) for i in range(3)] + [make_activity(3)],
        photos={
            1000: strava_photos_raw,
            1001: [{"unique_id": "u-1001", "urls": {"600": "https://img/1001.jpg"}}],
            1002: [{"unique_id": "u-1002", "urls": {"600": "https://img/1002.jpg"}}],
        },
    )


class TestPhotoSync:
    @pytest.mark.asyncio
    async def test_photos_fetched_for_activities_with_photos(
        self, photo_provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(photo_provider, store)
        events = await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        done = events[-1]
        assert done.state == SyncState.DONE
        assert done.inserted == 4
        assert done.activities_processed == 3
        assert done.photos_inserted == 4
        assert len(photo_provider.photo_calls()) == 3
        assert all(r.url.params["size"] == "600" for r in photo_provider.photo_calls())
        first_photo = store.photos["a4c5b1f0-9a1f-4b0e-8a57-3e7b1c2d9f10"]
        assert first_photo.activity_internal_id == store.ids[(TEST_USER_ID, "1000")]

    @pytest.mark.asyncio
    async def test_photos_deduplicated_across_runs(
        self, photo_provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(photo_provider, store)
        await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))
        # force a refetch of already stored photos
        store.photos_synced.clear()
        events = await collect(engine.orchestrator.sync_photos(TEST_USER_ID, fresh_bundle))

        assert events[-1].activities_processed == 3
        assert events[-1].photos_inserted == 0
        assert len(store.photos) == 4

    @pytest.mark.asyncio
    async def test_photo_error_skips_activity(
        self, photo_provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        photo_provider.status_overrides["/activities/1001/photos"] = [500]
        engine = build_engine(photo_provider, store)

        events = await collect(engine.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        assert events[-1].state == SyncState.DONE
        assert events[-1].activities_processed == 3
        assert "u-1001" not in store.photos
        assert "u-1002" in store.photos
        assert store.ids[(TEST_USER_ID, "1001")] not in store.photos_synced

        retry = await collect(engine.orchestrator.sync_photos(TEST_USER_ID, fresh_bundle))

        assert retry[-1].activities_processed == 1
        assert "u-1001" in store.photos

    @pytest.mark.asyncio
    async def test_second_incremental_run_skips_fetched_photos(
        self, photo_provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        engine = build_engine(photo_provider, store)
        last_sync = datetime.fromtimestamp(BASE_TS, tz=timezone.utc)
        await collect(
            engine.orchestrator.incremental_sync(TEST_USER_ID, fresh_bundle, last_sync_at=last_sync)
        )
        assert len(photo_provider.photo_calls()) == 3
        assert set(store.photos_synced) == {
            store.ids[(TEST_USER_ID, str(1000 + i))] for i in range(3)
        }

        events = await collect(
            engine.orchestrator.incremental_sync(TEST_USER_ID, fresh_bundle, last_sync_at=last_sync)
        )

        assert events[-1].state == SyncState.DONE
        assert events[-1].total_activities == 0
        assert len(photo_provider.photo_calls()) == 3
        assert store.photos_synced[store.ids[(TEST_USER_ID, "1000")]] == FIXED_NOW

    @pytest.mark.asyncio
    async def test_photo_pause_resumes_into_photo_phase(
        self, photo_provider: FakeStravaProvider, store: FakeActivityStore, fresh_bundle: TokenBundle
    ) -> None:
        # 2 list calls + 4 details + 1 photo request fit; the second photo does not
        config = make_provider_config(limit_15min=7, page_size=10, detail_batch_size=10)
        first = build_engine(photo_provider, store, config, governor_clock=lambda: 1000.0)

        events = await collect(first.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle))

        paused = events[-1]
        assert paused.state == SyncState.PAUSED
        assert paused.inserted == 4
        assert paused.cursor == SyncCursor(before=_ts(2), phase=SyncPhase.PHOTOS)
        assert set(store.photos) == {"u-1002"}

        list_calls_before = len(photo_provider.list_calls())
        second = build_engine(photo_provider, store, config)
        resumed = await collect(
            second.orchestrator.full_historical_sync(TEST_USER_ID, fresh_bundle, cursor=paused.cursor)
        )

        assert resumed[-1].state == SyncState.DONE
        assert len(photo_provider.list_calls()) == list_calls_before
        assert len(store.photos) == 4
        visited = [r.url.path for r in photo_provider.photo_calls()]
        assert visited == [
            "/api/v3/activities/1002/photos",
            "/api/v3/activities/1001/photos",
            "/api/v3/activities/1000/photos",
        ]


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


class TestBatching:
    def test_batches_respect_size(self) -> None:
        items = [{"t": t} for t in (9, 8, 7, 6, 5)]
        batches = list(_batches(items, 2, lambda i: i["t"]))
        assert [len(b) for b in batches] == [2, 2, 1]

    def test_ties_never_split(self) -> None:
        items = [{"t": t} for t in (9, 8, 8, 8, 5)]
        batches = list(_batches(items, 2, lambda i: i["t"]))
        assert [[i["t"] for i in b] for b in batches] == [[9, 8, 8, 8], [5]]
