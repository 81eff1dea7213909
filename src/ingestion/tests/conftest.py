"""Shared fixtures: an in-memory store, a simulated Strava API and engine wiring."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import httpx
import pytest
from cryptography.fernet import Fernet

from src.ingestion.adapters.strava import StravaAdapter
from src.ingestion.base import ActivityRecord, PhotoRecord, StoredActivity, TokenBundle
from src.ingestion.config_loader import ProviderSyncConfig, QuotaWindow, SyncConfig, load_sync_config
from src.ingestion.gateway import ProviderGateway
from src.ingestion.rate_limit import RateLimitGovernor, UsageStore
from src.ingestion.sync.dedup import DedupInserter
from src.ingestion.sync.orchestrator import SyncOrchestrator
from src.ingestion.token_vault import FernetCipher, TokenVault

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test user
TEST_USER_ID = 42

# 2026-02-01T00:00:00Z; simulated activities start one hour apart from here
BASE_TS = 1769904000

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def strava_detail_raw() -> dict:
    return json.loads((FIXTURES_DIR / "strava_activity_detail.json").read_text())


@pytest.fixture
def strava_summary_raw() -> dict:
    return json.loads((FIXTURES_DIR / "strava_activity_summary.json").read_text())


@pytest.fixture
def strava_photos_raw() -> list:
    return json.loads((FIXTURES_DIR / "strava_photos.json").read_text())


# ---------------------------------------------------------------------------
# Config / credential fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


def make_provider_config(
    limit_15min: int = 95,
    limit_daily: int = 950,
    **overrides: Any,
) -> ProviderSyncConfig:
    values: dict[str, Any] = {
        "quota_windows": [
            QuotaWindow(name="15min", limit=limit_15min, window_ms=900_000),
            QuotaWindow(name="daily", limit=limit_daily, window_ms=86_400_000),
        ],
        "page_size": 3,
        "detail_batch_size": 2,
        "safety_cap": 10000,
        "incremental_lookback_days": 7,
        "photo_size": 600,
        "photo_progress_every": 5,
    }
    values.update(overrides)
    return ProviderSyncConfig(**values)


@pytest.fixture
def fernet_key() -> str:
    return Fernet.generate_key().decode()


@pytest.fixture
def fresh_bundle() -> TokenBundle:
    return TokenBundle(
        access_token="access-0",
        refresh_token="refresh-0",
        expires_at=int(time.time()) + 6 * 3600,
    )


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class FakeActivityStore:
    """ActivityStore that keeps rows in dicts and honours the natural keys."""

    def __init__(self) -> None:
        self.activities: dict[tuple[int, str], ActivityRecord] = {}
        self.ids: dict[tuple[int, str], int] = {}
        self.photos: dict[str, PhotoRecord] = {}
        self.insert_calls = 0
        self.photo_insert_calls = 0
        self.last_sync_updates: list[tuple[int, datetime]] = []
        self.photos_synced: dict[int, datetime] = {}
        self.fail_inserts = False
        self._next_id = 1

    async def insert_activities(self, records: Sequence[ActivityRecord]) -> int:
        self.insert_calls += 1
        if self.fail_inserts:
            raise RuntimeError("store unavailable")
        inserted = 0
        for record in records:
            if record.natural_key in self.activities:
                continue
            self.activities[record.natural_key] = record
            self.ids[record.natural_key] = self._next_id
            self._next_id += 1
            inserted += 1
        return inserted

    async def insert_photos(self, records: Sequence[PhotoRecord]) -> int:
        self.photo_insert_calls += 1
        inserted = 0
        for record in records:
            if record.provider_photo_id in self.photos:
                continue
            self.photos[record.provider_photo_id] = record
            inserted += 1
        return inserted

    async def find_by_id(self, activity_id: int) -> StoredActivity | None:
        for key, row_id in self.ids.items():
            if row_id == activity_id:
                return self._stored(key)
        return None

    async def find_with_nonzero_photo_count(self, user_id: int) -> list[StoredActivity]:
        return [
            self._stored(key)
            for key, record in self.activities.items()
            if key[0] == user_id
            and record.photo_count > 0
            and self.ids[key] not in self.photos_synced
        ]

    async def mark_photos_synced(self, activity_id: int, at: datetime) -> None:
        self.photos_synced[activity_id] = at

    async def update_last_sync_timestamp(self, user_id: int, at: datetime) -> None:
        self.last_sync_updates.append((user_id, at))

    def stored_ids(self) -> set[str]:
        return {key[1] for key in self.activities}

    def _stored(self, key: tuple[int, str]) -> StoredActivity:
        record = self.activities[key]
        return StoredActivity(
            id=self.ids[key],
            user_id=record.user_id,
            provider_activity_id=record.provider_activity_id,
            photo_count=record.photo_count,
            start_time=record.start_time,
        )


class FakeCredentialStore:
    def __init__(self, encrypted: str | None = None, last_sync: datetime | None = None) -> None:
        self.encrypted = encrypted
        self.last_sync = last_sync
        self.saved: list[str] = []

    async def get_encrypted_credential(self, user_id: int) -> str | None:
        return self.encrypted

    async def save_encrypted_credential(self, user_id: int, ciphertext: str) -> None:
        self.encrypted = ciphertext
        self.saved.append(ciphertext)

    async def get_last_sync(self, user_id: int) -> datetime | None:
        return self.last_sync


@pytest.fixture
def store() -> FakeActivityStore:
    return FakeActivityStore()


# ---------------------------------------------------------------------------
# Simulated Strava API
# ---------------------------------------------------------------------------


def make_activity(index: int, ts: int | None = None, photos: int = 0) -> dict:
    """A detail-shaped Strava activity starting ``index`` hours after BASE_TS."""
    start = ts if ts is not None else BASE_TS + index * 3600
    return {
        "id": 1000 + index,
        "name": f"Morning Run {index}",
        "description": f"detail for {index}",
        "type": "Run",
        "start_date": datetime.fromtimestamp(start, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "elapsed_time": 1800,
        "moving_time": 1750,
        "distance": 5000.0,
        "start_latlng": [37.7749, -122.4194],
        "end_latlng": [37.7755, -122.4180],
        "kudos_count": index,
        "total_photo_count": photos,
        "map": {"polyline": "_p~iF~ps|U_ulLnnqC", "summary_polyline": "_p~iF~ps|U"},
    }


@dataclass
class FakeStravaProvider:
    """Answers Strava API and token requests through ``httpx.MockTransport``.

    Listing honours ``after``/``before`` (both exclusive) and returns
    newest-first pages.  Summaries omit ``description`` and ``map.polyline``
    so tests can tell whether a detail fetch happened.
    """

    activities: list[dict] = field(default_factory=list)
    photos: dict[int, list[dict]] = field(default_factory=dict)
    detail_status: dict[int, int] = field(default_factory=dict)
    status_overrides: dict[str, list[int]] = field(default_factory=dict)
    token_status: int = 200
    rate_limit_headers: dict[str, str] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)
    token_requests: list[dict] = field(default_factory=list)
    _token_counter: int = 0

    # -- request routing ----------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            return self._token(request)
        self.requests.append(request)

        path = request.url.path.removeprefix("/api/v3")
        queued = self.status_overrides.get(path)
        if queued:
            status = queued.pop(0)
            return httpx.Response(status, json={"message": "error"}, headers=self.rate_limit_headers)

        if path == "/athlete/activities":
            return httpx.Response(200, json=self._list(request.url.params))
        parts = path.strip("/").split("/")
        if parts[0] == "activities" and len(parts) == 2:
            return self._detail(int(parts[1]))
        if parts[0] == "activities" and len(parts) == 3 and parts[2] == "photos":
            return httpx.Response(200, json=self.photos.get(int(parts[1]), []))
        return httpx.Response(404, json={"message": "Record Not Found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    # -- helpers for assertions ---------------------------------------------

    def calls_to(self, prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith("/api/v3" + prefix)]

    def list_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/v3/athlete/activities"]

    def detail_calls(self) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.path.startswith("/api/v3/activities/") and not r.url.path.endswith("/photos")
        ]

    def photo_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/photos")]

    # -- endpoints ----------------------------------------------------------

    def _list(self, params: httpx.QueryParams) -> list[dict]:
        after = int(params["after"]) if "after" in params else None
        before = int(params["before"]) if "before" in params else None
        page = int(params.get("page", 1))
        per_page = int(params.get("per_page", 30))

        selected = []
        for activity in self.activities:
            ts = _ts(activity)
            if after is not None and ts <= after:
                continue
            if before is not None and ts >= before:
                continue
            selected.append(activity)
        selected.sort(key=_ts, reverse=True)
        window = selected[(page - 1) * per_page: page * per_page]
        return [_summary(a) for a in window]

    def _detail(self, activity_id: int) -> httpx.Response:
        status = self.detail_status.get(activity_id)
        if status:
            return httpx.Response(status, json={"message": "error"})
        for activity in self.activities:
            if activity["id"] == activity_id:
                return httpx.Response(200, json=activity)
        return httpx.Response(404, json={"message": "Record Not Found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.token_requests.append(body)
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"message": "Bad Request"})
        self._token_counter += 1
        return httpx.Response(
            200,
            json={
                "token_type": "Bearer",
                "access_token": f"access-{self._token_counter}",
                "refresh_token": f"refresh-{self._token_counter}",
                "expires_at": int(time.time()) + 6 * 3600,
                "expires_in": 21600,
            },
        )


def _ts(activity: dict) -> int:
    return int(datetime.strptime(activity["start_date"], "%Y-%m-%dT%H:%M:%SZ")
               .replace(tzinfo=timezone.utc).timestamp())


def _summary(activity: dict) -> dict:
    summary = {k: v for k, v in activity.items() if k != "description"}
    summary["map"] = {"summary_polyline": activity["map"]["summary_polyline"]}
    return summary


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


@dataclass
class Engine:
    orchestrator: SyncOrchestrator
    gateway: ProviderGateway
    governor: RateLimitGovernor
    vault: TokenVault
    client: httpx.AsyncClient


def build_engine(
    provider: FakeStravaProvider,
    store: FakeActivityStore,
    config: ProviderSyncConfig | None = None,
    fernet_key: str | None = None,
    governor_clock: Any = None,
) -> Engine:
    config = config or make_provider_config()
    client = provider.client()
    adapter = StravaAdapter()
    vault = TokenVault(
        FernetCipher(fernet_key or Fernet.generate_key()),
        token_url=adapter.TOKEN_URL,
        client_id="client-id",
        client_secret="client-secret",
        authorize_url=adapter.AUTHORIZE_URL,
        scope=adapter.DEFAULT_SCOPE,
        http_client=client,
        rate_limit_parser=adapter.parse_rate_limit,
    )
    governor_kwargs = {"clock": governor_clock} if governor_clock else {}
    governor = RateLimitGovernor(config.quota_windows, UsageStore(max_users=100), **governor_kwargs)
    gateway = ProviderGateway(adapter, vault, governor, http_client=client)
    orchestrator = SyncOrchestrator(
        adapter, gateway, DedupInserter(store), store, config, clock=lambda: FIXED_NOW
    )
    return Engine(orchestrator, gateway, governor, vault, client)


async def collect(stream) -> list:
    return [event async for event in stream]
