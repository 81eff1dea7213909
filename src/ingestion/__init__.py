"""Waypoint Provider Sync Engine.

This package ingests a user's activity history from third-party providers
into the local store: OAuth credential handling, quota-gated API access,
polyline decoding, deduplicated insertion and resumable, checkpointed runs.

Subpackages:
    adapters/ — Provider-specific REST descriptions and record mapping (Strava)
    sync/     — Orchestrator, job runner, dedup inserter, Postgres stores

Core modules:
    base          — ProviderAdapter ABC, canonical records, sync run state
    errors        — Sync error taxonomy
    token_vault   — Credential encryption, expiry and refresh
    rate_limit    — Per-user sliding-window quota governor
    gateway       — Authenticated, quota-gated HTTP calls
    transformer   — Native JSON → canonical records
    polyline      — Encoded polyline codec
    config_loader — Load/validate/hot-reload sync_config.yaml
"""

from src.ingestion.base import (
    ActivityRecord,
    PhotoRecord,
    ProviderAdapter,
    SyncCursor,
    SyncProgress,
    SyncState,
    TokenBundle,
)
from src.ingestion.config_loader import SyncConfig, get_sync_config

__all__ = [
    "ProviderAdapter",
    "ActivityRecord",
    "PhotoRecord",
    "TokenBundle",
    "SyncCursor",
    "SyncProgress",
    "SyncState",
    "SyncConfig",
    "get_sync_config",
]
