"""Shared FastAPI dependencies and the wiring of the sync stack."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

import httpx
from fastapi import Depends, Request

from src.config import Settings, get_settings
from src.ingestion.adapters import get_adapter
from src.ingestion.config_loader import get_sync_config
from src.ingestion.gateway import ProviderGateway
from src.ingestion.rate_limit import RateLimitGovernor, UsageStore
from src.ingestion.sync.dedup import DedupInserter
from src.ingestion.sync.jobs import SyncJobRunner
from src.ingestion.sync.orchestrator import SyncOrchestrator
from src.ingestion.sync.store import PostgresActivityStore, PostgresCredentialStore
from src.ingestion.token_vault import FernetCipher, TokenVault

STRAVA = "strava"


@lru_cache
def get_usage_store() -> UsageStore:
    """Process-wide quota usage store shared by every governor."""
    return UsageStore(max_users=get_sync_config().quota_max_users)


def build_token_vault(
    source: str, settings: Settings, http_client: httpx.AsyncClient | None = None
) -> TokenVault:
    adapter = get_adapter(source)()
    return TokenVault(
        FernetCipher(settings.token_encryption_key),
        token_url=adapter.TOKEN_URL,
        client_id=settings.strava_client_id,
        client_secret=settings.strava_client_secret,
        authorize_url=adapter.AUTHORIZE_URL,
        scope=adapter.DEFAULT_SCOPE,
        http_client=http_client,
        rate_limit_parser=adapter.parse_rate_limit,
    )


def build_sync_runner(
    source: str,
    settings: Settings,
    vault: TokenVault,
    credentials: PostgresCredentialStore,
    http_client: httpx.AsyncClient | None = None,
    usage_store: UsageStore | None = None,
) -> SyncJobRunner:
    """Assemble adapter → governor → gateway → orchestrator → runner for ``source``."""
    adapter = get_adapter(source)()
    config = get_sync_config().provider(source)
    governor = RateLimitGovernor(config.quota_windows, usage_store or get_usage_store())
    gateway = ProviderGateway(
        adapter,
        vault,
        governor,
        http_client=http_client,
        timeout=settings.http_timeout_seconds,
    )
    store = PostgresActivityStore(source)
    orchestrator = SyncOrchestrator(adapter, gateway, DedupInserter(store), store, config)
    return SyncJobRunner(orchestrator, vault, credentials)


# ---------- FastAPI dependency functions ----------

def get_http_client(request: Request) -> httpx.AsyncClient:
    """The shared outbound client created in the app lifespan."""
    return request.app.state.http_client


def get_token_vault(
    settings: Annotated[Settings, Depends(get_settings)],
    client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
) -> TokenVault:
    return build_token_vault(STRAVA, settings, client)


def get_credential_store() -> PostgresCredentialStore:
    return PostgresCredentialStore(STRAVA)


def get_sync_runner(
    settings: Annotated[Settings, Depends(get_settings)],
    client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    vault: Annotated[TokenVault, Depends(get_token_vault)],
    credentials: Annotated[PostgresCredentialStore, Depends(get_credential_store)],
) -> SyncJobRunner:
    return build_sync_runner(STRAVA, settings, vault, credentials, http_client=client)


# Annotated shortcuts for route signatures
AppSettings = Annotated[Settings, Depends(get_settings)]
Vault = Annotated[TokenVault, Depends(get_token_vault)]
Credentials = Annotated[PostgresCredentialStore, Depends(get_credential_store)]
Runner = Annotated[SyncJobRunner, Depends(get_sync_runner)]
