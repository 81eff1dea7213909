"""Strava connect flow and sync trigger.

The job queue (external) calls ``POST /strava/sync`` with the job's saved
cursor and stores the returned cursor / retry time.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import AppSettings, Credentials, Runner, Vault
from src.ingestion.errors import (
    AuthExpiredError,
    ProviderRequestError,
    RateLimitError,
    TransientNetworkError,
)
from src.ingestion.sync.jobs import SyncJob
from src.models.base import ErrorDetail
from src.models.sync import CallbackResponse, ConnectResponse, SyncJobResponse, SyncRequest

router = APIRouter(prefix="/strava", tags=["strava"])
logger = logging.getLogger("waypoint.strava")


@router.get("/connect", response_model=ConnectResponse)
async def connect(
    vault: Vault,
    settings: AppSettings,
    user_id: int = Query(gt=0),
) -> Any:
    url = vault.authorization_url(settings.strava_redirect_uri, state=str(user_id))
    return ConnectResponse(authorization_url=url)


@router.get(
    "/callback",
    response_model=CallbackResponse,
    responses={
        400: {"model": ErrorDetail},
        429: {"model": ErrorDetail},
        502: {"model": ErrorDetail},
    },
)
async def callback(
    vault: Vault,
    credentials: Credentials,
    settings: AppSettings,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> Any:
    if error:
        raise HTTPException(status_code=400, detail=f"Strava authorization denied: {error}")
    if not code or not state or not state.isdigit():
        raise HTTPException(status_code=400, detail="Missing code or state")
    user_id = int(state)

    try:
        bundle = await vault.exchange_code(code, settings.strava_redirect_uri)
    except AuthExpiredError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RateLimitError as exc:
        headers = {}
        if exc.retry_after is not None:
            headers["Retry-After"] = exc.retry_after.strftime("%a, %d %b %Y %H:%M:%S GMT")
        raise HTTPException(
            status_code=429, detail="Strava is rate limiting, try again later", headers=headers
        ) from exc
    except (TransientNetworkError, ProviderRequestError) as exc:
        raise HTTPException(status_code=502, detail="Strava is unreachable") from exc

    await credentials.save_encrypted_credential(user_id, vault.encrypt(bundle))
    logger.info("Strava connected for user %s", user_id)
    return CallbackResponse(connected=True, user_id=user_id, expires_at=bundle.expires_at)


@router.post("/sync", response_model=SyncJobResponse)
async def run_sync(body: SyncRequest, runner: Runner) -> Any:
    job = SyncJob(
        job_id=body.job_id or str(uuid.uuid4()),
        user_id=body.user_id,
        sync_type=body.sync_type,
        cursor=body.cursor.to_cursor() if body.cursor else None,
    )
    result = await runner.run(job)
    return SyncJobResponse.from_result(result)
