"""Job-queue boundary for provider syncs.

The queue itself lives elsewhere; it hands a ``SyncJob`` to
``SyncJobRunner.run`` and persists whatever the returned ``SyncJobResult``
says (next cursor, retry time, status).

Outcomes:
    completed       — the run reached DONE
    paused          — a quota window is exhausted; re-enqueue at ``retry_after``
    reauth_required — the user must reconnect the provider
    failed          — anything else; ``error`` carries the detail
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Protocol

from src.ingestion.base import SyncCursor, SyncProgress, SyncState, TokenBundle
from src.ingestion.errors import AuthExpiredError, InvariantViolation
from src.ingestion.sync.orchestrator import SyncOrchestrator
from src.ingestion.token_vault import TokenVault

logger = logging.getLogger("waypoint.ingestion.sync.jobs")

SYNC_TYPES = ("incremental", "full")

STATUS_COMPLETED = "completed"
STATUS_PAUSED = "paused"
STATUS_REAUTH_REQUIRED = "reauth_required"
STATUS_FAILED = "failed"


class CredentialStore(Protocol):
    async def get_encrypted_credential(self, user_id: int) -> str | None: ...

    async def save_encrypted_credential(self, user_id: int, ciphertext: str) -> None: ...

    async def get_last_sync(self, user_id: int) -> datetime | None: ...


@dataclass
class SyncJob:
    """One queued sync request.

    Attributes:
        job_id:    Queue-assigned identifier (for logs only).
        user_id:   Internal user id.
        sync_type: 'incremental' or 'full'.
        cursor:    Resume marker saved from a previous paused run.
    """

    job_id: str
    user_id: int
    sync_type: str = "incremental"
    cursor: SyncCursor | None = None


@dataclass
class SyncJobResult:
    """What the queue needs to know after a run."""

    job_id: str
    status: str
    message: str
    imported: int = 0
    fetched: int = 0
    photos_imported: int = 0
    cursor: SyncCursor | None = None
    limit_type: str | None = None
    retry_after: datetime | None = None
    error: str | None = None

    @property
    def total_imported(self) -> int:
        return self.imported + self.photos_imported


ProgressObserver = Callable[[SyncJob, SyncProgress], Awaitable[None]]


class SyncJobRunner:
    """Run a SyncJob end to end and map its outcome to a SyncJobResult."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        vault: TokenVault,
        credentials: CredentialStore,
        on_progress: ProgressObserver | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._vault = vault
        self._credentials = credentials
        self._on_progress = on_progress
        self._provider = orchestrator.adapter.DISPLAY_NAME

    async def run(self, job: SyncJob) -> SyncJobResult:
        """Execute ``job``.  Never raises; every failure becomes a result."""
        if job.sync_type not in SYNC_TYPES:
            return self._failed(job, None, ValueError(f"Unknown sync type: {job.sync_type}"))

        logger.info(
            "Starting %s %s sync job %s for user %s%s",
            self._provider,
            job.sync_type,
            job.job_id,
            job.user_id,
            f" from cursor {job.cursor.before}" if job.cursor else "",
        )

        encrypted = await self._credentials.get_encrypted_credential(job.user_id)
        if not encrypted:
            return self._reauth(job, "No stored credential")
        try:
            bundle = self._vault.decrypt(encrypted)
        except InvariantViolation as exc:
            return self._reauth(job, str(exc))

        last: SyncProgress | None = None
        try:
            async for progress in await self._stream(job, bundle):
                if progress.credential is not None:
                    await self._credentials.save_encrypted_credential(
                        job.user_id, self._vault.encrypt(progress.credential)
                    )
                if self._on_progress is not None:
                    await self._on_progress(job, progress)
                last = progress
        except AuthExpiredError as exc:
            return self._reauth(job, str(exc), last)
        except Exception as exc:
            logger.exception("Sync job %s for user %s failed", job.job_id, job.user_id)
            return self._failed(job, last, exc)

        if last is None:
            return self._failed(job, None, InvariantViolation("Sync produced no progress"))
        if last.state == SyncState.PAUSED:
            when = last.reset_at.isoformat() if last.reset_at else "later"
            logger.info(
                "Sync job %s paused on %s window, retry after %s", job.job_id, last.limit_type, when
            )
            return SyncJobResult(
                job_id=job.job_id,
                status=STATUS_PAUSED,
                message=(
                    f"{self._provider} rate limit reached ({last.limit_type}). "
                    f"Sync will resume after {when}."
                ),
                imported=last.inserted,
                fetched=last.fetched,
                photos_imported=last.photos_inserted,
                cursor=last.cursor,
                limit_type=last.limit_type,
                retry_after=last.reset_at,
            )

        result = SyncJobResult(
            job_id=job.job_id,
            status=STATUS_COMPLETED,
            message=f"Imported {last.inserted} activities and {last.photos_inserted} photos.",
            imported=last.inserted,
            fetched=last.fetched,
            photos_imported=last.photos_inserted,
        )
        logger.info(
            "Sync job %s completed: %d activities, %d photos",
            job.job_id,
            result.imported,
            result.photos_imported,
        )
        return result

    async def _stream(self, job: SyncJob, bundle: TokenBundle) -> AsyncIterator[SyncProgress]:
        if job.sync_type == "full":
            return self._orchestrator.full_historical_sync(job.user_id, bundle, cursor=job.cursor)
        last_sync_at = await self._credentials.get_last_sync(job.user_id)
        return self._orchestrator.incremental_sync(
            job.user_id, bundle, last_sync_at=last_sync_at, cursor=job.cursor
        )

    def _reauth(
        self, job: SyncJob, detail: str, last: SyncProgress | None = None
    ) -> SyncJobResult:
        logger.warning(
            "Sync job %s: %s credential for user %s unusable: %s",
            job.job_id,
            self._provider,
            job.user_id,
            detail,
        )
        return SyncJobResult(
            job_id=job.job_id,
            status=STATUS_REAUTH_REQUIRED,
            message=f"{self._provider} authorization expired. Please reconnect your account.",
            imported=last.inserted if last else 0,
            fetched=last.fetched if last else 0,
            photos_imported=last.photos_inserted if last else 0,
            cursor=last.cursor if last else job.cursor,
            error=detail,
        )

    def _failed(
        self, job: SyncJob, last: SyncProgress | None, exc: Exception
    ) -> SyncJobResult:
        return SyncJobResult(
            job_id=job.job_id,
            status=STATUS_FAILED,
            message=f"{self._provider} sync failed. Please try again later.",
            imported=last.inserted if last else 0,
            fetched=last.fetched if last else 0,
            photos_imported=last.photos_inserted if last else 0,
            cursor=last.cursor if last else job.cursor,
            error=f"{type(exc).__name__}: {exc}",
        )
