"""Pydantic models for the provider connect and sync endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from src.ingestion.base import SyncCursor, SyncPhase
from src.ingestion.sync.jobs import SyncJobResult
from src.models.base import WaypointBase


# ---------- Connect ----------

class ConnectResponse(WaypointBase):
    authorization_url: str


class CallbackResponse(WaypointBase):
    connected: bool
    user_id: int
    expires_at: int


# ---------- Sync ----------

class SyncCursorModel(WaypointBase):
    before: int = Field(gt=0)
    phase: SyncPhase = SyncPhase.ACTIVITIES
    after: int | None = Field(default=None, ge=0)

    def to_cursor(self) -> SyncCursor:
        return SyncCursor(before=self.before, phase=self.phase, after=self.after)

    @classmethod
    def from_cursor(cls, cursor: SyncCursor | None) -> "SyncCursorModel | None":
        if cursor is None:
            return None
        return cls(before=cursor.before, phase=cursor.phase, after=cursor.after)


class SyncRequest(WaypointBase):
    user_id: int = Field(gt=0)
    sync_type: Literal["incremental", "full"] = "incremental"
    job_id: str | None = None
    cursor: SyncCursorModel | None = None


class SyncJobResponse(WaypointBase):
    job_id: str
    status: Literal["completed", "paused", "reauth_required", "failed"]
    message: str
    imported: int = 0
    fetched: int = 0
    photos_imported: int = 0
    cursor: SyncCursorModel | None = None
    limit_type: str | None = None
    retry_after: datetime | None = None

    @classmethod
    def from_result(cls, result: SyncJobResult) -> "SyncJobResponse":
        return cls(
            job_id=result.job_id,
            status=result.status,
            message=result.message,
            imported=result.imported,
            fetched=result.fetched,
            photos_imported=result.photos_imported,
            cursor=SyncCursorModel.from_cursor(result.cursor),
            limit_type=result.limit_type,
            retry_after=result.retry_after,
        )
