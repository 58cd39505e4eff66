from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from convosync.models.base import coerce_utc_datetime
from convosync.models.enums import EmbeddingStatus, SyncPhase
from convosync.models.source import ExtractionProgress


class SyncProgress(BaseModel):
    """Snapshot of a sync run, emitted at every phase transition.

    The engine mutates one instance and hands out copies, so listeners never
    observe a snapshot changing underneath them.
    """

    phase: SyncPhase = SyncPhase.DETECTING
    current_source: str | None = None
    current_project: str | None = None
    projects_found: int = 0
    projects_processed: int = 0
    conversations_found: int = 0
    conversations_indexed: int = 0
    conversations_skipped: int = 0
    messages_indexed: int = 0
    embedding_started: bool = False
    error: str | None = None
    extraction_progress: ExtractionProgress | None = None
    enrichment_progress: ExtractionProgress | None = None

    model_config = ConfigDict(validate_assignment=True)

    @property
    def finished(self) -> bool:
        return self.phase in (SyncPhase.DONE, SyncPhase.ERROR)


class EmbeddingProgress(BaseModel):
    """Coarse embedding status shared between sync runs and the worker."""

    status: EmbeddingStatus = EmbeddingStatus.IDLE
    total: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    pid: int | None = None
    started_at: datetime | None = None
    error: str | None = None

    model_config = ConfigDict(frozen=True)

    @field_validator("started_at", mode="before")
    @classmethod
    def _validate_started_at(cls, value: Any) -> datetime | None:
        return coerce_utc_datetime(value, "started_at")


class SyncStatus(BaseModel):
    """Read-only summary for the `status` command."""

    last_sync_at: datetime | None = None
    conversations: int = 0
    messages: int = 0
    pending_embeddings: int = 0
    embedding: EmbeddingProgress | None = None
    needs_sync: bool = False

    model_config = ConfigDict(frozen=True)


class StepSucceeded(BaseModel):
    kind: Literal["succeeded"] = "succeeded"
    name: str
    value: Any = None

    model_config = ConfigDict(frozen=True)


class StepFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    name: str
    error: str

    model_config = ConfigDict(frozen=True)


StepOutcome = StepSucceeded | StepFailed

__all__ = ["EmbeddingProgress", "StepFailed", "StepOutcome", "StepSucceeded", "SyncProgress", "SyncStatus"]
