from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from convosync.models.base import coerce_utc_datetime


class SourceLocation(BaseModel):
    """One physically distinct data root reported by an adapter.

    ``mtime`` is a coarse change signal in seconds since the epoch.
    """

    source: str
    workspace_path: str
    db_path: str
    mtime: float = Field(ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")


class SyncState(BaseModel):
    """Durable checkpoint for one source location."""

    source: str
    workspace_path: str
    db_path: str
    last_synced_at: datetime
    last_mtime: float = Field(ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("last_synced_at", mode="before")
    @classmethod
    def _validate_last_synced_at(cls, value: Any) -> datetime | None:
        return coerce_utc_datetime(value, "last_synced_at")


class ConversationTimestamp(BaseModel):
    """Cheap probe result: a native id and when it last changed."""

    original_id: str
    last_updated_at: datetime | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("last_updated_at", mode="before")
    @classmethod
    def _validate_last_updated_at(cls, value: Any) -> datetime | None:
        return coerce_utc_datetime(value, "last_updated_at")


class ExtractionProgress(BaseModel):
    current: int = Field(ge=0)
    total: int = Field(ge=0)

    model_config = ConfigDict(frozen=True)


__all__ = ["ConversationTimestamp", "ExtractionProgress", "SourceLocation", "SyncState"]
