"""Shared base for the frozen records that flow from adapters into storage."""

from datetime import datetime, timezone
from typing import Any, ClassVar, Mapping

from pydantic import BaseModel, ConfigDict, model_validator


class RecordModel(BaseModel):
    """Immutable record stamped with the schema version it was written under.

    Rows read back from SQLite carry their stored ``schema_version``; a row
    written by a different layout fails validation instead of being
    silently reinterpreted.
    """

    SCHEMA_VERSION: ClassVar[str]
    schema_version: str

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _stamp_schema_version(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "schema_version" not in data:
            return {**data, "schema_version": cls.SCHEMA_VERSION}
        return data

    @model_validator(mode="after")
    def _check_schema_version(self) -> "RecordModel":
        if self.schema_version != self.SCHEMA_VERSION:
            raise ValueError(
                f"{type(self).__name__} expects schema_version '{self.SCHEMA_VERSION}', got '{self.schema_version}'"
            )
        return self


def coerce_utc_datetime(value: Any, field_name: str) -> datetime | None:
    """Parse ISO strings (``Z`` suffix included) and pin naive values to UTC.

    Adapters emit aware timestamps; SQLite hands them back naive.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise TypeError(f"{field_name} must be a datetime")
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ensure_non_empty_text(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    if not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value
