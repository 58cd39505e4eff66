"""Full-text and scalar index maintenance.

The FTS5 table is external-content over ``messages``, so it never updates
itself on insert: every sync that writes messages must rebuild it before the
run is reported done. Scalar (b-tree) indexes are maintained by SQLite on
write; rebuilding them only refreshes planner statistics, so that is batched
behind a cumulative counter persisted in :class:`SyncCache`.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from convosync.models.base import coerce_utc_datetime
from convosync.services.recovery import StorageRecovery
from convosync.services.repository import FTS_TABLE

_ENTITY_TABLES = (
    "conversations",
    "messages",
    "tool_calls",
    "conversation_files",
    "message_files",
    "file_edits",
    "sync_state",
)


class SyncCacheState(BaseModel):
    messages_since_last_index: int = Field(default=0, ge=0)
    last_sync_at: datetime | None = None

    model_config = ConfigDict(frozen=True)

    @field_validator("last_sync_at", mode="before")
    @classmethod
    def _validate_last_sync_at(cls, value: Any) -> datetime | None:
        return coerce_utc_datetime(value, "last_sync_at")


class SyncCache:
    """JSON file tracking messages written since the last scalar index rebuild."""

    def __init__(self, path: Path, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self._path = path
        self._logger = logger or structlog.get_logger(__name__)

    def load(self) -> SyncCacheState:
        if not self._path.exists():
            return SyncCacheState()
        try:
            return SyncCacheState.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            self._logger.warning("sync_cache_unreadable", path=str(self._path), error=str(exc))
            return SyncCacheState()

    def update(self, new_messages: int, rebuilt: bool) -> SyncCacheState:
        """Record a completed run.

        Args:
            new_messages: Messages inserted by the run.
            rebuilt: Whether scalar indexes were rebuilt, which resets the counter.
        """
        previous = self.load()
        state = SyncCacheState(
            messages_since_last_index=0 if rebuilt else previous.messages_since_last_index + new_messages,
            last_sync_at=datetime.now(timezone.utc),
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        return state


class IndexMaintainer:
    def __init__(
        self,
        engine: AsyncEngine,
        recovery: StorageRecovery | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._recovery = recovery or StorageRecovery(engine)
        self._logger = logger or structlog.get_logger(__name__)

    async def rebuild_fts_index(self) -> None:
        async def operation() -> None:
            async with self._engine.begin() as conn:
                await conn.execute(text(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES('rebuild')"))

        await self._recovery.run(operation, "index.rebuild_fts")
        self._logger.info("fts_index_rebuilt")

    async def rebuild_scalar_indexes(self) -> None:
        async def operation() -> None:
            async with self._engine.begin() as conn:
                for table in _ENTITY_TABLES:
                    await conn.execute(text(f"REINDEX {table}"))
                await conn.execute(text("ANALYZE"))

        await self._recovery.run(operation, "index.rebuild_scalar")
        self._logger.info("scalar_indexes_rebuilt", tables=len(_ENTITY_TABLES))

    async def search_messages(self, query: str, limit: int = 20) -> list[str]:
        """Return ids of messages whose content matches an FTS5 query, best first."""

        async def operation() -> list[str]:
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    text(
                        f"SELECT m.id FROM {FTS_TABLE} f JOIN messages m ON m.rowid = f.rowid "
                        f"WHERE {FTS_TABLE} MATCH :query ORDER BY rank LIMIT :limit"
                    ),
                    {"query": query, "limit": limit},
                )
                return [row[0] for row in result.all()]

        return await self._recovery.run(operation, "index.search_messages")
