"""Per-location sync checkpoints."""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from convosync.models.source import SyncState
from convosync.models.tables import SyncStateRecord
from convosync.services.recovery import StorageRecovery


class SyncStateStore:
    """Reads and writes the ``sync_state`` table, one row per (source, db_path)."""

    def __init__(
        self,
        engine: AsyncEngine,
        recovery: StorageRecovery | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._recovery = recovery or StorageRecovery(engine)
        self._logger = logger or structlog.get_logger(__name__)

    async def get(self, source: str, db_path: str) -> SyncState | None:
        async def operation() -> SyncState | None:
            async with AsyncSession(self._engine) as session:
                record = await session.get(SyncStateRecord, (source, db_path))
                return None if record is None else self._record_to_state(record)

        return await self._recovery.run(operation, "sync_state.get")

    async def set(self, state: SyncState) -> None:
        """Insert or overwrite the checkpoint for ``state``'s location."""

        async def operation() -> None:
            async with AsyncSession(self._engine) as session:
                record = await session.get(SyncStateRecord, (state.source, state.db_path))
                if record is None:
                    session.add(SyncStateRecord.model_validate(state.model_dump()))
                else:
                    record.workspace_path = state.workspace_path
                    record.last_synced_at = state.last_synced_at
                    record.last_mtime = state.last_mtime
                await session.commit()

        await self._recovery.run(operation, "sync_state.set")
        self._logger.debug(
            "sync_state_updated",
            source=state.source,
            db_path=state.db_path,
            last_mtime=state.last_mtime,
        )

    async def list_all(self) -> list[SyncState]:
        async def operation() -> list[SyncState]:
            async with AsyncSession(self._engine) as session:
                result = await session.execute(select(SyncStateRecord))
                return [self._record_to_state(record) for record in result.scalars().all()]

        return await self._recovery.run(operation, "sync_state.list_all")

    def _record_to_state(self, record: SyncStateRecord) -> SyncState:
        return SyncState.model_validate(record.model_dump())
