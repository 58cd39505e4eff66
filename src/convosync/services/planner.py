"""Change detection: decide which source locations need extraction."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from convosync.adapters.base import SourceAdapter, SupportsConversationTimestamps
from convosync.models.source import SourceLocation, SyncState
from convosync.services.repository import ConversationRepository
from convosync.services.sync_state import SyncStateStore


@dataclass(frozen=True)
class PlannedLocation:
    adapter: SourceAdapter
    location: SourceLocation


@dataclass
class SyncPlan:
    to_extract: list[PlannedLocation] = field(default_factory=list)
    skipped: list[PlannedLocation] = field(default_factory=list)
    fast_forwarded: list[PlannedLocation] = field(default_factory=list)

    @property
    def locations_found(self) -> int:
        return len(self.to_extract) + len(self.skipped) + len(self.fast_forwarded)


class ChangePlanner:
    """Runs detection, discovery and the per-location change checks.

    Every adapter call is isolated: a failing adapter is logged and excluded,
    never allowed to abort the run.
    """

    def __init__(
        self,
        sync_state: SyncStateStore,
        conversations: ConversationRepository,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._sync_state = sync_state
        self._conversations = conversations
        self._logger = logger or structlog.get_logger(__name__)

    async def detect(self, adapters: list[SourceAdapter]) -> list[SourceAdapter]:
        results = await asyncio.gather(*(self._detect_one(adapter) for adapter in adapters))
        return [adapter for adapter, available in zip(adapters, results) if available]

    async def discover(self, adapters: list[SourceAdapter]) -> list[PlannedLocation]:
        results = await asyncio.gather(*(self._discover_one(adapter) for adapter in adapters))
        return [
            PlannedLocation(adapter=adapter, location=location)
            for adapter, locations in zip(adapters, results)
            for location in locations
        ]

    async def plan(self, discovered: list[PlannedLocation], force: bool = False) -> SyncPlan:
        """Split discovered locations into extract, skip and fast-forward sets.

        Fast-forwarded locations had a newer mtime but an unchanged timestamp
        probe; their checkpoint is advanced here so the next run skips them on
        mtime alone.
        """
        plan = SyncPlan()
        for planned in discovered:
            if force:
                plan.to_extract.append(planned)
                continue

            location = planned.location
            state = await self._sync_state.get(location.source, location.db_path)
            if state is not None and state.last_mtime >= location.mtime:
                self._logger.debug("location_skipped_unchanged", source=location.source, db_path=location.db_path)
                plan.skipped.append(planned)
                continue

            if state is not None and not await self._probe_reports_change(planned):
                await self._sync_state.set(
                    SyncState(
                        source=location.source,
                        workspace_path=location.workspace_path,
                        db_path=location.db_path,
                        last_synced_at=datetime.now(timezone.utc),
                        last_mtime=location.mtime,
                    )
                )
                self._logger.debug("location_fast_forwarded", source=location.source, db_path=location.db_path)
                plan.fast_forwarded.append(planned)
                continue

            plan.to_extract.append(planned)

        self._logger.info(
            "sync_planned",
            to_extract=len(plan.to_extract),
            skipped=len(plan.skipped),
            fast_forwarded=len(plan.fast_forwarded),
            force=force,
        )
        return plan

    async def _detect_one(self, adapter: SourceAdapter) -> bool:
        try:
            return bool(await adapter.detect())
        except Exception as exc:
            self._logger.warning("adapter_detect_failed", source=adapter.name, error=str(exc))
            return False

    async def _discover_one(self, adapter: SourceAdapter) -> list[SourceLocation]:
        try:
            return list(await adapter.discover())
        except Exception as exc:
            self._logger.warning("adapter_discover_failed", source=adapter.name, error=str(exc))
            return []

    async def _probe_reports_change(self, planned: PlannedLocation) -> bool:
        adapter, location = planned.adapter, planned.location
        if not isinstance(adapter, SupportsConversationTimestamps):
            return True

        try:
            probe = await adapter.get_conversation_timestamps(location)
        except Exception as exc:
            self._logger.warning("timestamp_probe_failed", source=location.source, error=str(exc))
            return True
        if probe is None:
            return True

        stored = await self._conversations.get_timestamps_by_source(location.source, location.db_path)
        probed_ids: set[str] = set()
        for item in probe:
            probed_ids.add(item.original_id)
            if item.original_id not in stored or stored[item.original_id] != item.last_updated_at:
                return True
        return bool(set(stored) - probed_ids)
