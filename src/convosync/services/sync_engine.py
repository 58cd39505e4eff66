"""Sync engine orchestrating detection, extraction, reconciliation and indexing.

One run moves through the phases detecting, discovering, extracting, syncing,
indexing, optionally enriching, and finally done or error. The engine holds
the cross-process sync lock for the whole run and releases it on every exit
path.

Re-running after any interruption is safe: conversation ids are derived from
the source's own ids, every child insert skips ids already stored, and a
location's checkpoint only advances once its writes have landed.
"""

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Self

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from convosync.adapters.registry import AdapterRegistry
from convosync.exceptions import SyncLockUnavailableError
from convosync.models.conversation import NormalizedConversation
from convosync.models.enums import EmbeddingStatus, SyncPhase
from convosync.models.progress import EmbeddingProgress, SyncProgress, SyncStatus
from convosync.models.source import ExtractionProgress, SyncState
from convosync.services.auxiliary import BillingReconciler, run_auxiliary_step
from convosync.services.embeddings import EmbeddingTracker
from convosync.services.enrichment import TitleEnricher
from convosync.services.index_maintainer import IndexMaintainer, SyncCache
from convosync.services.planner import ChangePlanner, PlannedLocation
from convosync.services.repository import ChildRepositories, ConversationRepository
from convosync.services.sync_lock import SyncLock
from convosync.services.sync_state import SyncStateStore
from convosync.services.worker_launcher import WorkerLauncher

ProgressListener = Callable[[SyncProgress], None]


class SyncEngine:
    """Runs incremental or forced syncs across every registered adapter.

    Collaborators are injected; see ``services.factory`` for the production
    and test wiring.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        planner: ChangePlanner,
        conversations: ConversationRepository,
        children: ChildRepositories,
        sync_state: SyncStateStore,
        index_maintainer: IndexMaintainer,
        sync_cache: SyncCache,
        tracker: EmbeddingTracker,
        launcher: WorkerLauncher,
        lock: SyncLock,
        extraction_concurrency: int = 4,
        scalar_index_threshold: int = 100,
        worker_spawn_retries: int = 3,
        worker_verify_delay: float = 1.5,
        enricher: TitleEnricher | None = None,
        billing: BillingReconciler | None = None,
        engine: AsyncEngine | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._registry = registry
        self._planner = planner
        self._conversations = conversations
        self._children = children
        self._sync_state = sync_state
        self._index_maintainer = index_maintainer
        self._sync_cache = sync_cache
        self._tracker = tracker
        self._launcher = launcher
        self._lock = lock
        self._extraction_concurrency = extraction_concurrency
        self._scalar_index_threshold = scalar_index_threshold
        self._worker_spawn_retries = worker_spawn_retries
        self._worker_verify_delay = worker_verify_delay
        self._enricher = enricher
        self._billing = billing
        self._engine = engine
        self._logger = logger or structlog.get_logger(__name__)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def needs_sync(self) -> bool:
        """Cheap check whether any detected location moved past its checkpoint.

        Errors count as "needs sync".
        """
        try:
            for adapter in self._registry:
                if not await adapter.detect():
                    continue
                for location in await adapter.discover():
                    state = await self._sync_state.get(location.source, location.db_path)
                    if state is None or state.last_mtime < location.mtime:
                        return True
        except Exception as exc:
            self._logger.warning("needs_sync_check_failed", error=str(exc))
            return True
        return False

    async def status(self) -> SyncStatus:
        return SyncStatus(
            last_sync_at=self._sync_cache.load().last_sync_at,
            conversations=await self._conversations.count(),
            messages=await self._children.messages.count(),
            pending_embeddings=await self._tracker.count_pending(),
            embedding=self._tracker.read_progress(),
            needs_sync=await self.needs_sync(),
        )

    async def run(
        self,
        force: bool = False,
        sources: Sequence[str] | None = None,
        on_progress: ProgressListener | None = None,
    ) -> SyncProgress:
        """Run one sync.

        Args:
            force: Discard checkpoints and rebuild every affected workspace.
            sources: Restrict the run to these adapter names.
            on_progress: Receives a snapshot at every phase transition.

        Returns:
            The final progress snapshot, in the ``done`` phase.

        Raises:
            UnknownSourceError: A requested source has no adapter.
            SyncLockUnavailableError: Another sync holds the lock.
        """
        adapters = self._registry.select(sources)
        progress = SyncProgress()

        def emit() -> None:
            if on_progress is not None:
                on_progress(progress.model_copy())

        if not self._lock.acquire():
            error = SyncLockUnavailableError(str(self._lock.path))
            progress.phase = SyncPhase.ERROR
            progress.error = str(error)
            emit()
            raise error

        self._logger.info("sync_started", force=force, sources=[adapter.name for adapter in adapters])
        try:
            await self._run_locked(adapters, force, progress, emit)
        except Exception as exc:
            progress.phase = SyncPhase.ERROR
            progress.error = str(exc)
            emit()
            self._logger.error("sync_failed", error=str(exc))
            raise
        finally:
            self._lock.release()

        self._logger.info(
            "sync_completed",
            conversations_found=progress.conversations_found,
            conversations_indexed=progress.conversations_indexed,
            conversations_skipped=progress.conversations_skipped,
            messages_indexed=progress.messages_indexed,
        )
        return progress

    async def _run_locked(self, adapters, force: bool, progress: SyncProgress, emit: Callable[[], None]) -> None:
        self._tracker.reset_error_if_needed()

        progress.phase = SyncPhase.DETECTING
        emit()
        detected = await self._planner.detect(adapters)

        progress.phase = SyncPhase.DISCOVERING
        emit()
        discovered = await self._planner.discover(detected)
        plan = await self._planner.plan(discovered, force=force)

        progress.phase = SyncPhase.EXTRACTING
        progress.projects_found = len(plan.to_extract)
        emit()
        extracted, synced_locations = await self._extract_all(plan.to_extract, progress, emit)

        progress.conversations_found = len(extracted)

        progress.phase = SyncPhase.SYNCING
        emit()

        candidate_ids = [item.conversation.id for item in extracted]
        cleared_ids: set[str] = set()
        repairable: list[NormalizedConversation] = []
        if force:
            to_write = extracted
            if synced_locations or extracted:
                self._launcher.kill_running_worker()
                cleared_ids = await self._clear_for_force(extracted, synced_locations, candidate_ids)
        else:
            metadata = await self._conversations.get_existing_conversation_metadata(candidate_ids)
            new: list[NormalizedConversation] = []
            updated: list[NormalizedConversation] = []
            for item in extracted:
                conversation = item.conversation
                stored = metadata.get(conversation.id)
                if stored is None:
                    new.append(item)
                elif conversation.message_count > stored.message_count or _is_newer(
                    conversation.updated_at, stored.updated_at
                ):
                    updated.append(item)
                elif (conversation.message_count, conversation.updated_at) == stored:
                    # Same snapshot as stored: only rows lost to an interrupted write can be missing
                    repairable.append(item)
            self._logger.info(
                "conversations_classified",
                new=len(new),
                updated=len(updated),
                unchanged=len(extracted) - len(new) - len(updated),
            )
            to_write = new + updated

            if to_write:
                self._launcher.kill_running_worker()
            updated_ids = [item.conversation.id for item in updated if item.messages]
            if updated_ids:
                await self._clear_children(updated_ids)
                cleared_ids.update(updated_ids)

        writable = [item for item in to_write if item.messages]
        progress.conversations_skipped = len(to_write) - len(writable)
        inserted_messages = await self._write(writable, repairable)
        progress.conversations_indexed = len(writable)
        progress.messages_indexed = inserted_messages
        emit()

        await self._checkpoint(synced_locations)

        rebuilt = False
        if inserted_messages > 0 or cleared_ids:
            progress.phase = SyncPhase.INDEXING
            emit()
            await self._index_maintainer.rebuild_fts_index()
            pending_total = self._sync_cache.load().messages_since_last_index + inserted_messages
            if force or pending_total >= self._scalar_index_threshold:
                await self._index_maintainer.rebuild_scalar_indexes()
                rebuilt = True

        await self._ensure_embeddings(progress)

        if self._billing is not None:
            await run_auxiliary_step("billing_reconciliation", self._billing, logger=self._logger)

        if self._enricher is not None:
            progress.phase = SyncPhase.ENRICHING
            emit()
            enricher = self._enricher

            def on_enrichment(step: ExtractionProgress) -> None:
                progress.enrichment_progress = step
                emit()

            await run_auxiliary_step(
                "title_enrichment",
                lambda: enricher.enrich(on_progress=on_enrichment),
                logger=self._logger,
            )

        self._sync_cache.update(inserted_messages, rebuilt=rebuilt)
        progress.phase = SyncPhase.DONE
        emit()

    async def _extract_all(
        self,
        locations: list[PlannedLocation],
        progress: SyncProgress,
        emit: Callable[[], None],
    ) -> tuple[list[NormalizedConversation], list[PlannedLocation]]:
        """Extract in fixed-size batches.

        Returns:
            Every normalized conversation, plus the locations whose extraction
            succeeded (only those get checkpointed).
        """
        extracted: list[NormalizedConversation] = []
        succeeded: list[PlannedLocation] = []
        size = self._extraction_concurrency
        for start in range(0, len(locations), size):
            batch = locations[start : start + size]
            results = await asyncio.gather(*(self._extract_one(planned, progress, emit) for planned in batch))
            for planned, result in zip(batch, results):
                progress.projects_processed += 1
                if result is None:
                    continue
                succeeded.append(planned)
                extracted.extend(result)
            emit()
        return extracted, succeeded

    async def _extract_one(
        self,
        planned: PlannedLocation,
        progress: SyncProgress,
        emit: Callable[[], None],
    ) -> list[NormalizedConversation] | None:
        adapter, location = planned.adapter, planned.location
        progress.current_source = location.source
        progress.current_project = location.workspace_path

        def on_extract(step: ExtractionProgress) -> None:
            progress.extraction_progress = step
            emit()

        try:
            raw_records = await adapter.extract(location, on_extract)
        except Exception as exc:
            self._logger.warning(
                "extraction_failed",
                source=location.source,
                db_path=location.db_path,
                error=str(exc),
            )
            return None

        normalized: list[NormalizedConversation] = []
        for raw in raw_records:
            try:
                normalized.append(adapter.normalize(raw, location))
            except Exception as exc:
                self._logger.warning("normalize_failed", source=location.source, error=str(exc))
        return normalized

    async def _clear_for_force(
        self,
        extracted: list[NormalizedConversation],
        locations: list[PlannedLocation],
        candidate_ids: list[str],
    ) -> set[str]:
        pairs = {(planned.location.source, planned.location.workspace_path) for planned in locations}
        pairs.update(
            (item.conversation.source, item.conversation.workspace_path)
            for item in extracted
            if item.conversation.workspace_path
        )

        cleared = set(candidate_ids)
        for source, workspace_path in sorted(pairs):
            cleared.update(await self._conversations.delete_by_source(source, workspace_path))

        await self._clear_children(sorted(cleared))
        self._logger.info("force_cleared", workspaces=len(pairs), conversations=len(cleared))
        return cleared

    async def _clear_children(self, conversation_ids: list[str]) -> None:
        await self._tracker.discard_vectors(conversation_ids)
        await asyncio.gather(
            *(repository.delete_by_conversation_ids(conversation_ids) for _, repository in self._children.items())
        )

    async def _write(
        self,
        writable: list[NormalizedConversation],
        repairable: list[NormalizedConversation] | None = None,
    ) -> int:
        """Upsert parents, then insert missing child rows table by table.

        ``repairable`` conversations are already stored with an identical
        snapshot; only their missing child rows are inserted.

        Returns:
            Number of message rows inserted.
        """
        if writable:
            await self._conversations.bulk_upsert([item.conversation for item in writable])
        sources = writable + (repairable or [])
        if not sources:
            return 0

        async def insert_table(field_name: str, repository) -> int:
            rows = [row for item in sources for row in getattr(item, field_name)]
            if not rows:
                return 0
            existing = await repository.get_existing_ids(row.id for row in rows)
            return await repository.bulk_insert_new(rows, existing)

        tables = self._children.items()
        counts = await asyncio.gather(*(insert_table(name, repository) for name, repository in tables))
        inserted = dict(zip((name for name, _ in tables), counts))
        self._logger.info("rows_written", conversations=len(writable), **inserted)
        return inserted["messages"]

    async def _checkpoint(self, locations: list[PlannedLocation]) -> None:
        now = datetime.now(timezone.utc)
        for planned in locations:
            location = planned.location
            await self._sync_state.set(
                SyncState(
                    source=location.source,
                    workspace_path=location.workspace_path,
                    db_path=location.db_path,
                    last_synced_at=now,
                    last_mtime=location.mtime,
                )
            )

    async def _ensure_embeddings(self, progress: SyncProgress) -> None:
        pending = await self._tracker.count_pending()
        if pending == 0:
            return
        if self._launcher.is_worker_already_running():
            progress.embedding_started = True
            return

        self._tracker.set_progress(EmbeddingProgress(status=EmbeddingStatus.IDLE, total=pending, completed=0))
        progress.embedding_started = await self._launcher.spawn_background_worker(
            retries=self._worker_spawn_retries,
            verify_delay=self._worker_verify_delay,
        )
        self._logger.info("embeddings_pending", pending=pending, worker_started=progress.embedding_started)


def _is_newer(candidate: datetime | None, stored: datetime | None) -> bool:
    if candidate is None:
        return False
    if stored is None:
        return True
    return candidate > stored
