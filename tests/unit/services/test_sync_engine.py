"""Unit tests for the SyncEngine.

The engine runs against real SQLite and ephemeral ChromaDB storage; only the
source adapter and the worker launcher are faked.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from convosync.config import Settings
from convosync.exceptions import SyncLockUnavailableError, UnknownSourceError
from convosync.models.conversation import Conversation, Message, NormalizedConversation, SourceRef, ToolCall
from convosync.models.enums import EmbeddingStatus, MessageRole, SyncPhase
from convosync.models.ids import create_conversation_id
from convosync.models.progress import SyncProgress
from convosync.models.source import ConversationTimestamp, SourceLocation
from convosync.services.factory import create_test_sync_engine
from convosync.services.sync_engine import SyncEngine
from convosync.services.sync_lock import SyncLock

_T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeSource:
    """In-memory adapter: workspaces of conversations with a bumpable mtime."""

    name = "fake"

    def __init__(self) -> None:
        self.workspaces: dict[str, dict[str, dict[str, Any]]] = {}
        self.mtimes: dict[str, float] = {}
        self.failing: set[str] = set()
        self.extract_calls = 0

    def put(self, workspace: str, native_id: str, messages: int, updated_at: datetime = _T0) -> None:
        self.workspaces.setdefault(workspace, {})[native_id] = {
            "id": native_id,
            "messages": messages,
            "updated_at": updated_at,
        }
        self.touch(workspace)

    def remove(self, workspace: str, native_id: str) -> None:
        del self.workspaces[workspace][native_id]
        self.touch(workspace)

    def touch(self, workspace: str) -> None:
        self.mtimes[workspace] = self.mtimes.get(workspace, 0.0) + 1.0

    def location(self, workspace: str) -> SourceLocation:
        return SourceLocation(
            source=self.name,
            workspace_path=workspace,
            db_path=f"/fake{workspace}",
            mtime=self.mtimes[workspace],
        )

    async def detect(self) -> bool:
        return True

    async def discover(self) -> list[SourceLocation]:
        return [self.location(workspace) for workspace in sorted(self.workspaces)]

    async def get_conversation_timestamps(self, location: SourceLocation) -> list[ConversationTimestamp]:
        return [
            ConversationTimestamp(original_id=raw["id"], last_updated_at=raw["updated_at"])
            for raw in self.workspaces[location.workspace_path].values()
        ]

    async def extract(self, location: SourceLocation, on_progress=None) -> list[dict[str, Any]]:
        self.extract_calls += 1
        if location.workspace_path in self.failing:
            raise RuntimeError(f"cannot read {location.db_path}")
        return list(self.workspaces[location.workspace_path].values())

    def normalize(self, raw: dict[str, Any], location: SourceLocation) -> NormalizedConversation:
        conversation_id = create_conversation_id(self.name, raw["id"])
        messages = [
            Message(
                id=f"{conversation_id}:{index}",
                conversation_id=conversation_id,
                role=MessageRole.USER if index % 2 == 0 else MessageRole.ASSISTANT,
                content=f"{raw['id']} message {index}",
                timestamp=raw["updated_at"],
                message_index=index,
            )
            for index in range(raw["messages"])
        ]
        tool_calls = [
            ToolCall(
                id=f"{message.id}:tool",
                message_id=message.id,
                conversation_id=conversation_id,
                type="Read",
                file_path=f"{location.workspace_path}/main.py",
            )
            for message in messages
            if message.role == MessageRole.ASSISTANT
        ]
        conversation = Conversation(
            id=conversation_id,
            source=self.name,
            workspace_path=location.workspace_path,
            created_at=raw["updated_at"],
            updated_at=raw["updated_at"],
            message_count=len(messages),
            source_ref=SourceRef(
                source=self.name,
                original_id=raw["id"],
                db_path=location.db_path,
                workspace_path=location.workspace_path,
            ),
        )
        return NormalizedConversation(conversation=conversation, messages=messages, tool_calls=tool_calls)

    def get_deep_link(self, ref: SourceRef) -> str | None:
        return None


class BrokenSource(FakeSource):
    name = "broken"

    async def detect(self) -> bool:
        raise RuntimeError("permission denied")


class FakeLauncher:
    """Records worker supervision calls instead of forking."""

    def __init__(self, running: bool = False) -> None:
        self.running = running
        self.kills = 0
        self.spawns = 0

    def is_worker_already_running(self) -> bool:
        return self.running

    async def spawn_background_worker(self, retries: int = 3, verify_delay: float = 1.5) -> bool:
        self.spawns += 1
        return True

    def kill_running_worker(self) -> bool:
        self.kills += 1
        return False


class FailingTitleGenerator:
    async def generate(self, conversation: Conversation, messages: list[Message]) -> str | None:
        raise RuntimeError("title service unavailable")


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def settings() -> Settings:
    return Settings(embedding_dimensions=4, worker_verify_delay_seconds=0)


@pytest.fixture
async def engine(tmp_path: Path, source: FakeSource, launcher: FakeLauncher, settings: Settings) -> SyncEngine:
    engine = await create_test_sync_engine(tmp_path, [source], launcher=launcher, settings=settings)
    yield engine
    await engine.close()


async def _counts(engine: SyncEngine) -> tuple[int, int, int]:
    return (
        await engine._conversations.count(),
        await engine._children.messages.count(),
        await engine._children.tool_calls.count(),
    )


class TestFirstSync:
    async def test_indexes_every_conversation(self, engine: SyncEngine, source: FakeSource) -> None:
        for native_id in ("a", "b", "c"):
            source.put("/work/app", native_id, messages=4)

        result = await engine.run()

        assert result.phase == SyncPhase.DONE
        assert result.conversations_found == 3
        assert result.conversations_indexed == 3
        assert result.messages_indexed == 12
        assert result.projects_found == 1
        assert await _counts(engine) == (3, 12, 6)
        states = await engine._sync_state.list_all()
        assert [(state.db_path, state.last_mtime) for state in states] == [("/fake/work/app", 3.0)]

    async def test_emits_phases_in_order(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=2)
        snapshots: list[SyncProgress] = []

        await engine.run(on_progress=snapshots.append)

        phases = [snapshot.phase for snapshot in snapshots]
        ordered = [phase for index, phase in enumerate(phases) if index == 0 or phases[index - 1] != phase]
        assert ordered == [
            SyncPhase.DETECTING,
            SyncPhase.DISCOVERING,
            SyncPhase.EXTRACTING,
            SyncPhase.SYNCING,
            SyncPhase.INDEXING,
            SyncPhase.DONE,
        ]

    async def test_starts_embedding_worker_for_pending_messages(
        self, engine: SyncEngine, source: FakeSource, launcher: FakeLauncher
    ) -> None:
        source.put("/work/app", "a", messages=3)

        result = await engine.run()

        assert result.embedding_started
        assert launcher.spawns == 1
        progress = engine._tracker.read_progress()
        assert progress.status == EmbeddingStatus.IDLE
        assert progress.total == 3

    async def test_running_worker_is_not_respawned(
        self, tmp_path: Path, source: FakeSource, settings: Settings
    ) -> None:
        launcher = FakeLauncher(running=True)
        source.put("/work/app", "a", messages=2)

        async with await create_test_sync_engine(tmp_path, [source], launcher=launcher, settings=settings) as engine:
            result = await engine.run()

        assert result.embedding_started
        assert launcher.spawns == 0

    async def test_empty_conversations_are_skipped(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=2)
        source.put("/work/app", "empty", messages=0)

        result = await engine.run()

        assert result.conversations_found == 2
        assert result.conversations_indexed == 1
        assert result.conversations_skipped == 1
        assert await engine._conversations.get_existing_ids([create_conversation_id("fake", "empty")]) == set()

    async def test_releases_lock(self, engine: SyncEngine, source: FakeSource, tmp_path: Path) -> None:
        source.put("/work/app", "a", messages=2)

        await engine.run()

        assert not (tmp_path / "sync.lock").exists()


class TestIncrementalSync:
    async def test_rerun_without_changes_writes_nothing(
        self, engine: SyncEngine, source: FakeSource, launcher: FakeLauncher
    ) -> None:
        for native_id in ("a", "b", "c"):
            source.put("/work/app", native_id, messages=4)
        await engine.run()
        extract_calls = source.extract_calls
        kills = launcher.kills

        result = await engine.run()

        assert result.messages_indexed == 0
        assert result.conversations_indexed == 0
        assert source.extract_calls == extract_calls
        assert launcher.kills == kills
        assert await _counts(engine) == (3, 12, 6)

    async def test_touched_but_unchanged_location_is_fast_forwarded(
        self, engine: SyncEngine, source: FakeSource
    ) -> None:
        source.put("/work/app", "a", messages=2)
        await engine.run()
        extract_calls = source.extract_calls
        source.touch("/work/app")

        await engine.run()

        assert source.extract_calls == extract_calls
        state = (await engine._sync_state.list_all())[0]
        assert state.last_mtime == source.mtimes["/work/app"]

    async def test_grown_conversation_replaces_children(
        self, engine: SyncEngine, source: FakeSource, launcher: FakeLauncher
    ) -> None:
        source.put("/work/app", "a", messages=5)
        await engine.run()
        kills = launcher.kills

        source.put("/work/app", "a", messages=8, updated_at=_T0 + timedelta(minutes=5))
        result = await engine.run()

        assert result.conversations_indexed == 1
        assert result.messages_indexed == 8
        assert launcher.kills == kills + 1
        assert await _counts(engine) == (1, 8, 4)
        stored = await engine._conversations.find_by_id(create_conversation_id("fake", "a"))
        assert stored.message_count == 8
        assert stored.updated_at == _T0 + timedelta(minutes=5)

    async def test_newer_timestamp_with_same_count_is_rewritten(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=4)
        await engine.run()

        source.put("/work/app", "a", messages=4, updated_at=_T0 + timedelta(hours=1))
        result = await engine.run()

        assert result.conversations_indexed == 1
        assert await _counts(engine) == (1, 4, 2)

    async def test_shrunk_conversation_keeps_stored_rows(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=5)
        await engine.run()

        source.put("/work/app", "a", messages=3)
        result = await engine.run()

        assert result.conversations_indexed == 0
        assert await _counts(engine) == (1, 5, 2)

    async def test_new_conversation_alongside_unchanged_ones(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=2)
        await engine.run()

        source.put("/work/app", "b", messages=6)
        result = await engine.run()

        assert result.conversations_found == 2
        assert result.conversations_indexed == 1
        assert result.messages_indexed == 6
        assert await _counts(engine) == (2, 8, 4)

    async def test_interrupted_write_is_repaired_without_duplicates(
        self, engine: SyncEngine, source: FakeSource
    ) -> None:
        source.put("/work/app", "a", messages=6)
        normalized = source.normalize(source.workspaces["/work/app"]["a"], source.location("/work/app"))
        # Parent landed, children only partly
        await engine._conversations.bulk_upsert([normalized.conversation])
        await engine._children.messages.bulk_insert_new(normalized.messages[:2], set())

        result = await engine.run()
        await engine.run()

        assert result.messages_indexed == 4
        assert await _counts(engine) == (1, 6, 3)
        ids = await engine._children.messages.list_ids()
        assert len(ids) == len(set(ids))

    async def test_needs_sync_tracks_checkpoints(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=2)
        assert await engine.needs_sync()

        await engine.run()
        assert not await engine.needs_sync()

        source.put("/work/app", "b", messages=2)
        assert await engine.needs_sync()


class TestForceSync:
    async def test_force_replaces_existing_rows(
        self, engine: SyncEngine, source: FakeSource, launcher: FakeLauncher
    ) -> None:
        source.put("/work/app", "a", messages=10)
        await engine.run()
        kills = launcher.kills

        result = await engine.run(force=True)

        assert result.conversations_indexed == 1
        assert result.messages_indexed == 10
        assert launcher.kills == kills + 1
        assert await _counts(engine) == (1, 10, 5)

    async def test_force_drops_conversations_gone_from_source(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=2)
        source.put("/work/app", "b", messages=2)
        await engine.run()

        source.remove("/work/app", "b")
        await engine.run(force=True)

        assert await _counts(engine) == (1, 2, 1)

    async def test_force_leaves_other_workspaces_alone(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=2)
        source.put("/work/other", "b", messages=4)
        await engine.run()

        source.failing.add("/work/other")
        await engine.run(force=True)

        assert await _counts(engine) == (2, 6, 3)


class TestScalarIndexRebuild:
    @pytest.fixture
    def settings(self) -> Settings:
        return Settings(embedding_dimensions=4, worker_verify_delay_seconds=0, scalar_index_threshold=5)

    @pytest.fixture
    def rebuilds(self, engine: SyncEngine, monkeypatch: pytest.MonkeyPatch) -> list[int]:
        calls: list[int] = []
        original = engine._index_maintainer.rebuild_scalar_indexes

        async def counting_rebuild() -> None:
            calls.append(1)
            await original()

        monkeypatch.setattr(engine._index_maintainer, "rebuild_scalar_indexes", counting_rebuild)
        return calls

    async def test_below_threshold_accumulates_without_rebuild(
        self, engine: SyncEngine, source: FakeSource, rebuilds: list[int]
    ) -> None:
        source.put("/work/app", "a", messages=2)

        await engine.run()

        assert rebuilds == []
        assert engine._sync_cache.load().messages_since_last_index == 2

    async def test_crossing_threshold_rebuilds_and_resets_counter(
        self, engine: SyncEngine, source: FakeSource, rebuilds: list[int]
    ) -> None:
        source.put("/work/app", "a", messages=2)
        await engine.run()

        source.put("/work/app", "b", messages=4)
        await engine.run()

        assert rebuilds == [1]
        assert engine._sync_cache.load().messages_since_last_index == 0

    async def test_force_rebuilds_regardless_of_counter(
        self, engine: SyncEngine, source: FakeSource, rebuilds: list[int]
    ) -> None:
        source.put("/work/app", "a", messages=2)
        await engine.run()
        assert engine._sync_cache.load().messages_since_last_index == 2

        await engine.run(force=True)

        assert rebuilds == [1]
        assert engine._sync_cache.load().messages_since_last_index == 0


class TestFailureHandling:
    async def test_extraction_failure_is_isolated(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=2)
        source.put("/work/broken", "b", messages=2)
        source.failing.add("/work/broken")

        result = await engine.run()

        assert result.phase == SyncPhase.DONE
        assert result.conversations_indexed == 1
        assert result.projects_found == 2
        assert result.projects_processed == 2
        states = await engine._sync_state.list_all()
        assert [state.workspace_path for state in states] == ["/work/app"]

    async def test_failed_location_is_retried_next_run(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/broken", "b", messages=2)
        source.failing.add("/work/broken")
        await engine.run()

        source.failing.clear()
        result = await engine.run()

        assert result.conversations_indexed == 1

    async def test_failing_adapter_detection_is_isolated(
        self, tmp_path: Path, source: FakeSource, launcher: FakeLauncher, settings: Settings
    ) -> None:
        source.put("/work/app", "a", messages=2)

        async with await create_test_sync_engine(
            tmp_path, [BrokenSource(), source], launcher=launcher, settings=settings
        ) as engine:
            result = await engine.run()

        assert result.conversations_indexed == 1

    async def test_unknown_source_is_rejected(self, engine: SyncEngine) -> None:
        with pytest.raises(UnknownSourceError):
            await engine.run(sources=["missing"])

    async def test_held_lock_reports_error_phase(
        self, tmp_path: Path, source: FakeSource, launcher: FakeLauncher, settings: Settings
    ) -> None:
        lock_path = tmp_path / "sync.lock"
        holder = SyncLock(lock_path, get_pid=lambda: 4242, is_alive=lambda pid: True)
        assert holder.acquire()
        source.put("/work/app", "a", messages=2)
        snapshots: list[SyncProgress] = []

        async with await create_test_sync_engine(
            tmp_path,
            [source],
            launcher=launcher,
            lock=SyncLock(lock_path, is_alive=lambda pid: True),
            settings=settings,
        ) as engine:
            with pytest.raises(SyncLockUnavailableError):
                await engine.run(on_progress=snapshots.append)

        assert snapshots[-1].phase == SyncPhase.ERROR
        assert "already running" in snapshots[-1].error
        assert source.extract_calls == 0
        assert holder.read().pid == 4242

    async def test_auxiliary_failures_do_not_fail_sync(
        self, tmp_path: Path, source: FakeSource, launcher: FakeLauncher, settings: Settings
    ) -> None:
        billing_calls = 0

        async def billing() -> None:
            nonlocal billing_calls
            billing_calls += 1
            raise RuntimeError("billing endpoint down")

        source.put("/work/app", "a", messages=2)

        async with await create_test_sync_engine(
            tmp_path,
            [source],
            launcher=launcher,
            settings=settings.model_copy(update={"enrich_titles": True}),
            title_generator=FailingTitleGenerator(),
            billing=billing,
        ) as engine:
            result = await engine.run()

        assert result.phase == SyncPhase.DONE
        assert billing_calls == 1


class TestEnrichment:
    async def test_untitled_conversations_get_titles(
        self, tmp_path: Path, source: FakeSource, launcher: FakeLauncher, settings: Settings
    ) -> None:
        source.put("/work/app", "a", messages=2)

        async with await create_test_sync_engine(
            tmp_path,
            [source],
            launcher=launcher,
            settings=settings.model_copy(update={"enrich_titles": True}),
        ) as engine:
            snapshots: list[SyncProgress] = []
            await engine.run(on_progress=snapshots.append)
            stored = await engine._conversations.find_by_id(create_conversation_id("fake", "a"))

        assert stored.title == "a message 0"
        assert SyncPhase.ENRICHING in [snapshot.phase for snapshot in snapshots]


class TestStatus:
    async def test_status_reports_store_and_embeddings(self, engine: SyncEngine, source: FakeSource) -> None:
        source.put("/work/app", "a", messages=3)
        await engine.run()

        status = await engine.status()

        assert status.conversations == 1
        assert status.messages == 3
        assert status.pending_embeddings == 3
        assert status.last_sync_at is not None
        assert status.embedding.status == EmbeddingStatus.IDLE
        assert not status.needs_sync
