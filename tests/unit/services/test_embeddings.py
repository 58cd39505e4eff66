"""Unit tests for embedding bookkeeping and the embedding worker."""

from pathlib import Path
from uuid import uuid4

import chromadb
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from convosync.models.conversation import Message
from convosync.models.enums import EmbeddingStatus, MessageRole
from convosync.models.progress import EmbeddingProgress
from convosync.services.embeddings import EmbeddingTracker, EmbeddingWorker, is_pending_vector
from convosync.services.repository import (
    ChildRepository,
    create_async_engine_from_path,
    create_child_repositories,
    initialize_schema,
)
from convosync.services.vector_store import VectorStore

DIMENSIONS = 4


class FakeEmbed:
    """Deterministic embedder recording every batch it receives."""

    def __init__(self, dim: int = DIMENSIONS, fail: bool = False) -> None:
        self.dim = dim
        self.fail = fail
        self.batches: list[list[str]] = []

    def __call__(self, texts: list[str]) -> list[list[float]]:
        if self.fail:
            raise RuntimeError("model unavailable")
        self.batches.append(texts)
        return [[len(text) * 0.01 + i * 0.1 + 0.1 for i in range(self.dim)] for text in texts]


def _make_message(conversation_id: str, index: int) -> Message:
    return Message(
        id=f"{conversation_id}:m{index}",
        conversation_id=conversation_id,
        role=MessageRole.USER,
        content=f"message {index}",
        message_index=index,
    )


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncEngine:
    engine = create_async_engine_from_path(str(tmp_path / "test.db"))
    await initialize_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def messages(engine: AsyncEngine) -> ChildRepository[Message]:
    return create_child_repositories(engine).messages


@pytest.fixture
async def vector_store() -> VectorStore:
    store = VectorStore(client=chromadb.EphemeralClient(), collection_name=f"test_{uuid4().hex[:8]}")
    await store.initialize()
    return store


@pytest.fixture
def tracker(messages: ChildRepository[Message], vector_store: VectorStore, tmp_path: Path) -> EmbeddingTracker:
    return EmbeddingTracker(
        messages=messages,
        vector_store=vector_store,
        progress_path=tmp_path / "embedding-progress.json",
        dimensions=DIMENSIONS,
    )


@pytest.mark.parametrize(
    ("vector", "pending"),
    [
        (None, True),
        ([0.1, 0.2], True),
        ([0.0, 0.0, 0.0, 0.0], True),
        ([0.0, 0.5, 0.0, 0.0], False),
    ],
)
def test_is_pending_vector(vector: list[float] | None, pending: bool) -> None:
    assert is_pending_vector(vector, DIMENSIONS) is pending


class TestEmbeddingTracker:
    async def test_messages_without_vectors_are_pending(
        self, tracker: EmbeddingTracker, messages: ChildRepository[Message]
    ) -> None:
        await messages.bulk_insert_new([_make_message("c1", i) for i in range(3)], set())

        assert await tracker.count_pending() == 3

    async def test_zero_vectors_are_pending(
        self, tracker: EmbeddingTracker, messages: ChildRepository[Message], vector_store: VectorStore
    ) -> None:
        await messages.bulk_insert_new([_make_message("c1", 0), _make_message("c1", 1)], set())
        await vector_store.add_embeddings(
            ids=["c1:m0", "c1:m1"],
            embeddings=[[0.0] * DIMENSIONS, [0.3] * DIMENSIONS],
        )

        assert await tracker.find_pending_ids() == ["c1:m0"]

    async def test_discard_vectors_for_conversations(
        self, tracker: EmbeddingTracker, messages: ChildRepository[Message], vector_store: VectorStore
    ) -> None:
        await messages.bulk_insert_new([_make_message("c1", 0), _make_message("c2", 0)], set())
        await vector_store.add_embeddings(ids=["c1:m0", "c2:m0"], embeddings=[[0.3] * DIMENSIONS] * 2)

        discarded = await tracker.discard_vectors(["c1"])

        assert discarded == 1
        assert set(await vector_store.get_embeddings(["c1:m0", "c2:m0"])) == {"c2:m0"}
        assert await tracker.find_pending_ids() == ["c1:m0"]

    def test_progress_round_trip(self, tracker: EmbeddingTracker) -> None:
        assert tracker.read_progress() is None

        tracker.set_progress(EmbeddingProgress(status=EmbeddingStatus.RUNNING, total=5, completed=2, pid=7))

        progress = tracker.read_progress()
        assert progress.status == EmbeddingStatus.RUNNING
        assert progress.completed == 2

        tracker.clear_progress()
        assert tracker.read_progress() is None

    def test_unreadable_progress_reads_as_none(self, tracker: EmbeddingTracker, tmp_path: Path) -> None:
        (tmp_path / "embedding-progress.json").write_text("garbage")

        assert tracker.read_progress() is None

    def test_reset_error_clears_only_error_state(self, tracker: EmbeddingTracker) -> None:
        tracker.set_progress(EmbeddingProgress(status=EmbeddingStatus.DONE, total=1, completed=1))
        assert not tracker.reset_error_if_needed()
        assert tracker.read_progress() is not None

        tracker.set_progress(EmbeddingProgress(status=EmbeddingStatus.ERROR, error="oom"))
        assert tracker.reset_error_if_needed()
        assert tracker.read_progress() is None


class TestEmbeddingWorker:
    async def test_embeds_every_pending_message(
        self,
        tracker: EmbeddingTracker,
        messages: ChildRepository[Message],
        vector_store: VectorStore,
    ) -> None:
        await messages.bulk_insert_new([_make_message("c1", i) for i in range(5)], set())
        embed = FakeEmbed()
        worker = EmbeddingWorker(messages, vector_store, tracker, embed, batch_size=2)

        embedded = await worker.run()

        assert embedded == 5
        assert [len(batch) for batch in embed.batches] == [2, 2, 1]
        assert await tracker.count_pending() == 0

        progress = tracker.read_progress()
        assert progress.status == EmbeddingStatus.DONE
        assert progress.completed == progress.total == 5

    async def test_second_run_has_nothing_to_do(
        self,
        tracker: EmbeddingTracker,
        messages: ChildRepository[Message],
        vector_store: VectorStore,
    ) -> None:
        await messages.bulk_insert_new([_make_message("c1", 0)], set())
        embed = FakeEmbed()
        await EmbeddingWorker(messages, vector_store, tracker, embed).run()

        assert await EmbeddingWorker(messages, vector_store, tracker, embed).run() == 0
        assert len(embed.batches) == 1

    async def test_failure_is_recorded_and_raised(
        self,
        tracker: EmbeddingTracker,
        messages: ChildRepository[Message],
        vector_store: VectorStore,
    ) -> None:
        await messages.bulk_insert_new([_make_message("c1", 0)], set())
        worker = EmbeddingWorker(messages, vector_store, tracker, FakeEmbed(fail=True))

        with pytest.raises(RuntimeError, match="model unavailable"):
            await worker.run()

        progress = tracker.read_progress()
        assert progress.status == EmbeddingStatus.ERROR
        assert progress.error == "model unavailable"
