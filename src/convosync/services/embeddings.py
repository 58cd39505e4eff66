"""Embedding bookkeeping and the background worker body.

The worker discovers its own work: a message needs embedding when its vector is
missing, has the wrong width, or is all zeros. Sync never hands it a queue; it
only kills the worker before rewriting messages and makes sure one is running
afterwards. Coarse status is shared through a small JSON progress file.
"""

import asyncio
import os
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import ValidationError

from convosync.models.conversation import Message
from convosync.models.enums import EmbeddingStatus
from convosync.models.progress import EmbeddingProgress
from convosync.services.repository import ChildRepository, batched
from convosync.services.vector_store import VectorStore

EmbedFunction = Callable[[list[str]], Sequence[Sequence[float]]]


def is_pending_vector(vector: Sequence[float] | None, dimensions: int) -> bool:
    if vector is None or len(vector) != dimensions:
        return True
    return all(value == 0 for value in vector)


class EmbeddingTracker:
    """Answers "what still needs embedding" and owns the progress file."""

    def __init__(
        self,
        messages: ChildRepository[Message],
        vector_store: VectorStore,
        progress_path: Path,
        dimensions: int = 384,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._messages = messages
        self._vector_store = vector_store
        self._progress_path = progress_path
        self._dimensions = dimensions
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def find_pending_ids(self) -> list[str]:
        message_ids = await self._messages.list_ids()
        vectors = await self._vector_store.get_embeddings(message_ids)
        return [
            message_id
            for message_id in message_ids
            if is_pending_vector(vectors.get(message_id), self._dimensions)
        ]

    async def count_pending(self) -> int:
        return len(await self.find_pending_ids())

    async def discard_vectors(self, conversation_ids: Iterable[str]) -> int:
        """Delete stored vectors for every message of these conversations."""
        message_ids = await self._messages.get_ids_by_conversation_ids(conversation_ids)
        await self._vector_store.delete_by_ids(message_ids)
        return len(message_ids)

    def read_progress(self) -> EmbeddingProgress | None:
        if not self._progress_path.exists():
            return None
        try:
            return EmbeddingProgress.model_validate_json(self._progress_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            self._logger.warning("embedding_progress_unreadable", path=str(self._progress_path), error=str(exc))
            return None

    def set_progress(self, progress: EmbeddingProgress) -> None:
        self._progress_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._progress_path.with_suffix(".tmp")
        tmp_path.write_text(progress.model_dump_json(), encoding="utf-8")
        tmp_path.replace(self._progress_path)

    def clear_progress(self) -> None:
        self._progress_path.unlink(missing_ok=True)

    def reset_error_if_needed(self) -> bool:
        """Clear a progress record left in the error state so a worker can respawn."""
        progress = self.read_progress()
        if progress is None or progress.status != EmbeddingStatus.ERROR:
            return False
        self._logger.info("embedding_error_reset", error=progress.error)
        self.clear_progress()
        return True


def default_embed_function() -> EmbedFunction:
    from chromadb.utils.embedding_functions import DefaultEmbeddingFunction

    embedding_function = DefaultEmbeddingFunction()
    return lambda texts: embedding_function(texts)


class EmbeddingWorker:
    """Fills in vectors for pending messages, batch by batch."""

    def __init__(
        self,
        messages: ChildRepository[Message],
        vector_store: VectorStore,
        tracker: EmbeddingTracker,
        embed: EmbedFunction,
        batch_size: int = 32,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._messages = messages
        self._vector_store = vector_store
        self._tracker = tracker
        self._embed = embed
        self._batch_size = batch_size
        self._logger = logger or structlog.get_logger(__name__)

    async def run(self) -> int:
        """Embed every pending message.

        Returns:
            Number of messages embedded.

        Raises:
            Exception: Any embedding or storage failure, after recording it in
                the progress file.
        """
        pending = await self._tracker.find_pending_ids()
        started_at = datetime.now(timezone.utc)
        pid = os.getpid()
        completed = 0
        self._logger.info("embedding_worker_started", pending=len(pending), pid=pid)

        def progress(status: EmbeddingStatus, error: str | None = None) -> EmbeddingProgress:
            return EmbeddingProgress(
                status=status,
                total=len(pending),
                completed=completed,
                pid=pid,
                started_at=started_at,
                error=error,
            )

        self._tracker.set_progress(progress(EmbeddingStatus.RUNNING))
        try:
            for batch in batched(pending, self._batch_size):
                messages = await self._messages.get_by_ids(batch)
                if messages:
                    texts = [message.content or " " for message in messages]
                    vectors = await asyncio.to_thread(self._embed, texts)
                    await self._vector_store.add_embeddings(
                        ids=[message.id for message in messages],
                        embeddings=[[float(value) for value in vector] for vector in vectors],
                    )
                completed += len(batch)
                self._tracker.set_progress(progress(EmbeddingStatus.RUNNING))
        except Exception as exc:
            self._tracker.set_progress(progress(EmbeddingStatus.ERROR, error=str(exc)))
            self._logger.error("embedding_worker_failed", completed=completed, error=str(exc))
            raise

        self._tracker.set_progress(progress(EmbeddingStatus.DONE))
        self._logger.info("embedding_worker_finished", embedded=completed)
        return completed
