"""Vector store service for persisting message embeddings to ChromaDB.

ChromaDB's Python client is synchronous, so we use asyncio.to_thread()
to wrap blocking operations and maintain async consistency with other services.
"""

import asyncio
from collections.abc import Sequence

import chromadb
import structlog

from convosync.services.repository import DEFAULT_BATCH_SIZE, batched


class VectorStore:
    """Stores and retrieves message vectors via ChromaDB.

    Vectors are keyed by message id. Accepts a ChromaDB Client via dependency
    injection to support both persistent (PersistentClient) and ephemeral
    (EphemeralClient) modes.
    """

    DEFAULT_COLLECTION_NAME = "messages"

    def __init__(
        self,
        client: chromadb.ClientAPI,
        collection_name: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._client = client
        self._collection_name = collection_name or self.DEFAULT_COLLECTION_NAME
        self._batch_size = batch_size
        self._logger = logger or structlog.get_logger(__name__)
        self._collection: chromadb.Collection | None = None

    async def initialize(self) -> None:
        """Initialize the collection, creating it if it doesn't exist."""
        self._collection = await asyncio.to_thread(self._client.get_or_create_collection, name=self._collection_name)
        self._logger.info("vector_store_initialized", collection_name=self._collection_name)

    def _require_collection(self) -> chromadb.Collection:
        if self._collection is None:
            raise RuntimeError("VectorStore not initialized. Call initialize() first.")
        return self._collection

    async def add_embeddings(
        self,
        ids: list[str],
        embeddings: list[list[float]],
    ) -> None:
        """Upsert vectors for the given message ids.

        Raises:
            ValueError: If input lists have mismatched lengths.
            RuntimeError: If collection not initialized.
        """
        collection = self._require_collection()
        if not ids:
            return

        if len(ids) != len(embeddings):
            raise ValueError(f"Mismatched lengths: ids={len(ids)}, embeddings={len(embeddings)}")

        await asyncio.to_thread(collection.upsert, ids=ids, embeddings=embeddings)
        self._logger.debug("embeddings_added", collection=self._collection_name, count=len(ids))

    async def delete_by_ids(self, ids: Sequence[str]) -> None:
        """Delete vectors by message id, in chunks."""
        collection = self._require_collection()
        if not ids:
            return

        for batch in batched(ids, self._batch_size):
            await asyncio.to_thread(collection.delete, ids=batch)
        self._logger.debug("embeddings_deleted", collection=self._collection_name, count=len(ids))

    async def get_embeddings(self, ids: Sequence[str]) -> dict[str, list[float]]:
        """Fetch stored vectors for the given ids.

        Returns:
            Mapping of id to vector. Ids with no stored vector are absent.
        """
        collection = self._require_collection()
        vectors: dict[str, list[float]] = {}
        for batch in batched(ids, self._batch_size):
            result = await asyncio.to_thread(collection.get, ids=batch, include=["embeddings"])
            embeddings = result.get("embeddings")
            if embeddings is None:
                continue
            for vector_id, embedding in zip(result["ids"], embeddings):
                if embedding is not None:
                    vectors[vector_id] = [float(value) for value in embedding]
        return vectors
