"""Factory functions for creating and wiring sync services.

Provides production factories that create services with persistent storage
and test factories that use throwaway stores for fast, isolated testing.
"""

from pathlib import Path
from uuid import uuid4

import chromadb
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from convosync.adapters.base import SourceAdapter
from convosync.adapters.claude_code import ClaudeCodeAdapter
from convosync.adapters.registry import AdapterRegistry
from convosync.config import Settings
from convosync.services.auxiliary import BillingReconciler
from convosync.services.embeddings import EmbedFunction, EmbeddingTracker, EmbeddingWorker, default_embed_function
from convosync.services.enrichment import FirstPromptTitleGenerator, TitleEnricher, TitleGenerator
from convosync.services.index_maintainer import IndexMaintainer, SyncCache
from convosync.services.planner import ChangePlanner
from convosync.services.recovery import StorageRecovery
from convosync.services.repository import (
    ChildRepositories,
    ConversationRepository,
    create_async_engine_from_path,
    create_child_repositories,
    initialize_schema,
)
from convosync.services.sync_engine import SyncEngine
from convosync.services.sync_lock import SyncLock
from convosync.services.sync_state import SyncStateStore
from convosync.services.vector_store import VectorStore
from convosync.services.worker_launcher import WorkerLauncher

_TEST_COLLECTION_ID_LENGTH = 8


def create_default_registry(settings: Settings, logger: structlog.stdlib.BoundLogger | None = None) -> AdapterRegistry:
    return AdapterRegistry([ClaudeCodeAdapter(root=settings.claude_code_root, logger=logger)], logger=logger)


async def create_storage(
    engine: AsyncEngine,
    settings: Settings,
    logger: structlog.stdlib.BoundLogger,
) -> tuple[StorageRecovery, ConversationRepository, ChildRepositories, SyncStateStore]:
    """Initialize the schema and build the repositories sharing one recovery policy."""
    await initialize_schema(engine)
    recovery = StorageRecovery(
        engine,
        max_attempts=settings.storage_max_attempts,
        backoff_seconds=settings.storage_backoff_seconds,
        on_reset=lambda: initialize_schema(engine),
        logger=logger,
    )
    conversations = ConversationRepository(
        engine=engine,
        recovery=recovery,
        batch_size=settings.write_batch_size,
        logger=logger,
    )
    children = create_child_repositories(engine, recovery, settings.write_batch_size, logger)
    sync_state = SyncStateStore(engine=engine, recovery=recovery, logger=logger)
    return recovery, conversations, children, sync_state


async def create_vector_store(
    client: chromadb.ClientAPI,
    settings: Settings,
    collection_name: str | None = None,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> VectorStore:
    vector_store = VectorStore(
        client=client,
        collection_name=collection_name,
        batch_size=settings.write_batch_size,
        logger=logger,
    )
    await vector_store.initialize()
    return vector_store


async def _build_engine(
    settings: Settings,
    engine: AsyncEngine,
    chroma_client: chromadb.ClientAPI,
    registry: AdapterRegistry,
    collection_name: str | None,
    launcher_factory,
    lock: SyncLock | None,
    title_generator: TitleGenerator | None,
    billing: BillingReconciler | None,
    logger: structlog.stdlib.BoundLogger,
) -> SyncEngine:
    recovery, conversations, children, sync_state = await create_storage(engine, settings, logger)
    vector_store = await create_vector_store(chroma_client, settings, collection_name, logger)

    tracker = EmbeddingTracker(
        messages=children.messages,
        vector_store=vector_store,
        progress_path=settings.embedding_progress_path,
        dimensions=settings.embedding_dimensions,
        logger=logger,
    )

    enricher = None
    if settings.enrich_titles:
        enricher = TitleEnricher(
            conversations=conversations,
            messages=children.messages,
            generator=title_generator or FirstPromptTitleGenerator(),
            logger=logger,
        )

    return SyncEngine(
        registry=registry,
        planner=ChangePlanner(sync_state=sync_state, conversations=conversations, logger=logger),
        conversations=conversations,
        children=children,
        sync_state=sync_state,
        index_maintainer=IndexMaintainer(engine=engine, recovery=recovery, logger=logger),
        sync_cache=SyncCache(settings.sync_cache_path, logger=logger),
        tracker=tracker,
        launcher=launcher_factory(tracker),
        lock=lock or SyncLock(settings.lock_path, stale_after_seconds=settings.lock_stale_after_seconds, logger=logger),
        extraction_concurrency=settings.extraction_concurrency,
        scalar_index_threshold=settings.scalar_index_threshold,
        worker_spawn_retries=settings.worker_spawn_retries,
        worker_verify_delay=settings.worker_verify_delay_seconds,
        enricher=enricher,
        billing=billing,
        engine=engine,
        logger=logger,
    )


async def create_sync_engine(
    settings: Settings | None = None,
    registry: AdapterRegistry | None = None,
    title_generator: TitleGenerator | None = None,
    billing: BillingReconciler | None = None,
) -> SyncEngine:
    """Create a production SyncEngine with persistent storage.

    Sets up SQLite for entities and ChromaDB for message vectors, both
    persisted under ``settings.data_dir``.

    Args:
        settings: Application settings. Loaded from the environment if None.
        registry: Adapters to sync. Defaults to every built-in adapter.
        title_generator: Generator used when title enrichment is enabled.
        billing: Optional billing reconciliation hook run after each sync.

    Returns:
        Configured SyncEngine ready for use.
    """
    settings = settings or Settings()
    logger = structlog.get_logger(__name__)
    settings.ensure_data_dir()

    engine = create_async_engine_from_path(str(settings.db_path))
    chroma_client = chromadb.PersistentClient(path=str(settings.vector_path))

    def launcher_factory(tracker: EmbeddingTracker) -> WorkerLauncher:
        return WorkerLauncher(tracker=tracker, log_path=settings.worker_log_path, logger=logger)

    return await _build_engine(
        settings=settings,
        engine=engine,
        chroma_client=chroma_client,
        registry=registry or create_default_registry(settings, logger),
        collection_name=None,
        launcher_factory=launcher_factory,
        lock=None,
        title_generator=title_generator,
        billing=billing,
        logger=logger,
    )


async def create_test_sync_engine(
    data_dir: Path,
    adapters: list[SourceAdapter],
    launcher: WorkerLauncher | None = None,
    lock: SyncLock | None = None,
    settings: Settings | None = None,
    title_generator: TitleGenerator | None = None,
    billing: BillingReconciler | None = None,
    chroma_client: chromadb.ClientAPI | None = None,
    collection_name: str | None = None,
) -> SyncEngine:
    """Create a SyncEngine over throwaway storage for testing.

    Uses a SQLite file under ``data_dir`` and ephemeral ChromaDB with a unique
    collection name, so tests don't interfere.

    Args:
        data_dir: Scratch directory, typically pytest's ``tmp_path``.
        adapters: Adapters to register.
        launcher: Worker launcher. Defaults to one whose spawn never forks.
        lock: Sync lock. Defaults to a lock file under ``data_dir``.
        settings: Overrides; ``data_dir`` is always forced to the argument.
        chroma_client: ChromaDB client. If None, creates an EphemeralClient.
        collection_name: ChromaDB collection name. If None, generates unique name.

    Returns:
        Configured SyncEngine with isolated storage.
    """
    logger = structlog.get_logger(__name__)
    base = settings or Settings()
    settings = base.model_copy(update={"data_dir": data_dir})
    settings.ensure_data_dir()

    engine = create_async_engine_from_path(str(settings.db_path))
    client = chroma_client or chromadb.EphemeralClient()
    effective_collection_name = collection_name or f"test_{uuid4().hex[:_TEST_COLLECTION_ID_LENGTH]}"

    def launcher_factory(tracker: EmbeddingTracker) -> WorkerLauncher:
        if launcher is not None:
            return launcher
        return WorkerLauncher(
            tracker=tracker,
            log_path=settings.worker_log_path,
            command=["true"],
            logger=logger,
        )

    return await _build_engine(
        settings=settings,
        engine=engine,
        chroma_client=client,
        registry=AdapterRegistry(adapters, logger=logger),
        collection_name=effective_collection_name,
        launcher_factory=launcher_factory,
        lock=lock,
        title_generator=title_generator,
        billing=billing,
        logger=logger,
    )


async def create_embedding_worker(
    settings: Settings | None = None,
    embed: EmbedFunction | None = None,
) -> tuple[EmbeddingWorker, AsyncEngine]:
    """Create the worker the launcher runs as ``convosync embed``.

    Returns:
        The worker and its engine, which the caller disposes when done.
    """
    settings = settings or Settings()
    logger = structlog.get_logger(__name__)
    settings.ensure_data_dir()

    engine = create_async_engine_from_path(str(settings.db_path))
    _, _, children, _ = await create_storage(engine, settings, logger)
    vector_store = await create_vector_store(chromadb.PersistentClient(path=str(settings.vector_path)), settings)
    tracker = EmbeddingTracker(
        messages=children.messages,
        vector_store=vector_store,
        progress_path=settings.embedding_progress_path,
        dimensions=settings.embedding_dimensions,
        logger=logger,
    )
    worker = EmbeddingWorker(
        messages=children.messages,
        vector_store=vector_store,
        tracker=tracker,
        embed=embed or default_embed_function(),
        batch_size=settings.embedding_batch_size,
        logger=logger,
    )
    return worker, engine
