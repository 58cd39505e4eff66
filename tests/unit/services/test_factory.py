"""Tests for the service factory module."""

from pathlib import Path

from convosync.adapters.claude_code import ClaudeCodeAdapter
from convosync.config import Settings
from convosync.services.embeddings import EmbeddingWorker
from convosync.services.enrichment import TitleEnricher
from convosync.services.factory import (
    create_default_registry,
    create_embedding_worker,
    create_sync_engine,
    create_test_sync_engine,
)
from convosync.services.sync_engine import SyncEngine
from convosync.services.worker_launcher import WorkerLauncher


def _settings(tmp_path: Path, **overrides) -> Settings:
    return Settings(data_dir=tmp_path / "data", claude_code_root=tmp_path / ".claude", **overrides)


def test_default_registry_contains_claude_code(tmp_path: Path) -> None:
    registry = create_default_registry(_settings(tmp_path))

    assert registry.names() == ["claude-code"]
    assert isinstance(registry.get("claude-code"), ClaudeCodeAdapter)


class TestCreateSyncEngine:
    async def test_creates_engine_and_storage(self, tmp_path: Path) -> None:
        settings = _settings(tmp_path)

        async with await create_sync_engine(settings) as engine:
            assert isinstance(engine, SyncEngine)
            assert isinstance(engine._launcher, WorkerLauncher)
            assert engine._enricher is None

        assert settings.db_path.exists()
        assert settings.vector_path.exists()

    async def test_enrichment_is_opt_in(self, tmp_path: Path) -> None:
        async with await create_sync_engine(_settings(tmp_path, enrich_titles=True)) as engine:
            assert isinstance(engine._enricher, TitleEnricher)

    async def test_syncs_nothing_without_sources(self, tmp_path: Path) -> None:
        async with await create_sync_engine(_settings(tmp_path)) as engine:
            result = await engine.run()

        assert result.conversations_found == 0
        assert result.projects_found == 0


class TestCreateTestSyncEngine:
    async def test_forces_data_dir(self, tmp_path: Path) -> None:
        settings = Settings(data_dir=tmp_path / "elsewhere")

        async with await create_test_sync_engine(tmp_path / "scratch", [], settings=settings) as engine:
            assert engine._registry.names() == []

        assert (tmp_path / "scratch" / "convosync.db").exists()
        assert not (tmp_path / "elsewhere").exists()


async def test_create_embedding_worker(tmp_path: Path) -> None:
    worker, engine = await create_embedding_worker(
        _settings(tmp_path),
        embed=lambda texts: [[1.0] * 384 for _ in texts],
    )
    try:
        assert isinstance(worker, EmbeddingWorker)
        assert await worker.run() == 0
    finally:
        await engine.dispose()
