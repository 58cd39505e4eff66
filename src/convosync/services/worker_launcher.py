"""Supervises the singleton background embedding process."""

import asyncio
import os
import signal
import subprocess
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog

from convosync.models.enums import EmbeddingStatus
from convosync.services.embeddings import EmbeddingTracker
from convosync.services.sync_lock import pid_is_alive


def default_worker_command() -> list[str]:
    return [sys.executable, "-m", "convosync", "embed"]


class WorkerLauncher:
    """Spawns, probes and kills the ``convosync embed`` worker.

    The worker records its pid in the embedding progress file; that record is
    the only link between this process and the worker.
    """

    def __init__(
        self,
        tracker: EmbeddingTracker,
        log_path: Path,
        command: list[str] | None = None,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
        is_alive: Callable[[int], bool] = pid_is_alive,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._tracker = tracker
        self._log_path = log_path
        self._command = command or default_worker_command()
        self._spawn = spawn
        self._is_alive = is_alive
        self._sleep = sleep
        self._logger = logger or structlog.get_logger(__name__)

    def is_worker_already_running(self) -> bool:
        progress = self._tracker.read_progress()
        if progress is None or progress.pid is None:
            return False
        if progress.status not in (EmbeddingStatus.IDLE, EmbeddingStatus.RUNNING):
            return False
        return self._is_alive(progress.pid)

    async def spawn_background_worker(self, retries: int = 3, verify_delay: float = 1.5) -> bool:
        """Start a detached worker unless one is alive.

        Each attempt waits ``verify_delay`` seconds and then counts as started
        if the child is still running or already exited cleanly.

        Returns:
            True if a worker is running or finished, False if every attempt failed.
        """
        if self.is_worker_already_running():
            self._logger.debug("embedding_worker_already_running")
            return True

        for attempt in range(1, retries + 1):
            try:
                process = self._launch()
            except OSError as exc:
                self._logger.warning("embedding_worker_spawn_failed", attempt=attempt, error=str(exc))
                continue

            await self._sleep(verify_delay)
            exit_code = process.poll()
            if exit_code is None or exit_code == 0:
                self._logger.info("embedding_worker_spawned", pid=process.pid, attempt=attempt)
                return True
            self._logger.warning(
                "embedding_worker_exited_early",
                attempt=attempt,
                exit_code=exit_code,
                log_path=str(self._log_path),
            )

        self._logger.error("embedding_worker_spawn_exhausted", retries=retries)
        return False

    def kill_running_worker(self) -> bool:
        """Terminate the live worker, if any, and reset its progress record.

        Returns:
            Whether a live worker was signalled.
        """
        progress = self._tracker.read_progress()
        killed = False
        if progress is not None and progress.pid is not None and self._is_alive(progress.pid):
            try:
                os.kill(progress.pid, signal.SIGTERM)
                killed = True
                self._logger.info("embedding_worker_killed", pid=progress.pid)
            except ProcessLookupError:
                pass
        self._tracker.clear_progress()
        return killed

    def _launch(self) -> subprocess.Popen:
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with self._log_path.open("a", encoding="utf-8") as log_file:
            return self._spawn(
                self._command,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                env=os.environ.copy(),
            )
