"""Cross-process sync lock backed by a single JSON file.

The lock is advisory: it serializes sync runs on one machine and nothing else.
A lock whose owner is dead, whose age exceeds the stale ceiling, or whose file
cannot be parsed is considered stale and may be removed by anyone.

Every read-check-write sequence on the lock file runs under an ``flock`` on a
sibling ``.guard`` file, so two contenders cannot both clear the same stale
holder.
"""

import errno
import fcntl
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from convosync.models.base import coerce_utc_datetime

DEFAULT_STALE_AFTER_SECONDS = 600.0


def pid_is_alive(pid: int) -> bool:
    """Return whether ``pid`` names a live process on this machine."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as exc:
        # EPERM means the process exists but belongs to someone else
        return exc.errno == errno.EPERM
    return True


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LockRecord(BaseModel):
    pid: int
    started_at: datetime

    model_config = ConfigDict(frozen=True)

    @field_validator("started_at", mode="before")
    @classmethod
    def _validate_started_at(cls, value: Any) -> datetime | None:
        return coerce_utc_datetime(value, "started_at")


class SyncLock:
    """Explicit acquire/release resource over the lock file.

    ``get_pid``, ``is_alive`` and ``clock`` are injectable so tests can play
    several processes against one file.
    """

    def __init__(
        self,
        path: Path,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        get_pid: Callable[[], int] = os.getpid,
        is_alive: Callable[[int], bool] = pid_is_alive,
        clock: Callable[[], datetime] = _utc_now,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._path = path
        self._stale_after_seconds = stale_after_seconds
        self._get_pid = get_pid
        self._is_alive = is_alive
        self._clock = clock
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def acquire(self) -> bool:
        """Take the lock, clearing one stale holder if necessary.

        Returns False without waiting when another contender is inside the
        guard; that contender either holds the lock or is about to.
        """
        with self._guard(blocking=False) as entered:
            if not entered:
                self._logger.info("sync_lock_contended", lock_path=str(self._path))
                return False
            if self._try_create():
                return True

            record = self._read()
            if record is not None and not self._is_stale(record):
                self._logger.info("sync_lock_held", holder_pid=record.pid, lock_path=str(self._path))
                return False

            self._logger.warning(
                "sync_lock_stale_removed",
                holder_pid=record.pid if record else None,
                lock_path=str(self._path),
            )
            self._path.unlink(missing_ok=True)
            return self._try_create()

    def release(self) -> bool:
        """Delete the lock file if this process owns it."""
        with self._guard(blocking=True):
            record = self._read()
            if record is None or record.pid != self._get_pid():
                return False
            self._path.unlink(missing_ok=True)
            return True

    @property
    def guard_path(self) -> Path:
        return self._path.with_name(self._path.name + ".guard")

    @contextmanager
    def _guard(self, blocking: bool) -> Iterator[bool]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        with self.guard_path.open("a") as handle:
            try:
                fcntl.flock(handle.fileno(), flags)
            except BlockingIOError:
                yield False
                return
            try:
                yield True
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def read(self) -> LockRecord | None:
        return self._read()

    def _try_create(self) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        record = LockRecord(pid=self._get_pid(), started_at=self._clock())
        try:
            with self._path.open("x", encoding="utf-8") as handle:
                handle.write(record.model_dump_json())
        except FileExistsError:
            return False
        self._logger.debug("sync_lock_acquired", pid=record.pid, lock_path=str(self._path))
        return True

    def _read(self) -> LockRecord | None:
        try:
            return LockRecord.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError):
            return None

    def _is_stale(self, record: LockRecord) -> bool:
        if not self._is_alive(record.pid):
            return True
        age = (self._clock() - record.started_at).total_seconds()
        return age > self._stale_after_seconds
