"""Unit tests for the SyncLock service."""

import fcntl
import multiprocessing
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from convosync.services.sync_lock import LockRecord, SyncLock, pid_is_alive

_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = _NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _make_lock(path: Path, pid: int, alive: set[int], clock: FakeClock | None = None) -> SyncLock:
    return SyncLock(
        path,
        stale_after_seconds=600,
        get_pid=lambda: pid,
        is_alive=lambda candidate: candidate in alive,
        clock=clock or FakeClock(),
    )


def _write_record(path: Path, pid: int, started_at: datetime = _NOW) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(LockRecord(pid=pid, started_at=started_at).model_dump_json())


def _compete(path: Path, start, done, results) -> None:
    start.wait()
    results.put(SyncLock(path).acquire())
    done.wait()


@pytest.fixture
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "sync.lock"


class TestSyncLockAcquire:
    def test_acquire_creates_lock_file(self, lock_path: Path) -> None:
        lock = _make_lock(lock_path, pid=100, alive={100})

        assert lock.acquire()

        record = lock.read()
        assert record is not None
        assert record.pid == 100
        assert record.started_at == _NOW

    def test_second_holder_is_refused(self, lock_path: Path) -> None:
        first = _make_lock(lock_path, pid=100, alive={100, 200})
        second = _make_lock(lock_path, pid=200, alive={100, 200})

        assert first.acquire()
        assert not second.acquire()
        assert first.read().pid == 100

    def test_dead_holder_is_treated_as_stale(self, lock_path: Path) -> None:
        _make_lock(lock_path, pid=100, alive={100}).acquire()
        successor = _make_lock(lock_path, pid=200, alive={200})

        assert successor.acquire()
        assert successor.read().pid == 200

    def test_old_lock_is_treated_as_stale(self, lock_path: Path) -> None:
        clock = FakeClock()
        _make_lock(lock_path, pid=100, alive={100, 200}, clock=clock).acquire()
        clock.now = _NOW + timedelta(seconds=601)
        successor = _make_lock(lock_path, pid=200, alive={100, 200}, clock=clock)

        assert successor.acquire()

    def test_lock_within_ceiling_is_kept(self, lock_path: Path) -> None:
        clock = FakeClock()
        _make_lock(lock_path, pid=100, alive={100, 200}, clock=clock).acquire()
        clock.now = _NOW + timedelta(seconds=599)
        successor = _make_lock(lock_path, pid=200, alive={100, 200}, clock=clock)

        assert not successor.acquire()

    def test_corrupt_lock_file_is_treated_as_stale(self, lock_path: Path) -> None:
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text("{not json")
        lock = _make_lock(lock_path, pid=100, alive={100})

        assert lock.acquire()
        assert lock.read().pid == 100


class TestStaleTakeover:
    def test_contender_arriving_mid_takeover_is_refused(self, lock_path: Path) -> None:
        _write_record(lock_path, pid=999)
        first = _make_lock(lock_path, pid=100, alive={100, 200})
        first_result: list[bool] = []

        def is_alive_with_interleaved_contender(pid: int) -> bool:
            first_result.append(first.acquire())
            return pid in {100, 200}

        second = SyncLock(
            lock_path,
            stale_after_seconds=600,
            get_pid=lambda: 200,
            is_alive=is_alive_with_interleaved_contender,
            clock=FakeClock(),
        )

        assert second.acquire()
        assert first_result == [False]
        assert second.read().pid == 200

    def test_held_guard_refuses_without_touching_lock_file(self, lock_path: Path) -> None:
        _write_record(lock_path, pid=999)
        lock = _make_lock(lock_path, pid=100, alive={100})

        with lock.guard_path.open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            assert not lock.acquire()

        assert lock.read().pid == 999
        assert lock.acquire()

    def test_two_processes_race_for_stale_lock(self, lock_path: Path) -> None:
        _write_record(lock_path, pid=os.getpid(), started_at=datetime.now(timezone.utc) - timedelta(hours=1))
        context = multiprocessing.get_context("fork")
        start = context.Barrier(2)
        done = context.Event()
        results = context.Queue()
        processes = [context.Process(target=_compete, args=(lock_path, start, done, results)) for _ in range(2)]
        for process in processes:
            process.start()

        try:
            outcomes = [results.get(timeout=10) for _ in processes]
        finally:
            done.set()
            for process in processes:
                process.join(timeout=10)

        assert outcomes.count(True) == 1
        assert lock_path.exists()


class TestSyncLockRelease:
    def test_release_removes_own_lock(self, lock_path: Path) -> None:
        lock = _make_lock(lock_path, pid=100, alive={100})
        lock.acquire()

        assert lock.release()
        assert not lock_path.exists()

    def test_release_keeps_foreign_lock(self, lock_path: Path) -> None:
        owner = _make_lock(lock_path, pid=100, alive={100, 200})
        other = _make_lock(lock_path, pid=200, alive={100, 200})
        owner.acquire()

        assert not other.release()
        assert lock_path.exists()

    def test_release_without_lock_file(self, lock_path: Path) -> None:
        assert not _make_lock(lock_path, pid=100, alive={100}).release()

    def test_lock_can_be_reacquired_after_release(self, lock_path: Path) -> None:
        lock = _make_lock(lock_path, pid=100, alive={100})
        lock.acquire()
        lock.release()

        assert lock.acquire()


def test_lock_record_restores_utc() -> None:
    record = LockRecord.model_validate_json('{"pid": 1, "started_at": "2024-05-01T12:00:00"}')

    assert record.started_at == _NOW


def test_pid_is_alive_for_current_process() -> None:
    assert pid_is_alive(os.getpid())


def test_pid_is_alive_rejects_non_positive_pids() -> None:
    assert not pid_is_alive(0)
    assert not pid_is_alive(-1)
