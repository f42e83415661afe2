from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from autoloop.locking import LockCoordinator, _pid_is_alive
from autoloop.models import SessionAlreadyRunning

DEAD_PID = 4_000_000


def _only_self_alive(pid: int) -> bool:
    return pid == os.getpid()


def _write_lock(locks_dir: Path, session: str, pid: int) -> Path:
    locks_dir.mkdir(parents=True, exist_ok=True)
    lock_path = locks_dir / f"{session}.lock"
    lock_path.write_text(
        json.dumps(
            {
                "owner_pid": pid,
                "session_id": session,
                "acquired_at": "2026-01-01T00:00:00Z",
                "host": "builder",
            }
        )
        + "\n",
        encoding="utf-8",
    )
    return lock_path


class TestPidLiveness:
    def test_current_process_is_alive(self) -> None:
        assert _pid_is_alive(os.getpid()) is True

    def test_non_positive_pid_is_dead(self) -> None:
        assert _pid_is_alive(0) is False
        assert _pid_is_alive(-1) is False


class TestAcquireRelease:
    def test_acquire_writes_record_and_release_removes_it(self, tmp_path: Path) -> None:
        locks = LockCoordinator(tmp_path / "locks", is_alive=_only_self_alive)
        handle = locks.acquire("s1")

        record = locks.read("s1")
        assert record is not None
        assert record.owner_pid == os.getpid()
        assert record.session_id == "s1"
        assert locks.is_crashed("s1") is False

        locks.release(handle)
        assert locks.read("s1") is None

    def test_live_owner_refuses_second_acquire(self, tmp_path: Path) -> None:
        locks = LockCoordinator(tmp_path / "locks", is_alive=_only_self_alive)
        locks.acquire("s1")
        with pytest.raises(SessionAlreadyRunning, match="already running"):
            locks.acquire("s1")

    def test_dead_owner_lock_is_replaced(self, tmp_path: Path) -> None:
        log_path = tmp_path / "orchestrator.log"
        locks_dir = tmp_path / "locks"
        _write_lock(locks_dir, "s1", DEAD_PID)
        locks = LockCoordinator(locks_dir, log_path=log_path, is_alive=_only_self_alive)

        assert locks.is_crashed("s1") is True
        handle = locks.acquire("s1")

        assert handle.record.owner_pid == os.getpid()
        assert locks.is_crashed("s1") is False
        assert "replaced stale lock" in log_path.read_text(encoding="utf-8")
        assert sorted(path.name for path in locks_dir.iterdir()) == ["s1.lock"]

    def test_release_ignores_lock_owned_by_someone_else(self, tmp_path: Path) -> None:
        locks_dir = tmp_path / "locks"
        locks = LockCoordinator(locks_dir, is_alive=lambda pid: True)
        handle = locks.acquire("s1")
        _write_lock(locks_dir, "s1", DEAD_PID)

        locks.release(handle)
        record = locks.read("s1")
        assert record is not None
        assert record.owner_pid == DEAD_PID

    def test_unreadable_lock_counts_as_crashed(self, tmp_path: Path) -> None:
        locks_dir = tmp_path / "locks"
        locks_dir.mkdir()
        (locks_dir / "s1.lock").write_text("garbage", encoding="utf-8")
        locks = LockCoordinator(locks_dir)
        assert locks.is_crashed("s1") is True


class TestMaintenance:
    def test_clean_stale_removes_only_dead_owners(self, tmp_path: Path) -> None:
        locks_dir = tmp_path / "locks"
        _write_lock(locks_dir, "dead", DEAD_PID)
        _write_lock(locks_dir, "live", os.getpid())
        locks = LockCoordinator(locks_dir, is_alive=_only_self_alive)

        removed = locks.clean_stale()

        assert [record.session_id for record in removed] == ["dead"]
        assert [record.session_id for record in locks.list_records()] == ["live"]

    def test_force_break(self, tmp_path: Path) -> None:
        locks_dir = tmp_path / "locks"
        _write_lock(locks_dir, "s1", os.getpid())
        locks = LockCoordinator(locks_dir)

        message = locks.force_break("s1", reason="operator")
        assert message == f"lock broken: session=s1, pid={os.getpid()}, reason=operator"
        assert locks.read("s1") is None
        assert locks.force_break("s1", reason="again") == "no lock to break"


class TestAcquireRaces:
    def test_fresh_unreadable_lock_is_treated_as_held(self, tmp_path: Path) -> None:
        locks_dir = tmp_path / "locks"
        locks_dir.mkdir()
        lock_path = locks_dir / "s1.lock"
        lock_path.write_text("", encoding="utf-8")
        locks = LockCoordinator(locks_dir, is_alive=_only_self_alive)

        with pytest.raises(SessionAlreadyRunning, match="unreadable"):
            locks.acquire("s1")
        assert lock_path.read_text(encoding="utf-8") == ""

    def test_old_unreadable_lock_is_replaced(self, tmp_path: Path) -> None:
        locks_dir = tmp_path / "locks"
        locks_dir.mkdir()
        lock_path = locks_dir / "s1.lock"
        lock_path.write_text("", encoding="utf-8")
        old = time.time() - 3600
        os.utime(lock_path, (old, old))
        locks = LockCoordinator(locks_dir, is_alive=_only_self_alive)

        handle = locks.acquire("s1")

        assert handle.record.owner_pid == os.getpid()
        assert locks.read("s1") == handle.record

    def test_lock_taken_over_during_replacement_is_restored(self, tmp_path: Path) -> None:
        locks_dir = tmp_path / "locks"
        lock_path = _write_lock(locks_dir, "s1", DEAD_PID)
        competitor_pid = 5555

        def _competitor_steps_in(pid: int) -> bool:
            if pid == DEAD_PID:
                # Another orchestrator replaces the dead lock right after our check.
                _write_lock(locks_dir, "s1", competitor_pid)
                return False
            return pid == competitor_pid

        locks = LockCoordinator(locks_dir, is_alive=_competitor_steps_in)

        with pytest.raises(SessionAlreadyRunning, match="changed hands"):
            locks.acquire("s1")

        record = locks.read("s1")
        assert record is not None
        assert record.owner_pid == competitor_pid
        assert sorted(path.name for path in locks_dir.iterdir()) == [lock_path.name]

    def test_lock_file_is_never_visible_half_written(self, tmp_path: Path) -> None:
        locks = LockCoordinator(tmp_path / "locks", is_alive=_only_self_alive)
        locks.acquire("s1")
        payload = json.loads((tmp_path / "locks" / "s1.lock").read_text(encoding="utf-8"))
        assert payload["owner_pid"] == os.getpid()
        assert sorted(path.name for path in (tmp_path / "locks").iterdir()) == ["s1.lock"]
