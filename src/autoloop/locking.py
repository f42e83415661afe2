"""Session locks -- one live orchestrator per session, plus crash detection.

A lock file whose ``owner_pid`` no longer names a live process is the crash
signal. Liveness is checked with ``os.kill(pid, 0)``, which only holds on a
single host.
"""

from __future__ import annotations

import json
import os
import socket
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from autoloop.constants import LOCK_WRITE_GRACE_SECONDS
from autoloop.models import LockRecord, SessionAlreadyRunning
from autoloop.utils import _append_log, _utc_now


def _pid_is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


@dataclass(frozen=True)
class LockHandle:
    path: Path
    record: LockRecord


def _read_lock_payload(lock_path: Path) -> dict[str, Any]:
    if not lock_path.exists():
        return {}
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _record_from_payload(payload: dict[str, Any], *, session: str) -> LockRecord:
    try:
        owner_pid = int(payload.get("owner_pid", -1))
    except (TypeError, ValueError):
        owner_pid = -1
    return LockRecord(
        owner_pid=owner_pid,
        session_id=str(payload.get("session_id", session)),
        acquired_at=str(payload.get("acquired_at", "")),
        host=str(payload.get("host", "")),
    )


def _write_lock_payload_exclusive(lock_path: Path, record: LockRecord) -> None:
    rendered = json.dumps(
        {
            "owner_pid": record.owner_pid,
            "session_id": record.session_id,
            "acquired_at": record.acquired_at,
            "host": record.host,
        },
        indent=2,
    ) + "\n"
    # The lock appears fully written or not at all; os.link refuses to overwrite.
    fd, tmp_path = tempfile.mkstemp(prefix=f".{lock_path.name}.tmp-", dir=str(lock_path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(rendered)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, 0o644)
        os.link(tmp_path, lock_path)
    finally:
        Path(tmp_path).unlink(missing_ok=True)


def _lock_age_seconds(lock_path: Path) -> float | None:
    try:
        return time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return None


class LockCoordinator:
    def __init__(
        self,
        locks_dir: Path,
        *,
        log_path: Path | None = None,
        is_alive: Callable[[int], bool] = _pid_is_alive,
    ) -> None:
        self.locks_dir = locks_dir
        self.log_path = log_path
        self._is_alive = is_alive

    def _log(self, message: str) -> None:
        if self.log_path is not None:
            _append_log(self.log_path, message)

    def lock_path(self, session: str) -> Path:
        return self.locks_dir / f"{session}.lock"

    def read(self, session: str) -> LockRecord | None:
        lock_path = self.lock_path(session)
        if not lock_path.exists():
            return None
        return _record_from_payload(_read_lock_payload(lock_path), session=session)

    def is_alive(self, record: LockRecord) -> bool:
        return self._is_alive(record.owner_pid)

    def is_crashed(self, session: str) -> bool:
        record = self.read(session)
        return record is not None and not self.is_alive(record)

    def acquire(self, session: str) -> LockHandle:
        lock_path = self.lock_path(session)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        record = LockRecord(
            owner_pid=os.getpid(),
            session_id=session,
            acquired_at=_utc_now(),
            host=socket.gethostname(),
        )

        stale_replaced = False
        for _ in range(3):
            try:
                _write_lock_payload_exclusive(lock_path, record)
            except FileExistsError:
                existing = self.read(session)
                if existing is None:
                    continue
                if existing.owner_pid <= 0:
                    age = _lock_age_seconds(lock_path)
                    if age is not None and age < LOCK_WRITE_GRACE_SECONDS:
                        raise SessionAlreadyRunning(
                            f"session '{session}' lock is unreadable and {age:.1f}s old; "
                            "another orchestrator may be starting"
                        )
                elif self.is_alive(existing):
                    raise SessionAlreadyRunning(
                        f"session '{session}' is already running "
                        f"(pid={existing.owner_pid}, host={existing.host or '<unknown>'}, "
                        f"acquired_at={existing.acquired_at or '<unknown>'})"
                    )
                stale_path = lock_path.with_suffix(f"{lock_path.suffix}.stale.{os.getpid()}")
                try:
                    os.replace(lock_path, stale_path)
                except FileNotFoundError:
                    continue
                moved = _record_from_payload(_read_lock_payload(stale_path), session=session)
                if moved != existing:
                    self._restore_lock(stale_path, lock_path)
                    raise SessionAlreadyRunning(
                        f"session '{session}' lock changed hands while replacing a stale lock "
                        f"(pid={moved.owner_pid})"
                    )
                stale_path.unlink(missing_ok=True)
                stale_replaced = True
                self._log(
                    f"replaced stale lock for session '{session}' (dead pid={existing.owner_pid})"
                )
                continue
            self._log(
                f"lock acquired for session '{session}' pid={record.owner_pid}"
                + (" (stale lock replaced)" if stale_replaced else "")
            )
            return LockHandle(path=lock_path, record=record)
        raise SessionAlreadyRunning(f"failed to acquire lock for session '{session}' after retries")

    def _restore_lock(self, stale_path: Path, lock_path: Path) -> None:
        try:
            os.link(stale_path, lock_path)
        except FileExistsError:
            # A third process already holds the lock; the moved copy is obsolete.
            pass
        finally:
            stale_path.unlink(missing_ok=True)

    def release(self, handle: LockHandle) -> None:
        payload = _read_lock_payload(handle.path)
        if not payload:
            return
        holder = _record_from_payload(payload, session=handle.record.session_id)
        if holder.owner_pid != handle.record.owner_pid:
            return
        handle.path.unlink(missing_ok=True)
        self._log(f"lock released for session '{handle.record.session_id}'")

    def force_break(self, session: str, *, reason: str) -> str:
        lock_path = self.lock_path(session)
        if not lock_path.exists():
            return "no lock to break"
        existing = self.read(session)
        lock_path.unlink(missing_ok=True)
        holder = existing.owner_pid if existing is not None else "<unknown>"
        message = f"lock broken: session={session}, pid={holder}, reason={reason}"
        self._log(message)
        return message

    def _lock_files(self) -> list[Path]:
        if not self.locks_dir.exists():
            return []
        return sorted(self.locks_dir.glob("*.lock"))

    def list_records(self) -> list[LockRecord]:
        return [
            _record_from_payload(_read_lock_payload(lock_path), session=lock_path.stem)
            for lock_path in self._lock_files()
        ]

    def clean_stale(self) -> list[LockRecord]:
        removed: list[LockRecord] = []
        for lock_path in self._lock_files():
            record = _record_from_payload(_read_lock_payload(lock_path), session=lock_path.stem)
            if self.is_alive(record):
                continue
            lock_path.unlink(missing_ok=True)
            removed.append(record)
        return removed
