from __future__ import annotations

import shutil
from pathlib import Path

from autoloop.locking import LockCoordinator
from autoloop.models import SessionAlreadyRunning, SessionNotFound, SessionPaths
from autoloop.utils import _append_log, _archive_stamp


def archive_session(paths: SessionPaths, locks: LockCoordinator) -> Path:
    """Move a session directory to ``<run_root>/archive/<session>-<stamp>/``.

    Refuses while a live orchestrator holds the session lock; a dead owner's
    lock is removed along with the move.
    """
    if not paths.session_dir.exists():
        raise SessionNotFound(f"session '{paths.session}' not found at {paths.session_dir}")
    record = locks.read(paths.session)
    if record is not None and locks.is_alive(record):
        raise SessionAlreadyRunning(
            f"session '{paths.session}' is running (pid={record.owner_pid}); stop it before archiving"
        )

    paths.archive_dir.mkdir(parents=True, exist_ok=True)
    destination = paths.archive_dir / f"{paths.session}-{_archive_stamp()}"
    suffix = 1
    while destination.exists():
        destination = paths.archive_dir / f"{paths.session}-{_archive_stamp()}-{suffix}"
        suffix += 1
    shutil.move(str(paths.session_dir), str(destination))
    if record is not None:
        locks.lock_path(paths.session).unlink(missing_ok=True)
    _append_log(destination / paths.log_path.name, f"session '{paths.session}' archived from {paths.session_dir}")
    return destination
