"""Append-only history ledger -- one JSON line per executed iteration.

The ledger is the source of truth for "what actually ran". Entries are only
ever appended; a torn final line left by a crash mid-append is not an entry
and is trimmed before the next append.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterator

from autoloop.constants import DECISIONS
from autoloop.models import (
    HistoryEntry,
    LedgerAppendFailed,
    StateCorrupt,
    _coerce_optional_int,
)
from autoloop.utils import _append_log, _schema_violations


def _entry_from_payload(payload: Any, *, path: Path, line_number: int) -> HistoryEntry:
    failures = _schema_violations(payload, schema_name="history_entry", path=path)
    if failures:
        raise StateCorrupt(f"ledger line {line_number}: {failures[0]}")
    return HistoryEntry(
        stage_name=str(payload["stage_name"]),
        iteration_number=int(payload["iteration_number"]),
        timestamp=str(payload["timestamp"]),
        decision=str(payload["decision"]),
        reason=str(payload.get("reason", "") or ""),
        findings_count=_coerce_optional_int(payload.get("findings_count")),
    )


class HistoryLedger:
    def __init__(self, path: Path, *, log_path: Path | None = None) -> None:
        self.path = path
        self.log_path = log_path

    def _log(self, message: str) -> None:
        if self.log_path is not None:
            _append_log(self.log_path, message)

    def exists(self) -> bool:
        return self.path.exists()

    def touch(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def entries(self, stage_name: str | None = None) -> Iterator[HistoryEntry]:
        """Yield entries in insertion order, optionally for one stage.

        Each call re-reads the file, so the iterator can be restarted by
        calling ``entries`` again.
        """
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            pending: tuple[int, str] | None = None
            for line_number, raw_line in enumerate(handle, start=1):
                if pending is not None:
                    entry = self._parse_line(pending[1], pending[0], final=False)
                    if entry is not None and (stage_name is None or entry.stage_name == stage_name):
                        yield entry
                pending = (line_number, raw_line)
            if pending is not None:
                entry = self._parse_line(pending[1], pending[0], final=True)
                if entry is not None and (stage_name is None or entry.stage_name == stage_name):
                    yield entry

    def _parse_line(self, raw_line: str, line_number: int, *, final: bool) -> HistoryEntry | None:
        text = raw_line.strip()
        if not text:
            return None
        # A final line without its newline was never acknowledged as appended;
        # it is skipped here and trimmed, with a log line, by the next append.
        torn = final and not raw_line.endswith("\n")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            if torn:
                return None
            raise StateCorrupt(f"ledger line {line_number} in {self.path} is not valid JSON: {exc}") from exc
        if torn:
            return None
        return _entry_from_payload(payload, path=self.path, line_number=line_number)

    def count(self, stage_name: str) -> int:
        return sum(1 for _entry in self.entries(stage_name))

    def _trim_torn_tail(self) -> None:
        if not self.path.exists():
            return
        size = self.path.stat().st_size
        if size == 0:
            return
        with self.path.open("rb+") as handle:
            handle.seek(size - 1)
            if handle.read(1) == b"\n":
                return
            handle.seek(0)
            data = handle.read()
            keep = data.rfind(b"\n") + 1
            handle.truncate(keep)
            handle.flush()
            os.fsync(handle.fileno())
        self._log(f"ledger trimmed {size - keep} bytes of torn tail from {self.path}")

    def append(self, entry: HistoryEntry) -> None:
        if entry.decision not in DECISIONS:
            raise LedgerAppendFailed(f"decision must be one of {sorted(DECISIONS)}, got '{entry.decision}'")
        expected = self.count(entry.stage_name) + 1
        if entry.iteration_number != expected:
            raise LedgerAppendFailed(
                f"stage '{entry.stage_name}' expects iteration {expected} next, "
                f"refusing to record iteration {entry.iteration_number}"
            )
        line = json.dumps(entry.to_payload(), ensure_ascii=False) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._trim_torn_tail()
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise LedgerAppendFailed(f"failed to append to {self.path}: {exc}") from exc
