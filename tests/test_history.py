from __future__ import annotations

import json
from pathlib import Path

import pytest

from autoloop.history import HistoryLedger
from autoloop.models import HistoryEntry, LedgerAppendFailed, StateCorrupt


def _entry(stage: str, number: int, decision: str = "continue", findings: int | None = None) -> HistoryEntry:
    return HistoryEntry(
        stage_name=stage,
        iteration_number=number,
        timestamp=f"2026-01-01T00:00:0{number % 10}Z",
        decision=decision,
        reason=f"{stage} iteration {number}",
        findings_count=findings,
    )


class TestAppendAndRead:
    def test_entries_preserve_insertion_order_per_stage(self, tmp_path: Path) -> None:
        ledger = HistoryLedger(tmp_path / "history.jsonl")
        ledger.append(_entry("draft", 1))
        ledger.append(_entry("review", 1, "stop", 2))
        ledger.append(_entry("draft", 2, "stop"))

        assert [entry.iteration_number for entry in ledger.entries("draft")] == [1, 2]
        assert [entry.stage_name for entry in ledger.entries()] == ["draft", "review", "draft"]
        assert ledger.count("review") == 1
        review = next(ledger.entries("review"))
        assert review.decision == "stop"
        assert review.findings_count == 2

    def test_entries_is_restartable(self, tmp_path: Path) -> None:
        ledger = HistoryLedger(tmp_path / "history.jsonl")
        ledger.append(_entry("draft", 1))
        first = list(ledger.entries("draft"))
        second = list(ledger.entries("draft"))
        assert first == second

    def test_missing_file_has_no_entries(self, tmp_path: Path) -> None:
        ledger = HistoryLedger(tmp_path / "history.jsonl")
        assert ledger.exists() is False
        assert list(ledger.entries()) == []
        assert ledger.count("draft") == 0

    def test_append_never_rewrites_prior_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "history.jsonl"
        ledger = HistoryLedger(path)
        ledger.append(_entry("draft", 1))
        before = path.read_text(encoding="utf-8")
        ledger.append(_entry("draft", 2))
        after = path.read_text(encoding="utf-8")
        assert after.startswith(before)
        assert len(after.splitlines()) == 2


class TestAppendGuards:
    def test_rejects_skipped_iteration(self, tmp_path: Path) -> None:
        ledger = HistoryLedger(tmp_path / "history.jsonl")
        ledger.append(_entry("draft", 1))
        with pytest.raises(LedgerAppendFailed, match="expects iteration 2"):
            ledger.append(_entry("draft", 3))

    def test_rejects_double_count(self, tmp_path: Path) -> None:
        ledger = HistoryLedger(tmp_path / "history.jsonl")
        ledger.append(_entry("draft", 1))
        with pytest.raises(LedgerAppendFailed):
            ledger.append(_entry("draft", 1))
        assert ledger.count("draft") == 1

    def test_rejects_unknown_decision(self, tmp_path: Path) -> None:
        ledger = HistoryLedger(tmp_path / "history.jsonl")
        with pytest.raises(LedgerAppendFailed, match="decision"):
            ledger.append(_entry("draft", 1, decision="maybe"))

    def test_write_failure_is_ledger_append_failed(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        ledger = HistoryLedger(blocker / "history.jsonl")
        with pytest.raises(LedgerAppendFailed):
            ledger.append(_entry("draft", 1))


class TestTornTail:
    def test_torn_final_line_is_not_an_entry(self, tmp_path: Path) -> None:
        path = tmp_path / "history.jsonl"
        log_path = tmp_path / "orchestrator.log"
        ledger = HistoryLedger(path, log_path=log_path)
        ledger.append(_entry("draft", 1))
        with path.open("a", encoding="utf-8") as handle:
            handle.write('{"stage_name": "draft", "iteration_num')

        assert ledger.count("draft") == 1
        assert ledger.count("draft") == 1
        assert not log_path.exists()

        ledger.append(_entry("draft", 2))

        log_text = log_path.read_text(encoding="utf-8")
        assert log_text.count("torn tail") == 1

    def test_unterminated_complete_object_is_not_an_entry(self, tmp_path: Path) -> None:
        path = tmp_path / "history.jsonl"
        ledger = HistoryLedger(path)
        ledger.append(_entry("draft", 1))
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(_entry("draft", 2).to_payload()))
        assert ledger.count("draft") == 1

    def test_append_trims_torn_tail(self, tmp_path: Path) -> None:
        path = tmp_path / "history.jsonl"
        ledger = HistoryLedger(path)
        ledger.append(_entry("draft", 1))
        with path.open("a", encoding="utf-8") as handle:
            handle.write('{"stage_na')

        ledger.append(_entry("draft", 2))

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert [entry.iteration_number for entry in ledger.entries("draft")] == [1, 2]

    def test_corrupt_middle_line_is_state_corrupt(self, tmp_path: Path) -> None:
        path = tmp_path / "history.jsonl"
        ledger = HistoryLedger(path)
        ledger.append(_entry("draft", 1))
        with path.open("a", encoding="utf-8") as handle:
            handle.write("not json\n")
        ledger_again = HistoryLedger(path)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(_entry("draft", 2).to_payload()) + "\n")
        with pytest.raises(StateCorrupt):
            ledger_again.count("draft")

    def test_schema_violation_is_state_corrupt(self, tmp_path: Path) -> None:
        path = tmp_path / "history.jsonl"
        path.write_text(json.dumps({"stage_name": "draft"}) + "\n", encoding="utf-8")
        with pytest.raises(StateCorrupt, match="ledger line 1"):
            HistoryLedger(path).count("draft")
