from __future__ import annotations

import json
import os
import threading
from pathlib import Path

from autoloop.config import resolve_session_paths
from autoloop.history import HistoryLedger
from autoloop.models import (
    AgentInvocationFailed,
    CompletionStrategy,
    ExhaustList,
    FixedCount,
    IterationContext,
    IterationResult,
    PipelineDefinition,
    Plateau,
    SessionPaths,
    StageDefinition,
)
from autoloop.orchestrator import run_session
from autoloop.state import StateStore


def _only_self_alive(pid: int) -> bool:
    return pid == os.getpid()


def _pipeline(*stages: tuple[str, CompletionStrategy]) -> PipelineDefinition:
    return PipelineDefinition(
        name="pipe",
        stages=tuple(
            StageDefinition(
                name=name,
                completion=strategy,
                model="opus",
                delay_seconds=0.0,
                prompt="Work on {item} for {stage}",
            )
            for name, strategy in stages
        ),
    )


def _paths(tmp_path: Path) -> SessionPaths:
    return resolve_session_paths(tmp_path / "runs", "s1")


class _ScriptedRunner:
    def __init__(
        self,
        decisions: dict[str, list[str]] | None = None,
        *,
        fail_on: set[tuple[str, int]] | None = None,
        stop_after: int | None = None,
    ) -> None:
        self.decisions = decisions or {}
        self.fail_on = fail_on or set()
        self.stop_after = stop_after
        self.calls: list[tuple[str, int, str]] = []
        self.contexts: list[IterationContext] = []

    def run(
        self,
        stage: StageDefinition,
        iteration: int,
        context: IterationContext,
        cancel_event: threading.Event,
    ) -> IterationResult:
        self.calls.append((stage.name, iteration, context.item))
        self.contexts.append(context)
        if (stage.name, iteration) in self.fail_on:
            raise AgentInvocationFailed(f"agent for {stage.name} iteration {iteration} exited with 1")
        if self.stop_after is not None and len(self.calls) >= self.stop_after:
            cancel_event.set()
        planned = self.decisions.get(stage.name, [])
        decision = planned[iteration - 1] if iteration <= len(planned) else "continue"
        return IterationResult(decision=decision, reason=f"{stage.name} #{iteration}", findings_count=iteration)


class TestRunSession:
    def test_runs_all_stages_to_completion(self, tmp_path: Path) -> None:
        pipeline = _pipeline(
            ("draft", ExhaustList(items=("a", "b"))),
            ("review", Plateau(min_iterations=1, consensus_count=2)),
        )
        paths = _paths(tmp_path)
        runner = _ScriptedRunner({"review": ["stop", "stop"]})

        outcome = run_session(pipeline, paths, runner, is_alive=_only_self_alive)

        assert outcome.exit_code == 0
        assert runner.calls == [("draft", 1, "a"), ("draft", 2, "b"), ("review", 1, ""), ("review", 2, "")]
        ledger = HistoryLedger(paths.ledger_path)
        assert ledger.count("draft") == 2
        assert ledger.count("review") == 2
        state = StateStore(paths.state_path).load()
        assert state.status == "completed"
        assert [stage.status for stage in state.stages] == ["complete", "complete"]
        assert not (paths.locks_dir / "s1.lock").exists()

    def test_writes_context_prompt_and_progress(self, tmp_path: Path) -> None:
        pipeline = _pipeline(("draft", ExhaustList(items=("a", "b"))))
        paths = _paths(tmp_path)
        runner = _ScriptedRunner()

        run_session(pipeline, paths, runner, is_alive=_only_self_alive)

        second = runner.contexts[1]
        manifest = json.loads(second.context_path.read_text(encoding="utf-8"))
        assert manifest["item"] == "b"
        assert manifest["stage"] == {"name": "draft", "index": 0, "model": "opus"}
        assert manifest["inputs"]["from_previous_iterations"] == []
        assert second.prompt_path.read_text(encoding="utf-8") == "Work on b for draft\n"
        progress = second.progress_path.read_text(encoding="utf-8")
        assert "## Iteration 1 (continue)" in progress
        assert "## Iteration 2 (continue)" in progress
        assert second.progress_path.parent.name == "stage-00-draft"

    def test_zero_budget_stage_is_skipped(self, tmp_path: Path) -> None:
        pipeline = _pipeline(("warmup", FixedCount(0)), ("draft", FixedCount(1)))
        runner = _ScriptedRunner()

        outcome = run_session(pipeline, _paths(tmp_path), runner, is_alive=_only_self_alive)

        assert outcome.exit_code == 0
        assert runner.calls == [("draft", 1, "")]

    def test_existing_session_requires_resume_or_force(self, tmp_path: Path) -> None:
        pipeline = _pipeline(("draft", FixedCount(1)))
        paths = _paths(tmp_path)
        run_session(pipeline, paths, _ScriptedRunner(), is_alive=_only_self_alive)

        outcome = run_session(pipeline, paths, _ScriptedRunner(), is_alive=_only_self_alive)

        assert outcome.exit_code == 2
        assert "already exists" in outcome.message

    def test_live_lock_exits_already_running(self, tmp_path: Path) -> None:
        pipeline = _pipeline(("draft", FixedCount(1)))
        paths = _paths(tmp_path)
        paths.locks_dir.mkdir(parents=True)
        (paths.locks_dir / "s1.lock").write_text(
            json.dumps({"owner_pid": 12345, "session_id": "s1", "acquired_at": "2026-01-01T00:00:00Z"}),
            encoding="utf-8",
        )
        runner = _ScriptedRunner()

        outcome = run_session(pipeline, paths, runner, is_alive=lambda pid: True)

        assert outcome.exit_code == 1
        assert runner.calls == []
        assert (paths.locks_dir / "s1.lock").exists()


class TestFailures:
    def test_agent_failure_leaves_iteration_unrecorded(self, tmp_path: Path) -> None:
        pipeline = _pipeline(("draft", FixedCount(3)))
        paths = _paths(tmp_path)
        runner = _ScriptedRunner(fail_on={("draft", 2)})

        outcome = run_session(pipeline, paths, runner, is_alive=_only_self_alive)

        assert outcome.exit_code == 3
        assert HistoryLedger(paths.ledger_path).count("draft") == 1
        state = StateStore(paths.state_path).load()
        assert state.iteration == 2
        assert state.iteration_completed == 1
        assert state.iteration_started is not None
        assert state.status == "failed"
        assert state.error_type == "AgentInvocationFailed"
        assert not (paths.locks_dir / "s1.lock").exists()

    def test_resume_retries_the_same_iteration(self, tmp_path: Path) -> None:
        pipeline = _pipeline(("draft", FixedCount(3)))
        paths = _paths(tmp_path)
        run_session(pipeline, paths, _ScriptedRunner(fail_on={("draft", 2)}), is_alive=_only_self_alive)
        retry = _ScriptedRunner()

        outcome = run_session(pipeline, paths, retry, resume=True, is_alive=_only_self_alive)

        assert outcome.exit_code == 0
        assert retry.calls == [("draft", 2, ""), ("draft", 3, "")]
        entries = list(HistoryLedger(paths.ledger_path).entries("draft"))
        assert [entry.iteration_number for entry in entries] == [1, 2, 3]

    def test_stop_request_releases_lock_without_recording_more(self, tmp_path: Path) -> None:
        pipeline = _pipeline(("draft", FixedCount(5)))
        paths = _paths(tmp_path)
        stop_event = threading.Event()
        runner = _ScriptedRunner(stop_after=1)

        outcome = run_session(pipeline, paths, runner, stop_event=stop_event, is_alive=_only_self_alive)

        assert outcome.exit_code == 3
        assert runner.calls == [("draft", 1, "")]
        state = StateStore(paths.state_path).load()
        assert state.status == "running"
        assert state.iteration_completed == 1
        assert HistoryLedger(paths.ledger_path).count("draft") == 1
        assert not (paths.locks_dir / "s1.lock").exists()

    def test_misconfigured_strategy_fails_before_any_iteration(self, tmp_path: Path) -> None:
        pipeline = _pipeline(("draft", FixedCount(1)), ("review", Plateau(min_iterations=2, consensus_count=0)))
        paths = _paths(tmp_path)
        runner = _ScriptedRunner()

        outcome = run_session(pipeline, paths, runner, is_alive=_only_self_alive)

        assert outcome.exit_code == 2
        assert runner.calls == [("draft", 1, "")]
        state = StateStore(paths.state_path).load()
        assert state.status == "failed"
        assert state.error_type == "StrategyMisconfigured"
        assert state.stages[1].status == "failed"
        assert HistoryLedger(paths.ledger_path).count("review") == 0

    def test_resume_missing_session_is_not_found(self, tmp_path: Path) -> None:
        outcome = run_session(
            _pipeline(("draft", FixedCount(1))),
            _paths(tmp_path),
            _ScriptedRunner(),
            resume=True,
            is_alive=_only_self_alive,
        )
        assert outcome.exit_code == 2
        assert outcome.state is None
