"""Resume reconciliation -- recover true progress after a crash.

The persisted counters in ``state.json`` are a cache. On resume the ledger
count for the current stage wins, any iteration beyond it is treated as never
started, and the completion strategy is re-evaluated in case the stage
finished exactly when the crash happened. Reconciliation is idempotent.
"""

from __future__ import annotations

from pathlib import Path

from autoloop.completions import CompletionEvaluator, validate_strategy
from autoloop.constants import (
    OUTPUT_FILENAME,
    SESSION_COMPLETED,
    SESSION_RUNNING,
    STAGE_COMPLETE,
    STAGE_FAILED,
    STAGE_PENDING,
    STAGE_RUNNING,
    STATUS_FILENAME,
)
from autoloop.history import HistoryLedger
from autoloop.locking import LockCoordinator
from autoloop.models import (
    IterationResult,
    LockRecord,
    PipelineDefinition,
    PipelineState,
    ResumePlan,
    SessionAlreadyRunning,
    SessionPaths,
    StateCorrupt,
    StrategyMisconfigured,
)
from autoloop.runners import parse_iteration_result
from autoloop.state import (
    StateStore,
    mark_session_completed,
    mark_session_resumed,
    reconcile_counters,
    transition_stage,
)
from autoloop.utils import _append_log


class ResumeCoordinator:
    def __init__(
        self,
        pipeline: PipelineDefinition,
        store: StateStore,
        ledger: HistoryLedger,
        locks: LockCoordinator,
        evaluator: CompletionEvaluator,
        *,
        log_path: Path | None = None,
        paths: SessionPaths | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.ledger = ledger
        self.locks = locks
        self.evaluator = evaluator
        self.log_path = log_path
        self.paths = paths

    def _log(self, message: str) -> None:
        if self.log_path is not None:
            _append_log(self.log_path, message)

    def check_not_running(self, lock: LockRecord | None) -> None:
        if lock is not None and self.locks.is_alive(lock):
            raise SessionAlreadyRunning(
                f"session '{lock.session_id}' is already running (pid={lock.owner_pid})"
            )

    def _check_stage_layout(self, state: PipelineState) -> None:
        expected = self.pipeline.stage_names()
        actual = tuple(stage.name for stage in state.stages)
        if actual != expected:
            raise StateCorrupt(
                f"session '{state.session}' stages {list(actual)} do not match "
                f"pipeline '{self.pipeline.name}' stages {list(expected)}"
            )
        for index, stage in enumerate(state.stages):
            if index < state.current_stage and stage.status != STAGE_COMPLETE:
                raise StateCorrupt(
                    f"stage '{stage.name}' precedes the current stage but is '{stage.status}'"
                )
            if index > state.current_stage and stage.status != STAGE_PENDING:
                raise StateCorrupt(
                    f"stage '{stage.name}' follows the current stage but is '{stage.status}'"
                )
        current = state.current_stage_state
        if current is not None and current.status not in (STAGE_RUNNING, STAGE_FAILED):
            raise StateCorrupt(
                f"current stage '{current.name}' has status '{current.status}'"
            )

    def _latest_recorded_result(
        self, stage_index: int, stage_name: str, ledger_count: int
    ) -> IterationResult | None:
        """Rebuild the result of the last recorded iteration from its files.

        ``output.txt`` and ``status.json`` are written before the ledger
        append, so a crash between the append and the completion check still
        leaves them on disk.
        """
        if self.paths is None or ledger_count <= 0:
            return None
        iteration_dir = self.paths.iteration_dir(stage_index, stage_name, ledger_count)
        status_path = iteration_dir / STATUS_FILENAME
        output_path = iteration_dir / OUTPUT_FILENAME
        if not status_path.exists() and not output_path.exists():
            return None
        raw_output = (
            output_path.read_text(encoding="utf-8", errors="replace")
            if output_path.exists()
            else ""
        )
        return parse_iteration_result(status_path, raw_output)

    def compute_resume_point(
        self, state: PipelineState, lock: LockRecord | None
    ) -> tuple[ResumePlan, PipelineState]:
        """Return the resume plan and the reconciled state. Pure; never saves."""
        self.check_not_running(lock)

        if state.is_finished or state.status == SESSION_COMPLETED:
            if state.is_finished and state.status != SESSION_COMPLETED:
                state = mark_session_completed(state)
            return (
                ResumePlan(
                    stage_index=len(state.stages),
                    next_iteration=0,
                    reset_stage=False,
                    finished=True,
                ),
                state,
            )

        self._check_stage_layout(state)
        if state.status == SESSION_RUNNING and lock is None and not self.ledger.exists():
            raise StateCorrupt(
                f"session '{state.session}' claims to be running but both its ledger "
                f"({self.ledger.path}) and its lock are missing"
            )

        reconciled = mark_session_resumed(state)
        stage = self.pipeline.stages[reconciled.current_stage]
        ledger_count = self.ledger.count(stage.name)
        if (
            ledger_count != reconciled.iteration_completed
            or reconciled.iteration != ledger_count
            or reconciled.iteration_started is not None
        ):
            self._log(
                f"reconcile stage '{stage.name}': iteration={reconciled.iteration} "
                f"iteration_completed={reconciled.iteration_completed} "
                f"iteration_started={reconciled.iteration_started} -> ledger_count={ledger_count}"
            )
            reconciled = reconcile_counters(reconciled, ledger_count)

        try:
            validate_strategy(stage.completion)
        except StrategyMisconfigured:
            # The orchestrator fails the stage before its next iteration.
            done, message = (False, "strategy misconfigured")
        else:
            done, message = self.evaluator.evaluate(
                stage.completion,
                reconciled,
                self.ledger.entries(stage.name),
                self._latest_recorded_result(reconciled.current_stage, stage.name, ledger_count),
            )

        if done:
            self._log(f"stage '{stage.name}' already complete on resume: {message}")
            advanced = transition_stage(reconciled)
            return (
                ResumePlan(
                    stage_index=advanced.current_stage,
                    next_iteration=0 if advanced.is_finished else 1,
                    reset_stage=True,
                    finished=advanced.is_finished,
                ),
                advanced,
            )

        return (
            ResumePlan(
                stage_index=reconciled.current_stage,
                next_iteration=ledger_count + 1,
                reset_stage=False,
            ),
            reconciled,
        )

    def resume(self, lock: LockRecord | None) -> tuple[ResumePlan, PipelineState]:
        """Load, reconcile, and persist the session before returning the plan."""
        state = self.store.load()
        plan, reconciled = self.compute_resume_point(state, lock)
        if reconciled != state:
            self.store.save(reconciled)
        self._log(
            f"resume plan stage_index={plan.stage_index} next_iteration={plan.next_iteration} "
            f"reset_stage={plan.reset_stage} finished={plan.finished}"
        )
        return plan, reconciled
