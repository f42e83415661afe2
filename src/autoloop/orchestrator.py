"""Stage orchestration -- drive iterations, record history, advance stages."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable

from autoloop.completions import (
    CompletionEvaluator,
    ReadinessProbe,
    budget_exhausted,
    validate_strategy,
)
from autoloop.constants import (
    EXIT_ALREADY_RUNNING,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_UNRECOVERABLE,
    SESSION_COMPLETED,
)
from autoloop.context import append_progress, build_iteration_context
from autoloop.history import HistoryLedger
from autoloop.locking import LockCoordinator, LockHandle, _pid_is_alive
from autoloop.models import (
    AgentInvocationFailed,
    HistoryEntry,
    LedgerAppendFailed,
    LoopError,
    PipelineConfigError,
    PipelineDefinition,
    PipelineState,
    SessionAlreadyRunning,
    SessionNotFound,
    SessionOutcome,
    SessionPaths,
    StopRequested,
    StrategyMisconfigured,
)
from autoloop.resume import ResumeCoordinator
from autoloop.runners import AgentRunner
from autoloop.state import (
    StateStore,
    mark_iteration_completed,
    mark_iteration_started,
    mark_session_completed,
    mark_session_failed,
)
from autoloop.utils import _append_log, _utc_now, _write_text_atomic


class StageOrchestrator:
    def __init__(
        self,
        pipeline: PipelineDefinition,
        paths: SessionPaths,
        *,
        store: StateStore,
        ledger: HistoryLedger,
        evaluator: CompletionEvaluator,
        runner: AgentRunner,
        stop_event: threading.Event,
    ) -> None:
        self.pipeline = pipeline
        self.paths = paths
        self.store = store
        self.ledger = ledger
        self.evaluator = evaluator
        self.runner = runner
        self.stop_event = stop_event

    def _log(self, message: str) -> None:
        _append_log(self.paths.log_path, message)

    def _fail(self, state: PipelineState, exc: LoopError) -> PipelineState:
        failed = mark_session_failed(state, type(exc).__name__, str(exc))
        self.store.save(failed)
        self._log(f"session '{state.session}' failed: {type(exc).__name__}: {exc}")
        return failed

    def _advance(self, state: PipelineState, message: str) -> PipelineState:
        stage = self.pipeline.stages[state.current_stage]
        advanced = self.store.transition_stage(state)
        if advanced.is_finished:
            self._log(f"stage '{stage.name}' complete ({message}); pipeline finished")
        else:
            self._log(
                f"stage '{stage.name}' complete ({message}); "
                f"entering stage '{self.pipeline.stages[advanced.current_stage].name}'"
            )
        return advanced

    def run_stage(self, state: PipelineState) -> PipelineState:
        """Iterate the current stage until its strategy is satisfied.

        Returns the state after the transition out of the stage. A stop
        request between iterations raises ``StopRequested``; an agent failure
        leaves the iteration started but unrecorded.
        """
        index = state.current_stage
        stage = self.pipeline.stages[index]
        try:
            validate_strategy(stage.completion)
        except StrategyMisconfigured as exc:
            self._fail(state, exc)
            raise

        self._log(
            f"stage '{stage.name}' start index={index} strategy={stage.completion.kind} "
            f"iteration_completed={state.iteration_completed}"
        )
        while True:
            if self.stop_event.is_set():
                raise StopRequested(
                    f"stop requested before iteration {state.iteration_completed + 1} of stage '{stage.name}'"
                )
            if budget_exhausted(stage.completion, state.iteration_completed):
                return self._advance(state, f"budget exhausted after {state.iteration_completed} iterations")

            iteration = state.iteration_completed + 1
            state = mark_iteration_started(state, iteration)
            self.store.save(state)
            context = build_iteration_context(self.paths, self.pipeline, index, iteration)
            self._log(
                f"iteration start stage={stage.name} iteration={iteration}"
                + (f" item={context.item}" if context.item else "")
            )

            try:
                result = self.runner.run(stage, iteration, context, self.stop_event)
                entry = HistoryEntry(
                    stage_name=stage.name,
                    iteration_number=iteration,
                    timestamp=_utc_now(),
                    decision=result.decision,
                    reason=result.reason,
                    findings_count=result.findings_count,
                )
                self.ledger.append(entry)
            except AgentInvocationFailed as exc:
                if not exc.cancelled:
                    self._fail(state, exc)
                raise
            except LedgerAppendFailed as exc:
                self._fail(state, exc)
                raise

            state = mark_iteration_completed(state, iteration)
            self.store.save(state)
            append_progress(context.progress_path, entry)

            done, message = self.evaluator.evaluate(
                stage.completion, state, self.ledger.entries(stage.name), result
            )
            self._log(
                f"iteration done stage={stage.name} iteration={iteration} "
                f"decision={result.decision} complete={str(done).lower()} message={message}"
            )
            if done:
                return self._advance(state, message)
            if self.stop_event.wait(stage.delay_seconds):
                raise StopRequested(
                    f"stop requested after iteration {iteration} of stage '{stage.name}'"
                )


# ---------------------------------------------------------------------------
# Session driver
# ---------------------------------------------------------------------------


def _exit_code_for(exc: LoopError) -> int:
    if isinstance(exc, SessionAlreadyRunning):
        return EXIT_ALREADY_RUNNING
    if isinstance(exc, (AgentInvocationFailed, StopRequested)):
        return EXIT_INTERRUPTED
    return EXIT_UNRECOVERABLE


def _load_state_quietly(store: StateStore) -> PipelineState | None:
    if not store.exists():
        return None
    try:
        return store.load()
    except LoopError:
        return None


def _initialize_session(
    pipeline: PipelineDefinition,
    paths: SessionPaths,
    store: StateStore,
    ledger: HistoryLedger,
) -> PipelineState:
    if store.exists():
        raise PipelineConfigError(
            f"session '{paths.session}' already exists at {paths.session_dir}; "
            "use `autoloop resume` or `autoloop run --force`"
        )
    paths.session_dir.mkdir(parents=True, exist_ok=True)
    if pipeline.source_path is not None and Path(pipeline.source_path).exists():
        _write_text_atomic(
            paths.pipeline_path, Path(pipeline.source_path).read_text(encoding="utf-8")
        )
    ledger.touch()
    state = store.initialize(paths.session, pipeline)
    _append_log(
        paths.log_path,
        f"session '{paths.session}' initialized pipeline={pipeline.name} stages={','.join(pipeline.stage_names())}",
    )
    return state


def run_session(
    pipeline: PipelineDefinition,
    paths: SessionPaths,
    runner: AgentRunner,
    *,
    probe: ReadinessProbe | None = None,
    resume: bool = False,
    stop_event: threading.Event | None = None,
    is_alive: Callable[[int], bool] = _pid_is_alive,
) -> SessionOutcome:
    """Run (or resume) a session to completion under the session lock."""
    stop_event = stop_event if stop_event is not None else threading.Event()
    store = StateStore(paths.state_path)
    ledger = HistoryLedger(paths.ledger_path, log_path=paths.log_path)
    locks = LockCoordinator(paths.locks_dir, log_path=paths.log_path, is_alive=is_alive)
    evaluator = CompletionEvaluator(probe)
    coordinator = ResumeCoordinator(
        pipeline, store, ledger, locks, evaluator, log_path=paths.log_path, paths=paths
    )

    handle: LockHandle | None = None
    try:
        observed = locks.read(paths.session)
        if resume:
            coordinator.check_not_running(observed)
            if not store.exists():
                raise SessionNotFound(
                    f"session '{paths.session}' has no state at {paths.state_path}"
                )
        handle = locks.acquire(paths.session)

        if resume:
            plan, state = coordinator.resume(observed)
            if plan.finished:
                _append_log(paths.log_path, f"session '{paths.session}' already finished")
        else:
            state = _initialize_session(pipeline, paths, store, ledger)

        orchestrator = StageOrchestrator(
            pipeline,
            paths,
            store=store,
            ledger=ledger,
            evaluator=evaluator,
            runner=runner,
            stop_event=stop_event,
        )
        while not state.is_finished:
            state = orchestrator.run_stage(state)
        if state.status != SESSION_COMPLETED:
            state = mark_session_completed(state)
            store.save(state)
        _append_log(paths.log_path, f"session '{paths.session}' completed")
        return SessionOutcome(exit_code=EXIT_OK, state=state, message="session completed")
    except LoopError as exc:
        if paths.session_dir.exists():
            _append_log(paths.log_path, f"session '{paths.session}' stopped: {type(exc).__name__}: {exc}")
        return SessionOutcome(
            exit_code=_exit_code_for(exc),
            state=_load_state_quietly(store),
            message=str(exc),
        )
    finally:
        if handle is not None:
            locks.release(handle)
