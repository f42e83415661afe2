"""Autoloop state -- persistence and the pure transitions over ``PipelineState``.

Every stage entry goes through ``_reset_iteration_counters``; nothing else
writes ``iteration``, ``iteration_completed`` or ``iteration_started`` back
to zero.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any

from autoloop.constants import (
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_RUNNING,
    SESSION_TRANSITIONS,
    STAGE_COMPLETE,
    STAGE_FAILED,
    STAGE_PENDING,
    STAGE_RUNNING,
)
from autoloop.models import (
    PipelineDefinition,
    PipelineState,
    SessionNotFound,
    StageState,
    StateCorrupt,
)
from autoloop.utils import _read_json, _schema_violations, _utc_now, _write_json


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _state_to_payload(state: PipelineState) -> dict[str, Any]:
    return {
        "session": state.session,
        "pipeline": state.pipeline,
        "status": state.status,
        "current_stage": state.current_stage,
        "iteration": state.iteration,
        "iteration_completed": state.iteration_completed,
        "iteration_started": state.iteration_started,
        "stages": [
            {
                "name": stage.name,
                "status": stage.status,
                "completed_at": stage.completed_at,
            }
            for stage in state.stages
        ],
        "started_at": state.started_at,
        "completed_at": state.completed_at,
        "error": state.error,
        "error_type": state.error_type,
    }


def _state_from_payload(payload: dict[str, Any], *, path: Path) -> PipelineState:
    failures = _schema_violations(payload, schema_name="state", path=path)
    if failures:
        raise StateCorrupt("; ".join(failures))
    state = PipelineState(
        session=str(payload["session"]),
        pipeline=str(payload["pipeline"]),
        status=str(payload["status"]),
        current_stage=int(payload["current_stage"]),
        iteration=int(payload["iteration"]),
        iteration_completed=int(payload["iteration_completed"]),
        iteration_started=payload.get("iteration_started"),
        stages=tuple(
            StageState(
                name=str(stage["name"]),
                status=str(stage["status"]),
                completed_at=stage.get("completed_at"),
            )
            for stage in payload["stages"]
        ),
        started_at=str(payload["started_at"]),
        completed_at=payload.get("completed_at"),
        error=payload.get("error"),
        error_type=payload.get("error_type"),
    )
    if state.current_stage > len(state.stages):
        raise StateCorrupt(
            f"{path}: current_stage {state.current_stage} is past the {len(state.stages)} defined stages"
        )
    return state


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------


def _reset_iteration_counters(state: PipelineState) -> PipelineState:
    return replace(state, iteration=0, iteration_completed=0, iteration_started=None)


def _with_stage_status(
    stages: tuple[StageState, ...],
    index: int,
    status: str,
    *,
    completed_at: str | None = None,
) -> tuple[StageState, ...]:
    updated = list(stages)
    updated[index] = replace(updated[index], status=status, completed_at=completed_at)
    return tuple(updated)


def _transition_session(state: PipelineState, target: str) -> PipelineState:
    if state.status == target:
        return state
    allowed = SESSION_TRANSITIONS.get(state.status, ())
    if target not in allowed:
        raise StateCorrupt(f"invalid session transition {state.status} -> {target}")
    return replace(state, status=target)


def new_session_state(session: str, pipeline: PipelineDefinition) -> PipelineState:
    stages = tuple(
        StageState(name=stage.name, status=STAGE_PENDING) for stage in pipeline.stages
    )
    stages = _with_stage_status(stages, 0, STAGE_RUNNING)
    state = PipelineState(
        session=session,
        pipeline=pipeline.name,
        status=SESSION_RUNNING,
        current_stage=0,
        iteration=0,
        iteration_completed=0,
        iteration_started=None,
        stages=stages,
        started_at=_utc_now(),
    )
    return _reset_iteration_counters(state)


def transition_stage(state: PipelineState, *, now: str | None = None) -> PipelineState:
    """Complete the current stage and start the next one with fresh counters.

    Completing the last stage leaves ``current_stage == len(stages)`` and the
    session ``completed``.
    """
    if state.is_finished:
        raise StateCorrupt(f"session '{state.session}' has no stage left to transition from")
    stamp = now or _utc_now()
    stages = _with_stage_status(
        state.stages, state.current_stage, STAGE_COMPLETE, completed_at=stamp
    )
    next_index = state.current_stage + 1
    if next_index < len(stages):
        stages = _with_stage_status(stages, next_index, STAGE_RUNNING)
    advanced = _reset_iteration_counters(
        replace(state, current_stage=next_index, stages=stages)
    )
    if advanced.is_finished:
        advanced = replace(
            _transition_session(advanced, SESSION_COMPLETED), completed_at=stamp
        )
    return advanced


def mark_iteration_started(
    state: PipelineState, iteration: int, *, now: str | None = None
) -> PipelineState:
    if iteration != state.iteration_completed + 1:
        raise StateCorrupt(
            f"iteration {iteration} cannot start after {state.iteration_completed} completed"
        )
    running = _transition_session(state, SESSION_RUNNING)
    return replace(running, iteration=iteration, iteration_started=now or _utc_now())


def mark_iteration_completed(state: PipelineState, iteration: int) -> PipelineState:
    if iteration != state.iteration:
        raise StateCorrupt(
            f"iteration {iteration} completed but iteration {state.iteration} was started"
        )
    return replace(state, iteration_completed=iteration, iteration_started=None)


def reconcile_counters(state: PipelineState, ledger_count: int) -> PipelineState:
    """Align the current-stage counters with the ledger's count.

    Anything beyond ``ledger_count`` is treated as never started.
    """
    return replace(
        state,
        iteration=ledger_count,
        iteration_completed=ledger_count,
        iteration_started=None,
    )


def mark_session_failed(state: PipelineState, error_type: str, message: str) -> PipelineState:
    failed = _transition_session(state, SESSION_FAILED)
    stages = state.stages
    if not state.is_finished:
        stages = _with_stage_status(stages, state.current_stage, STAGE_FAILED)
    return replace(
        failed,
        stages=stages,
        error=message.strip() or None,
        error_type=error_type.strip() or None,
    )


def mark_session_resumed(state: PipelineState) -> PipelineState:
    """Reopen a failed session so its current stage can run again."""
    if state.status != SESSION_FAILED:
        return state
    resumed = _transition_session(state, SESSION_RUNNING)
    stages = state.stages
    if not state.is_finished:
        stages = _with_stage_status(stages, state.current_stage, STAGE_RUNNING)
    return replace(resumed, stages=stages, error=None, error_type=None)


def mark_session_completed(state: PipelineState, *, now: str | None = None) -> PipelineState:
    completed = _transition_session(state, SESSION_COMPLETED)
    return replace(
        completed,
        completed_at=completed.completed_at or now or _utc_now(),
        iteration_started=None,
    )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class StateStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> PipelineState:
        if not self.path.exists():
            raise SessionNotFound(f"state file not found: {self.path}")
        return _state_from_payload(_read_json(self.path), path=self.path)

    def save(self, state: PipelineState) -> None:
        _write_json(self.path, _state_to_payload(state))

    def initialize(self, session: str, pipeline: PipelineDefinition) -> PipelineState:
        state = new_session_state(session, pipeline)
        self.save(state)
        return state

    def transition_stage(self, state: PipelineState) -> PipelineState:
        advanced = transition_stage(state)
        self.save(advanced)
        return advanced
