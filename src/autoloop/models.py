"""Autoloop data models -- exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar, Union

from autoloop.constants import (
    COMPLETION_MARKER,
    DECISION_CONTINUE,
    ITERATION_DIR_FORMAT,
    STAGE_DIR_FORMAT,
    STAGE_RUNNING,
    STRATEGY_ALL_ITEMS,
    STRATEGY_FINDINGS_PLATEAU,
    STRATEGY_FIXED_N,
    STRATEGY_PLATEAU,
    STRATEGY_QUEUE_EMPTY,
)


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_int(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an integer, got {value!r}") from exc


def _coerce_optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LoopError(RuntimeError):
    """Base class for errors surfaced by the loop engine."""


class SessionNotFound(LoopError):
    """Raised when no state document exists for a session."""


class SessionAlreadyRunning(LoopError):
    """Raised when a live orchestrator already holds the session lock."""


class StateCorrupt(LoopError):
    """Raised when persisted state cannot be read or reconciled."""


class LedgerAppendFailed(LoopError):
    """Raised when a history entry could not be durably recorded."""


class AgentInvocationFailed(LoopError):
    """Raised when the agent collaborator fails or is cancelled."""

    def __init__(self, message: str, *, cancelled: bool = False) -> None:
        super().__init__(message)
        self.cancelled = cancelled


class StrategyMisconfigured(LoopError):
    """Raised when a completion strategy has invalid parameters."""


class PipelineConfigError(LoopError):
    """Raised when a pipeline or policy file cannot be loaded."""


class StopRequested(LoopError):
    """Raised when an external stop signal interrupts the stage loop."""


# ---------------------------------------------------------------------------
# Completion strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FixedCount:
    max_iterations: int
    kind: ClassVar[str] = STRATEGY_FIXED_N


@dataclass(frozen=True)
class ExhaustList:
    items: tuple[str, ...]
    kind: ClassVar[str] = STRATEGY_ALL_ITEMS


@dataclass(frozen=True)
class ExternalSignalEmpty:
    marker: str = COMPLETION_MARKER
    kind: ClassVar[str] = STRATEGY_QUEUE_EMPTY


@dataclass(frozen=True)
class Plateau:
    min_iterations: int
    consensus_count: int
    kind: ClassVar[str] = STRATEGY_PLATEAU


@dataclass(frozen=True)
class ListWithFindingsPlateau:
    items: tuple[str, ...]
    min_iterations: int
    plateau_threshold: int
    kind: ClassVar[str] = STRATEGY_FINDINGS_PLATEAU


CompletionStrategy = Union[
    FixedCount, ExhaustList, ExternalSignalEmpty, Plateau, ListWithFindingsPlateau
]


# ---------------------------------------------------------------------------
# Pipeline definition (read-only input)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageDefinition:
    name: str
    completion: CompletionStrategy
    model: str
    delay_seconds: float
    prompt: str = ""
    runner_command: str = ""


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    stages: tuple[StageDefinition, ...]
    source_path: Path | None = None

    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)


# ---------------------------------------------------------------------------
# Persisted run state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageState:
    name: str
    status: str
    completed_at: str | None = None


@dataclass(frozen=True)
class PipelineState:
    """Snapshot of one session's progress, persisted as ``state.json``.

    ``iteration_completed`` is a cache of the ledger count for the current
    stage; after a crash it is reconciled against ``history.jsonl``.
    """

    session: str
    pipeline: str
    status: str
    current_stage: int
    iteration: int
    iteration_completed: int
    iteration_started: str | None
    stages: tuple[StageState, ...]
    started_at: str
    completed_at: str | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.current_stage >= len(self.stages)

    @property
    def current_stage_state(self) -> StageState | None:
        if 0 <= self.current_stage < len(self.stages):
            return self.stages[self.current_stage]
        return None

    @property
    def running_stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages if stage.status == STAGE_RUNNING)


@dataclass(frozen=True)
class HistoryEntry:
    stage_name: str
    iteration_number: int
    timestamp: str
    decision: str
    reason: str = ""
    findings_count: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "stage_name": self.stage_name,
            "iteration_number": self.iteration_number,
            "timestamp": self.timestamp,
            "decision": self.decision,
            "reason": self.reason,
            "findings_count": self.findings_count,
        }


@dataclass(frozen=True)
class LockRecord:
    owner_pid: int
    session_id: str
    acquired_at: str
    host: str = ""


@dataclass(frozen=True)
class IterationResult:
    decision: str = DECISION_CONTINUE
    reason: str = ""
    findings_count: int | None = None
    raw_output: str = ""


@dataclass(frozen=True)
class ResumePlan:
    stage_index: int
    next_iteration: int
    reset_stage: bool
    finished: bool = False


@dataclass(frozen=True)
class SessionPaths:
    run_root: Path
    session: str
    session_dir: Path
    state_path: Path
    ledger_path: Path
    log_path: Path
    pipeline_path: Path
    locks_dir: Path
    archive_dir: Path

    def stage_dir(self, index: int, name: str) -> Path:
        return self.session_dir / STAGE_DIR_FORMAT.format(index=index, name=name)

    def iteration_dir(self, index: int, name: str, iteration: int) -> Path:
        return (
            self.stage_dir(index, name)
            / "iterations"
            / ITERATION_DIR_FORMAT.format(iteration=iteration)
        )


@dataclass(frozen=True)
class IterationContext:
    """Everything one agent invocation needs, resolved to concrete paths."""

    session: str
    pipeline: str
    stage_index: int
    stage_name: str
    iteration: int
    item: str
    model: str
    iteration_dir: Path
    context_path: Path
    status_path: Path
    output_path: Path
    progress_path: Path
    prompt_path: Path


@dataclass(frozen=True)
class AgentRunnerConfig:
    command: str
    timeout_seconds: float


@dataclass(frozen=True)
class ReadinessProbeConfig:
    command: str
    timeout_seconds: float


@dataclass(frozen=True)
class PolicyConfig:
    agent_runner: AgentRunnerConfig
    readiness_probe: ReadinessProbeConfig
    run_root: Path


@dataclass(frozen=True)
class SessionOutcome:
    exit_code: int
    state: PipelineState | None
    message: str
