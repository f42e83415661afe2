"""Completion strategies -- decide when a stage has iterated enough.

Every strategy is evaluated through ``evaluate_completion``, a pure function
of the strategy, the persisted state, the stage's ledger entries, and the
latest structured ``IterationResult``. History is always filtered down to the
current stage before a strategy looks at it.
"""

from __future__ import annotations

from typing import Iterable, Protocol

from autoloop.constants import DECISION_STOP, FINDINGS_PLATEAU_CEILING
from autoloop.models import (
    CompletionStrategy,
    ExhaustList,
    ExternalSignalEmpty,
    FixedCount,
    HistoryEntry,
    IterationResult,
    ListWithFindingsPlateau,
    PipelineState,
    Plateau,
    StrategyMisconfigured,
)


class ReadinessProbe(Protocol):
    def remaining_count(self, session: str) -> int: ...


def validate_strategy(strategy: CompletionStrategy) -> None:
    if isinstance(strategy, FixedCount):
        if strategy.max_iterations < 0:
            raise StrategyMisconfigured(
                f"fixed-n max_iterations must be >= 0, got {strategy.max_iterations}"
            )
    elif isinstance(strategy, Plateau):
        if strategy.min_iterations < 0:
            raise StrategyMisconfigured(
                f"plateau min_iterations must be >= 0, got {strategy.min_iterations}"
            )
        if strategy.consensus_count < 1:
            raise StrategyMisconfigured(
                f"plateau consensus_count must be >= 1, got {strategy.consensus_count}"
            )
    elif isinstance(strategy, ListWithFindingsPlateau):
        if strategy.min_iterations < 0:
            raise StrategyMisconfigured(
                f"findings-plateau min_iterations must be >= 0, got {strategy.min_iterations}"
            )
        if strategy.plateau_threshold < 1:
            raise StrategyMisconfigured(
                f"findings-plateau plateau_threshold must be >= 1, got {strategy.plateau_threshold}"
            )
    elif isinstance(strategy, ExternalSignalEmpty):
        if not strategy.marker:
            raise StrategyMisconfigured("queue-empty marker must be non-empty")
    elif not isinstance(strategy, ExhaustList):
        raise StrategyMisconfigured(f"unknown completion strategy {strategy!r}")


def current_item(strategy: CompletionStrategy, iteration: int) -> str:
    """Return the list item that parameterizes 1-based ``iteration``."""
    if not isinstance(strategy, (ExhaustList, ListWithFindingsPlateau)):
        raise StrategyMisconfigured(f"strategy '{strategy.kind}' has no item list")
    if iteration < 1 or iteration > len(strategy.items):
        raise IndexError(
            f"iteration {iteration} is outside the {len(strategy.items)}-item list"
        )
    return strategy.items[iteration - 1]


def budget_exhausted(strategy: CompletionStrategy, iteration: int) -> bool:
    if isinstance(strategy, FixedCount):
        return iteration >= strategy.max_iterations
    if isinstance(strategy, (ExhaustList, ListWithFindingsPlateau)):
        return iteration >= len(strategy.items)
    return False


def _stage_entries(history: Iterable[HistoryEntry], stage_name: str) -> list[HistoryEntry]:
    return [entry for entry in history if entry.stage_name == stage_name]


def _stage_name(state: PipelineState) -> str:
    stage = state.current_stage_state
    return stage.name if stage is not None else ""


def _decision_trail(
    entries: list[HistoryEntry],
    latest_result: IterationResult | None,
    iteration: int,
) -> list[str]:
    decisions = [entry.decision for entry in entries]
    latest_recorded = bool(entries) and entries[-1].iteration_number >= iteration
    if latest_result is not None and not latest_recorded:
        decisions.append(latest_result.decision)
    return decisions


def _trailing_stops(decisions: list[str]) -> int:
    count = 0
    for decision in reversed(decisions):
        if decision != DECISION_STOP:
            break
        count += 1
    return count


def _evaluate_plateau(
    strategy: Plateau,
    state: PipelineState,
    entries: list[HistoryEntry],
    latest_result: IterationResult | None,
) -> tuple[bool, str]:
    if state.iteration < strategy.min_iterations:
        return (
            False,
            f"iteration {state.iteration} below min_iterations {strategy.min_iterations}",
        )
    decisions = _decision_trail(entries, latest_result, state.iteration)
    if not decisions or decisions[-1] != DECISION_STOP:
        return (False, "latest decision is continue")
    consecutive = _trailing_stops(decisions)
    if consecutive >= strategy.consensus_count:
        return (
            True,
            f"Consensus reached: {consecutive} consecutive agents agree to stop",
        )
    return (
        False,
        f"Stop suggested but not confirmed ({consecutive}/{strategy.consensus_count} needed)",
    )


def _evaluate_findings_plateau(
    strategy: ListWithFindingsPlateau,
    state: PipelineState,
    entries: list[HistoryEntry],
) -> tuple[bool, str]:
    item_count = len(strategy.items)
    if state.iteration >= item_count:
        return (True, f"All {item_count} items complete")
    if state.iteration < strategy.min_iterations:
        return (
            False,
            f"iteration {state.iteration} below min_iterations {strategy.min_iterations}",
        )
    window = entries[-strategy.plateau_threshold:]
    if len(window) < strategy.plateau_threshold:
        return (
            False,
            f"only {len(window)} of {strategy.plateau_threshold} entries for findings plateau",
        )
    if all(
        entry.findings_count is not None and entry.findings_count <= FINDINGS_PLATEAU_CEILING
        for entry in window
    ):
        return (
            True,
            f"Findings plateaued over the last {strategy.plateau_threshold} iterations",
        )
    return (False, "findings still above plateau ceiling")


def _probe_remaining(probe: ReadinessProbe | None, session: str) -> int | None:
    if probe is None:
        return None
    try:
        return int(probe.remaining_count(session))
    except Exception:
        # Probe failures never complete a stage.
        return None


def _evaluate_signal_empty(
    strategy: ExternalSignalEmpty,
    state: PipelineState,
    latest_result: IterationResult | None,
    probe: ReadinessProbe | None,
) -> tuple[bool, str]:
    remaining = _probe_remaining(probe, state.session)
    if remaining == 0:
        return (True, "All work items complete")
    if latest_result is not None and strategy.marker in latest_result.raw_output:
        return (True, "Agent signaled completion")
    if remaining is None:
        return (False, "readiness probe unavailable; treating work as remaining")
    return (False, f"{remaining} work items remaining")


def evaluate_completion(
    strategy: CompletionStrategy,
    state: PipelineState,
    history: Iterable[HistoryEntry],
    latest_result: IterationResult | None,
    *,
    probe: ReadinessProbe | None = None,
) -> tuple[bool, str]:
    entries = _stage_entries(history, _stage_name(state))

    if isinstance(strategy, FixedCount):
        if state.iteration >= strategy.max_iterations:
            return (True, f"Completed {state.iteration} iterations")
        return (False, f"{state.iteration}/{strategy.max_iterations} iterations")
    if isinstance(strategy, ExhaustList):
        item_count = len(strategy.items)
        if state.iteration >= item_count:
            return (True, f"All {item_count} items complete")
        return (False, f"{state.iteration}/{item_count} items processed")
    if isinstance(strategy, ExternalSignalEmpty):
        return _evaluate_signal_empty(strategy, state, latest_result, probe)
    if isinstance(strategy, Plateau):
        return _evaluate_plateau(strategy, state, entries, latest_result)
    if isinstance(strategy, ListWithFindingsPlateau):
        return _evaluate_findings_plateau(strategy, state, entries)
    raise StrategyMisconfigured(f"unknown completion strategy {strategy!r}")


class CompletionEvaluator:
    """Binds a readiness probe to ``evaluate_completion``."""

    def __init__(self, probe: ReadinessProbe | None = None) -> None:
        self.probe = probe

    def evaluate(
        self,
        strategy: CompletionStrategy,
        state: PipelineState,
        history: Iterable[HistoryEntry],
        latest_result: IterationResult | None,
    ) -> tuple[bool, str]:
        return evaluate_completion(
            strategy, state, history, latest_result, probe=self.probe
        )
