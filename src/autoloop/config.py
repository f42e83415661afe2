from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from autoloop.constants import (
    ARCHIVE_DIRNAME,
    COMPLETION_MARKER,
    COMPLETION_STRATEGIES,
    DEFAULT_AGENT_RUNNER_COMMAND,
    DEFAULT_AGENT_RUNNER_TIMEOUT_SECONDS,
    DEFAULT_CONSENSUS_COUNT,
    DEFAULT_DELAY_SECONDS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MIN_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_PLATEAU_THRESHOLD,
    DEFAULT_POLICY_PATH,
    DEFAULT_PROBE_COMMAND,
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_RUN_ROOT,
    LEDGER_FILENAME,
    LOCKS_DIRNAME,
    LOG_FILENAME,
    PIPELINE_COPY_FILENAME,
    RUN_ROOT_ENV_VAR,
    SESSION_NAME_PATTERN,
    STATE_FILENAME,
    STRATEGY_ALIASES,
    STRATEGY_ALL_ITEMS,
    STRATEGY_FINDINGS_PLATEAU,
    STRATEGY_FIXED_N,
    STRATEGY_PLATEAU,
    STRATEGY_QUEUE_EMPTY,
)
from autoloop.models import (
    AgentRunnerConfig,
    CompletionStrategy,
    ExhaustList,
    ExternalSignalEmpty,
    FixedCount,
    ListWithFindingsPlateau,
    PipelineConfigError,
    PipelineDefinition,
    Plateau,
    PolicyConfig,
    ReadinessProbeConfig,
    SessionPaths,
    StageDefinition,
    _coerce_float,
    _coerce_int,
)


def _load_yaml_mapping(path: Path, *, label: str) -> dict[str, Any]:
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PipelineConfigError(f"{label} could not be read at {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise PipelineConfigError(f"{label} could not be parsed at {path}: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise PipelineConfigError(f"{label} must contain a mapping at {path}")
    return loaded


# ---------------------------------------------------------------------------
# Project policy
# ---------------------------------------------------------------------------


def _load_policy_payload(repo_root: Path, policy_path: Path | None = None) -> dict[str, Any]:
    path = policy_path if policy_path is not None else repo_root / DEFAULT_POLICY_PATH
    if not path.exists():
        return {}
    return _load_yaml_mapping(path, label="policy file")


def _resolve_run_root(repo_root: Path, raw_run_root: Any) -> Path:
    override = os.environ.get(RUN_ROOT_ENV_VAR, "").strip()
    value = override or str(raw_run_root or "").strip()
    candidate = Path(value).expanduser() if value else DEFAULT_RUN_ROOT
    if not candidate.is_absolute():
        candidate = repo_root / candidate
    return candidate


def load_policy(repo_root: Path, policy_path: Path | None = None) -> PolicyConfig:
    policy = _load_policy_payload(repo_root, policy_path)

    runner = policy.get("agent_runner") or {}
    if not isinstance(runner, dict):
        raise PipelineConfigError("agent_runner must be a mapping")
    runner_command = str(runner.get("command", DEFAULT_AGENT_RUNNER_COMMAND)).strip()
    if not runner_command:
        runner_command = DEFAULT_AGENT_RUNNER_COMMAND
    runner_timeout = _coerce_float(
        runner.get("timeout_seconds", DEFAULT_AGENT_RUNNER_TIMEOUT_SECONDS),
        default=DEFAULT_AGENT_RUNNER_TIMEOUT_SECONDS,
    )

    probe = policy.get("readiness_probe") or {}
    if not isinstance(probe, dict):
        raise PipelineConfigError("readiness_probe must be a mapping")
    probe_command = str(probe.get("command", DEFAULT_PROBE_COMMAND)).strip()
    probe_timeout = _coerce_float(
        probe.get("timeout_seconds", DEFAULT_PROBE_TIMEOUT_SECONDS),
        default=DEFAULT_PROBE_TIMEOUT_SECONDS,
    )
    if probe_timeout <= 0:
        probe_timeout = DEFAULT_PROBE_TIMEOUT_SECONDS

    return PolicyConfig(
        agent_runner=AgentRunnerConfig(
            command=runner_command,
            timeout_seconds=max(0.0, runner_timeout),
        ),
        readiness_probe=ReadinessProbeConfig(
            command=probe_command,
            timeout_seconds=probe_timeout,
        ),
        run_root=_resolve_run_root(repo_root, policy.get("run_root")),
    )


def resolve_session_paths(run_root: Path, session: str) -> SessionPaths:
    name = str(session).strip()
    if not name or not SESSION_NAME_PATTERN.match(name):
        raise PipelineConfigError(
            f"session name '{session}' must match {SESSION_NAME_PATTERN.pattern}"
        )
    session_dir = run_root / name
    return SessionPaths(
        run_root=run_root,
        session=name,
        session_dir=session_dir,
        state_path=session_dir / STATE_FILENAME,
        ledger_path=session_dir / LEDGER_FILENAME,
        log_path=session_dir / LOG_FILENAME,
        pipeline_path=session_dir / PIPELINE_COPY_FILENAME,
        locks_dir=run_root / LOCKS_DIRNAME,
        archive_dir=run_root / ARCHIVE_DIRNAME,
    )


# ---------------------------------------------------------------------------
# Pipeline definitions
# ---------------------------------------------------------------------------


def _parse_items(raw: Any, *, stage_name: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return tuple(raw.split())
    if isinstance(raw, list):
        items: list[str] = []
        for entry in raw:
            value = str(entry).strip()
            if value:
                items.append(value)
        return tuple(items)
    raise PipelineConfigError(
        f"stage '{stage_name}' completion.items must be a whitespace-delimited string or a list"
    )


def _int_param(raw: dict[str, Any], key: str, default: int, *, stage_name: str) -> int:
    try:
        return _coerce_int(raw.get(key, default), field_name=f"stage '{stage_name}' completion.{key}")
    except ValueError as exc:
        raise PipelineConfigError(str(exc)) from exc


def _parse_completion(raw: Any, *, stage_name: str) -> CompletionStrategy:
    if isinstance(raw, str):
        raw = {"strategy": raw}
    if not isinstance(raw, dict):
        raise PipelineConfigError(f"stage '{stage_name}' completion must be a mapping")

    strategy = str(raw.get("strategy", "")).strip().lower()
    strategy = STRATEGY_ALIASES.get(strategy, strategy)
    if strategy not in COMPLETION_STRATEGIES:
        raise PipelineConfigError(
            f"stage '{stage_name}' completion.strategy must be one of "
            f"{', '.join(COMPLETION_STRATEGIES)}, got '{strategy}'"
        )

    if strategy == STRATEGY_FIXED_N:
        return FixedCount(
            max_iterations=_int_param(raw, "max_iterations", DEFAULT_MAX_ITERATIONS, stage_name=stage_name)
        )
    if strategy == STRATEGY_ALL_ITEMS:
        return ExhaustList(items=_parse_items(raw.get("items"), stage_name=stage_name))
    if strategy == STRATEGY_QUEUE_EMPTY:
        marker = str(raw.get("marker", COMPLETION_MARKER)).strip() or COMPLETION_MARKER
        return ExternalSignalEmpty(marker=marker)
    if strategy == STRATEGY_PLATEAU:
        consensus_key = "consensus_count" if "consensus_count" in raw else "consensus"
        return Plateau(
            min_iterations=_int_param(raw, "min_iterations", DEFAULT_MIN_ITERATIONS, stage_name=stage_name),
            consensus_count=_int_param(raw, consensus_key, DEFAULT_CONSENSUS_COUNT, stage_name=stage_name),
        )
    return ListWithFindingsPlateau(
        items=_parse_items(raw.get("items"), stage_name=stage_name),
        min_iterations=_int_param(raw, "min_iterations", DEFAULT_MIN_ITERATIONS, stage_name=stage_name),
        plateau_threshold=_int_param(
            raw, "plateau_threshold", DEFAULT_PLATEAU_THRESHOLD, stage_name=stage_name
        ),
    )


def _parse_stage(raw: Any, *, index: int, defaults: dict[str, Any]) -> StageDefinition:
    if not isinstance(raw, dict):
        raise PipelineConfigError(f"stages[{index}] must be a mapping")
    name = str(raw.get("name", "")).strip()
    if not name or not SESSION_NAME_PATTERN.match(name):
        raise PipelineConfigError(
            f"stages[{index}].name must match {SESSION_NAME_PATTERN.pattern}, got '{name}'"
        )
    if "completion" not in raw:
        raise PipelineConfigError(f"stage '{name}' is missing a completion block")
    model = str(raw.get("model", defaults.get("model", DEFAULT_MODEL))).strip() or DEFAULT_MODEL
    delay = _coerce_float(
        raw.get("delay_seconds", defaults.get("delay_seconds", DEFAULT_DELAY_SECONDS)),
        default=DEFAULT_DELAY_SECONDS,
    )
    return StageDefinition(
        name=name,
        completion=_parse_completion(raw.get("completion"), stage_name=name),
        model=model,
        delay_seconds=max(0.0, delay),
        prompt=str(raw.get("prompt", "") or "").strip(),
        runner_command=str(raw.get("runner_command", "") or "").strip(),
    )


def load_pipeline(path: Path) -> PipelineDefinition:
    """Load a pipeline YAML file into a ``PipelineDefinition``.

    A file with a top-level ``completion`` block and no ``stages`` list is a
    single-stage loop named after the file's ``name`` (or its stem).
    """
    payload = _load_yaml_mapping(path, label="pipeline file")
    pipeline_name = str(payload.get("name", "")).strip() or path.stem

    defaults = payload.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise PipelineConfigError("pipeline defaults must be a mapping")

    raw_stages = payload.get("stages")
    if raw_stages is None and "completion" in payload:
        raw_stages = [dict(payload, name=pipeline_name)]
    if not isinstance(raw_stages, list) or not raw_stages:
        raise PipelineConfigError(f"pipeline '{pipeline_name}' must define a non-empty stages list")

    stages: list[StageDefinition] = []
    seen: set[str] = set()
    for index, raw_stage in enumerate(raw_stages):
        stage = _parse_stage(raw_stage, index=index, defaults=defaults)
        if stage.name in seen:
            raise PipelineConfigError(f"pipeline '{pipeline_name}' has duplicate stage name '{stage.name}'")
        seen.add(stage.name)
        stages.append(stage)
    return PipelineDefinition(name=pipeline_name, stages=tuple(stages), source_path=path)
