"""Per-iteration context manifests and the accumulated stage progress file."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from autoloop.completions import current_item
from autoloop.constants import (
    CONTEXT_FILENAME,
    OUTPUT_FILENAME,
    PROGRESS_FILENAME,
    PROMPT_FILENAME,
    STATUS_FILENAME,
)
from autoloop.models import (
    ExhaustList,
    HistoryEntry,
    IterationContext,
    ListWithFindingsPlateau,
    PipelineDefinition,
    SessionPaths,
)
from autoloop.utils import _write_json, _write_text_atomic


PROGRESS_HEADER = "# Stage Progress\n\n---\n\n"


def _stage_item(pipeline: PipelineDefinition, stage_index: int, iteration: int) -> str:
    strategy = pipeline.stages[stage_index].completion
    if not isinstance(strategy, (ExhaustList, ListWithFindingsPlateau)):
        return ""
    if iteration > len(strategy.items):
        return ""
    return current_item(strategy, iteration)


def _render_prompt(template: str, replacements: dict[str, str]) -> str:
    rendered = template
    for token, value in replacements.items():
        rendered = rendered.replace(token, value)
    return rendered


def _previous_outputs(paths: SessionPaths, stage_index: int, name: str, iteration: int) -> list[str]:
    outputs: list[str] = []
    for prior in range(1, iteration):
        output_path = paths.iteration_dir(stage_index, name, prior) / OUTPUT_FILENAME
        if output_path.exists():
            outputs.append(str(output_path))
    return outputs


def _earlier_stage_outputs(
    paths: SessionPaths, pipeline: PipelineDefinition, stage_index: int
) -> dict[str, list[str]]:
    collected: dict[str, list[str]] = {}
    for index, stage in enumerate(pipeline.stages[:stage_index]):
        iterations_dir = paths.stage_dir(index, stage.name) / "iterations"
        if not iterations_dir.is_dir():
            collected[stage.name] = []
            continue
        collected[stage.name] = [
            str(output_path)
            for output_path in sorted(iterations_dir.glob(f"*/{OUTPUT_FILENAME}"))
        ]
    return collected


def ensure_progress_file(progress_path: Path) -> Path:
    if not progress_path.exists():
        _write_text_atomic(progress_path, PROGRESS_HEADER)
    return progress_path


def build_iteration_context(
    paths: SessionPaths,
    pipeline: PipelineDefinition,
    stage_index: int,
    iteration: int,
) -> IterationContext:
    """Prepare the iteration directory and write its ``context.json``.

    Leftovers from an earlier, unrecorded attempt at the same iteration number
    (``status.json``, ``output.txt``) are cleared so they cannot be mistaken
    for this attempt's result.
    """
    stage = pipeline.stages[stage_index]
    stage_dir = paths.stage_dir(stage_index, stage.name)
    iteration_dir = paths.iteration_dir(stage_index, stage.name, iteration)
    iteration_dir.mkdir(parents=True, exist_ok=True)

    progress_path = ensure_progress_file(stage_dir / PROGRESS_FILENAME)
    context = IterationContext(
        session=paths.session,
        pipeline=pipeline.name,
        stage_index=stage_index,
        stage_name=stage.name,
        iteration=iteration,
        item=_stage_item(pipeline, stage_index, iteration),
        model=stage.model,
        iteration_dir=iteration_dir,
        context_path=iteration_dir / CONTEXT_FILENAME,
        status_path=iteration_dir / STATUS_FILENAME,
        output_path=iteration_dir / OUTPUT_FILENAME,
        progress_path=progress_path,
        prompt_path=iteration_dir / PROMPT_FILENAME,
    )
    context.status_path.unlink(missing_ok=True)
    context.output_path.unlink(missing_ok=True)

    manifest: dict[str, Any] = {
        "session": context.session,
        "pipeline": context.pipeline,
        "stage": {"name": stage.name, "index": stage_index, "model": stage.model},
        "iteration": iteration,
        "item": context.item,
        "paths": {
            "session_dir": str(paths.session_dir),
            "stage_dir": str(stage_dir),
            "iteration_dir": str(iteration_dir),
            "progress": str(progress_path),
            "output": str(context.output_path),
            "status": str(context.status_path),
            "prompt": str(context.prompt_path),
        },
        "inputs": {
            "from_previous_iterations": _previous_outputs(paths, stage_index, stage.name, iteration),
            "from_stage": _earlier_stage_outputs(paths, pipeline, stage_index),
        },
    }
    _write_json(context.context_path, manifest)

    prompt = _render_prompt(
        stage.prompt,
        {
            "{session}": context.session,
            "{stage}": stage.name,
            "{iteration}": str(iteration),
            "{item}": context.item,
            "{context_path}": str(context.context_path),
            "{progress_path}": str(progress_path),
            "{status_path}": str(context.status_path),
        },
    )
    _write_text_atomic(context.prompt_path, prompt + ("\n" if prompt and not prompt.endswith("\n") else ""))
    return context


def append_progress(progress_path: Path, entry: HistoryEntry) -> None:
    ensure_progress_file(progress_path)
    lines = [f"## Iteration {entry.iteration_number} ({entry.decision})", ""]
    if entry.reason:
        lines.extend([entry.reason.strip(), ""])
    if entry.findings_count is not None:
        lines.extend([f"Findings: {entry.findings_count}", ""])
    lines.extend(["---", ""])
    with progress_path.open("a", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")
