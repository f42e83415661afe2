from __future__ import annotations

import os
import re
import shlex
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Protocol

from autoloop.constants import (
    DECISION_CONTINUE,
    DECISION_STOP,
    MAX_CAPTURE_CHARS,
    RUNNER_POLL_SECONDS,
    RUNNER_TERMINATE_GRACE_SECONDS,
)
from autoloop.models import (
    AgentInvocationFailed,
    AgentRunnerConfig,
    IterationContext,
    IterationResult,
    ReadinessProbeConfig,
    StageDefinition,
    _coerce_optional_int,
)
from autoloop.utils import (
    _append_log,
    _compact_log_text,
    _load_json_if_exists,
    _normalize_space,
    _write_text_atomic,
)


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>",
            redacted,
        )
    return redacted


_SHELL_META_PATTERN = re.compile(r"[|&;<>()$`]")


def _command_uses_shell_syntax(command: str) -> bool:
    return bool(_SHELL_META_PATTERN.search(command))


def _split_command(template: str, command: str, *, label: str) -> list[str]:
    # Placeholders are substituted shell-quoted, so only the template is checked.
    if _command_uses_shell_syntax(template):
        raise AgentInvocationFailed(
            f"{label} contains shell metacharacters; "
            "configure an argv-safe command without pipes/subshell syntax"
        )
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise AgentInvocationFailed(f"{label} could not be parsed: {exc}") from exc
    if not argv:
        raise AgentInvocationFailed(f"{label} resolved to empty arguments")
    return argv


# ---------------------------------------------------------------------------
# Iteration result parsing
# ---------------------------------------------------------------------------

_DECISION_LINE = re.compile(r"^\s*DECISION:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
_PLATEAU_LINE = re.compile(r"^\s*PLATEAU:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
_REASONING_LINE = re.compile(r"^\s*REASONING:\s*(.*)$", re.IGNORECASE | re.MULTILINE)
_FINDINGS_LINE = re.compile(r"^\s*FINDINGS:\s*(\d+)", re.IGNORECASE | re.MULTILINE)


def _normalize_decision(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    if value in {DECISION_STOP, "true", "yes", "plateau", "done"}:
        return DECISION_STOP
    return DECISION_CONTINUE


def _scrape_iteration_result(raw_output: str) -> IterationResult:
    decision = DECISION_CONTINUE
    decision_match = _DECISION_LINE.search(raw_output)
    plateau_match = _PLATEAU_LINE.search(raw_output)
    if decision_match is not None:
        decision = _normalize_decision(decision_match.group(1))
    elif plateau_match is not None:
        decision = _normalize_decision(plateau_match.group(1))

    reasoning_match = _REASONING_LINE.search(raw_output)
    findings_match = _FINDINGS_LINE.search(raw_output)
    return IterationResult(
        decision=decision,
        reason=_normalize_space(reasoning_match.group(1)) if reasoning_match else "",
        findings_count=int(findings_match.group(1)) if findings_match else None,
        raw_output=raw_output,
    )


def parse_iteration_result(status_path: Path, raw_output: str) -> IterationResult:
    """Build the iteration result from ``status.json``, or scrape the output.

    Free-text lines (``DECISION:``, ``PLATEAU:``, ``REASONING:``,
    ``FINDINGS:``) are only consulted when the agent wrote no usable status
    file.
    """
    payload = _load_json_if_exists(status_path)
    if not isinstance(payload, dict):
        return _scrape_iteration_result(raw_output)
    return IterationResult(
        decision=_normalize_decision(payload.get("decision")),
        reason=_normalize_space(payload.get("reason", "") or ""),
        findings_count=_coerce_optional_int(payload.get("findings_count")),
        raw_output=raw_output,
    )


# ---------------------------------------------------------------------------
# Agent runner
# ---------------------------------------------------------------------------


class AgentRunner(Protocol):
    def run(
        self,
        stage: StageDefinition,
        iteration: int,
        context: IterationContext,
        cancel_event: threading.Event,
    ) -> IterationResult: ...


def _substitute_runner_command(template: str, *, context: IterationContext) -> str:
    command = str(template)
    replacements = {
        "{session}": shlex.quote(context.session),
        "{stage}": shlex.quote(context.stage_name),
        "{stage_index}": str(context.stage_index),
        "{iteration}": str(context.iteration),
        "{item}": shlex.quote(context.item),
        "{model}": shlex.quote(context.model),
        "{context_path}": shlex.quote(str(context.context_path)),
        "{status_path}": shlex.quote(str(context.status_path)),
        "{output_path}": shlex.quote(str(context.output_path)),
        "{progress_path}": shlex.quote(str(context.progress_path)),
        "{prompt_path}": shlex.quote(str(context.prompt_path)),
    }
    for token, value in replacements.items():
        command = command.replace(token, value)
    return command


def _terminate_process(process: subprocess.Popen[str]) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=RUNNER_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class CommandAgentRunner:
    """Runs one agent iteration as a subprocess.

    The rendered prompt is piped to stdin, stdout/stderr are pumped on
    background threads (echoed when ``stream_output`` is set), and stdout is
    kept as the iteration's ``output.txt``. The cancel event and the optional
    timeout are polled while waiting; both terminate the process and raise
    ``AgentInvocationFailed(cancelled=True)``.
    """

    def __init__(
        self,
        config: AgentRunnerConfig,
        *,
        cwd: Path,
        log_path: Path | None = None,
        stream_output: bool = True,
    ) -> None:
        self.config = config
        self.cwd = cwd
        self.log_path = log_path
        self.stream_output = stream_output

    def _log(self, message: str) -> None:
        if self.log_path is not None:
            _append_log(self.log_path, message)

    def _env(self, context: IterationContext) -> dict[str, str]:
        env = os.environ.copy()
        env["AUTOLOOP_SESSION"] = context.session
        env["AUTOLOOP_PIPELINE"] = context.pipeline
        env["AUTOLOOP_STAGE"] = context.stage_name
        env["AUTOLOOP_STAGE_INDEX"] = str(context.stage_index)
        env["AUTOLOOP_ITERATION"] = str(context.iteration)
        env["AUTOLOOP_ITEM"] = context.item
        env["AUTOLOOP_CONTEXT_PATH"] = str(context.context_path)
        env["AUTOLOOP_STATUS_PATH"] = str(context.status_path)
        env["AUTOLOOP_PROGRESS_PATH"] = str(context.progress_path)
        return env

    def run(
        self,
        stage: StageDefinition,
        iteration: int,
        context: IterationContext,
        cancel_event: threading.Event,
    ) -> IterationResult:
        template = stage.runner_command or self.config.command
        command = _substitute_runner_command(template, context=context)
        argv = _split_command(template, command, label="agent runner command")
        timeout = self.config.timeout_seconds if self.config.timeout_seconds > 0 else None
        prompt_text = (
            context.prompt_path.read_text(encoding="utf-8")
            if context.prompt_path.exists()
            else ""
        )
        self._log(
            f"agent runner start stage={stage.name} iteration={iteration} "
            f"timeout_seconds={self.config.timeout_seconds} command={_redact_sensitive_text(command)}"
        )

        captured_stdout: list[str] = []
        captured_stderr: list[str] = []
        captured_len = [0, 0]

        def _pump_stream(stream: Any, sink: Any, chunks: list[str], slot: int) -> None:
            if stream is None:
                return
            try:
                for line in iter(stream.readline, ""):
                    if sink is not None:
                        sink.write(line)
                        sink.flush()
                    if captured_len[slot] < MAX_CAPTURE_CHARS:
                        snippet = line[: MAX_CAPTURE_CHARS - captured_len[slot]]
                        chunks.append(snippet)
                        captured_len[slot] += len(snippet)
            finally:
                stream.close()

        try:
            process = subprocess.Popen(
                argv,
                cwd=self.cwd,
                shell=False,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
                env=self._env(context),
            )
        except OSError as exc:
            self._log(f"agent runner execution error stage={stage.name}: {exc}")
            raise AgentInvocationFailed(f"agent runner could not start: {exc}") from exc

        stdout_thread = threading.Thread(
            target=_pump_stream,
            args=(process.stdout, sys.stdout if self.stream_output else None, captured_stdout, 0),
            daemon=True,
        )
        stderr_thread = threading.Thread(
            target=_pump_stream,
            args=(process.stderr, sys.stderr if self.stream_output else None, captured_stderr, 1),
            daemon=True,
        )
        stdout_thread.start()
        stderr_thread.start()

        if process.stdin is not None:
            try:
                process.stdin.write(prompt_text)
                process.stdin.flush()
            except BrokenPipeError:
                pass
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass

        started = time.monotonic()
        interrupted = ""
        try:
            while process.poll() is None:
                if cancel_event.wait(RUNNER_POLL_SECONDS):
                    interrupted = "cancelled"
                    break
                if timeout is not None and time.monotonic() - started >= timeout:
                    interrupted = f"timed out after {self.config.timeout_seconds}s"
                    break
        finally:
            if interrupted or process.poll() is None:
                _terminate_process(process)
            stdout_thread.join(timeout=2)
            stderr_thread.join(timeout=2)

        stdout_text = "".join(captured_stdout)
        stderr_text = "".join(captured_stderr)
        _write_text_atomic(context.output_path, stdout_text)
        if stderr_text.strip():
            self._log(
                f"agent runner stderr stage={stage.name}: "
                f"{_compact_log_text(_redact_sensitive_text(stderr_text))}"
            )

        if interrupted:
            self._log(f"agent runner {interrupted} stage={stage.name} iteration={iteration}")
            raise AgentInvocationFailed(
                f"agent for stage '{stage.name}' iteration {iteration} {interrupted}",
                cancelled=True,
            )

        returncode = process.returncode
        self._log(f"agent runner exit stage={stage.name} iteration={iteration} exit_code={returncode}")
        if returncode != 0:
            raise AgentInvocationFailed(
                f"agent for stage '{stage.name}' iteration {iteration} exited with {returncode}"
            )
        if stdout_text.strip():
            self._log(
                f"agent runner stdout stage={stage.name}: "
                f"{_compact_log_text(_redact_sensitive_text(stdout_text))}"
            )
        return parse_iteration_result(context.status_path, stdout_text)


# ---------------------------------------------------------------------------
# Readiness probe
# ---------------------------------------------------------------------------


class CommandReadinessProbe:
    """Counts outstanding work items as the non-empty stdout lines of a command."""

    def __init__(self, config: ReadinessProbeConfig, *, cwd: Path) -> None:
        self.config = config
        self.cwd = cwd

    def remaining_count(self, session: str) -> int:
        template = self.config.command
        command = template.replace("{session}", shlex.quote(session))
        argv = _split_command(template, command, label="readiness probe command")
        proc = subprocess.run(
            argv,
            cwd=self.cwd,
            check=False,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=self.config.timeout_seconds,
        )
        if proc.returncode != 0:
            raise RuntimeError(
                f"readiness probe exited with {proc.returncode}: "
                f"{_compact_log_text(proc.stderr or proc.stdout or '')}"
            )
        return sum(1 for line in proc.stdout.splitlines() if line.strip())
