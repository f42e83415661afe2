"""Autoloop constants -- file layout, vocabularies, defaults, and exit codes."""

from __future__ import annotations

import re
from pathlib import Path

PACKAGE_SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"

DEFAULT_RUN_ROOT = Path(".autoloop") / "runs"
DEFAULT_POLICY_PATH = Path(".autoloop") / "policy.yaml"
RUN_ROOT_ENV_VAR = "AUTOLOOP_RUN_ROOT"
LOCKS_DIRNAME = "locks"
ARCHIVE_DIRNAME = "archive"

STATE_FILENAME = "state.json"
LEDGER_FILENAME = "history.jsonl"
LOG_FILENAME = "orchestrator.log"
PROGRESS_FILENAME = "progress.md"
CONTEXT_FILENAME = "context.json"
STATUS_FILENAME = "status.json"
OUTPUT_FILENAME = "output.txt"
PROMPT_FILENAME = "prompt.md"
PIPELINE_COPY_FILENAME = "pipeline.yaml"
STAGE_DIR_FORMAT = "stage-{index:02d}-{name}"
ITERATION_DIR_FORMAT = "{iteration:03d}"

SESSION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

SESSION_RUNNING = "running"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"
SESSION_STATUSES: frozenset[str] = frozenset(
    {SESSION_RUNNING, SESSION_COMPLETED, SESSION_FAILED}
)
SESSION_TRANSITIONS: dict[str, tuple[str, ...]] = {
    SESSION_RUNNING: (SESSION_COMPLETED, SESSION_FAILED),
    SESSION_FAILED: (SESSION_RUNNING,),
    SESSION_COMPLETED: (),
}

STAGE_PENDING = "pending"
STAGE_RUNNING = "running"
STAGE_COMPLETE = "complete"
STAGE_FAILED = "failed"
STAGE_STATUSES: frozenset[str] = frozenset(
    {STAGE_PENDING, STAGE_RUNNING, STAGE_COMPLETE, STAGE_FAILED}
)

DECISION_CONTINUE = "continue"
DECISION_STOP = "stop"
DECISIONS: frozenset[str] = frozenset({DECISION_CONTINUE, DECISION_STOP})

STRATEGY_FIXED_N = "fixed-n"
STRATEGY_ALL_ITEMS = "all-items"
STRATEGY_QUEUE_EMPTY = "queue-empty"
STRATEGY_PLATEAU = "plateau"
STRATEGY_FINDINGS_PLATEAU = "findings-plateau"
STRATEGY_ALIASES: dict[str, str] = {
    "beads-empty": STRATEGY_QUEUE_EMPTY,
    "fixed": STRATEGY_FIXED_N,
    "items": STRATEGY_ALL_ITEMS,
}
COMPLETION_STRATEGIES = (
    STRATEGY_FIXED_N,
    STRATEGY_ALL_ITEMS,
    STRATEGY_QUEUE_EMPTY,
    STRATEGY_PLATEAU,
    STRATEGY_FINDINGS_PLATEAU,
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_MIN_ITERATIONS = 2
DEFAULT_CONSENSUS_COUNT = 2
DEFAULT_PLATEAU_THRESHOLD = 2
DEFAULT_DELAY_SECONDS = 3.0
DEFAULT_MODEL = "opus"
COMPLETION_MARKER = "<promise>COMPLETE</promise>"
FINDINGS_PLATEAU_CEILING = 1

DEFAULT_AGENT_RUNNER_COMMAND = (
    "claude -p --model {model} --dangerously-skip-permissions --output-format text"
)
DEFAULT_AGENT_RUNNER_TIMEOUT_SECONDS = 0.0
DEFAULT_PROBE_COMMAND = "bd ready --label=loop/{session}"
DEFAULT_PROBE_TIMEOUT_SECONDS = 30.0
RUNNER_POLL_SECONDS = 0.2
RUNNER_TERMINATE_GRACE_SECONDS = 5.0
LOCK_WRITE_GRACE_SECONDS = 10.0
MAX_CAPTURE_CHARS = 200_000

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_ALREADY_RUNNING = 1
EXIT_UNRECOVERABLE = 2
EXIT_INTERRUPTED = 3
