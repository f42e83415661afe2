from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from autoloop.archive import archive_session
from autoloop.config import load_pipeline, load_policy, resolve_session_paths
from autoloop.constants import EXIT_OK, EXIT_UNRECOVERABLE, LOCKS_DIRNAME
from autoloop.history import HistoryLedger
from autoloop.locking import LockCoordinator
from autoloop.models import (
    LoopError,
    PipelineConfigError,
    PipelineState,
    PolicyConfig,
    SessionNotFound,
)
from autoloop.orchestrator import _exit_code_for, run_session
from autoloop.runners import CommandAgentRunner, CommandReadinessProbe
from autoloop.state import StateStore


def _resolve_policy(args: argparse.Namespace) -> tuple[Path, PolicyConfig]:
    repo_root = Path(args.repo_root).expanduser().resolve()
    policy_path = Path(args.policy).expanduser().resolve() if args.policy else None
    return repo_root, load_policy(repo_root, policy_path)


def _install_stop_handlers(stop_event: threading.Event) -> None:
    def _handle_signal(signum: int, frame: Any) -> None:
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_signal)


def _print_state_summary(state: PipelineState | None) -> None:
    if state is None:
        return
    current = state.current_stage_state
    print(f"session: {state.session}")
    print(f"pipeline: {state.pipeline}")
    print(f"status: {state.status}")
    print(f"current_stage: {current.name if current is not None else '<finished>'}")
    print(f"iteration_completed: {state.iteration_completed}")
    if state.error:
        print(f"error: {state.error_type or 'error'}: {state.error}")


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _execute_session(args: argparse.Namespace, *, resume: bool) -> int:
    command = "resume" if resume else "run"
    try:
        repo_root, policy = _resolve_policy(args)
        paths = resolve_session_paths(policy.run_root, args.session)
        if resume:
            if not paths.state_path.exists():
                raise SessionNotFound(
                    f"session '{paths.session}' has no state at {paths.state_path}"
                )
            pipeline_path = (
                Path(args.pipeline).expanduser().resolve() if args.pipeline else paths.pipeline_path
            )
            if not pipeline_path.exists():
                raise PipelineConfigError(
                    f"pipeline file not found at {pipeline_path}; pass --pipeline"
                )
        else:
            pipeline_path = Path(args.pipeline).expanduser().resolve()
        pipeline = load_pipeline(pipeline_path)
        if not resume and args.force and paths.session_dir.exists():
            archived = archive_session(
                paths, LockCoordinator(paths.locks_dir, log_path=paths.log_path)
            )
            print(f"archived_previous: {archived}")
    except LoopError as exc:
        print(f"autoloop {command}: ERROR {exc}", file=sys.stderr)
        return _exit_code_for(exc)

    runner = CommandAgentRunner(
        policy.agent_runner,
        cwd=repo_root,
        log_path=paths.log_path,
        stream_output=not args.quiet,
    )
    probe = CommandReadinessProbe(policy.readiness_probe, cwd=repo_root)
    stop_event = threading.Event()
    _install_stop_handlers(stop_event)
    outcome = run_session(
        pipeline,
        paths,
        runner,
        probe=probe,
        resume=resume,
        stop_event=stop_event,
    )
    if outcome.exit_code != EXIT_OK:
        print(f"autoloop {command}: ERROR {outcome.message}", file=sys.stderr)
    print(f"autoloop {command}")
    print(f"exit_code: {outcome.exit_code}")
    _print_state_summary(outcome.state)
    return outcome.exit_code


def _cmd_run(args: argparse.Namespace) -> int:
    return _execute_session(args, resume=False)


def _cmd_resume(args: argparse.Namespace) -> int:
    return _execute_session(args, resume=True)


def _cmd_status(args: argparse.Namespace) -> int:
    try:
        _repo_root, policy = _resolve_policy(args)
        paths = resolve_session_paths(policy.run_root, args.session)
        state = StateStore(paths.state_path).load()
        ledger = HistoryLedger(paths.ledger_path)
        current = state.current_stage_state
        ledger_count = ledger.count(current.name) if current is not None else 0
    except LoopError as exc:
        print(f"autoloop status: ERROR {exc}", file=sys.stderr)
        return _exit_code_for(exc)

    print("autoloop status")
    print(f"state_file: {paths.state_path}")
    _print_state_summary(state)
    print(f"stage_index: {state.current_stage}/{len(state.stages)}")
    print(f"iteration: {state.iteration}")
    print(f"iteration_started: {state.iteration_started or '<none>'}")
    print(f"ledger_entries: {ledger_count}")
    for index, stage in enumerate(state.stages):
        suffix = f" completed_at={stage.completed_at}" if stage.completed_at else ""
        print(f"stage[{index}]: {stage.name} {stage.status}{suffix}")

    locks = LockCoordinator(paths.locks_dir)
    record = locks.read(paths.session)
    if record is None:
        print("lock: free")
    elif locks.is_alive(record):
        print(f"lock: held by PID {record.owner_pid} since {record.acquired_at}")
    else:
        print(f"lock: stale (dead PID {record.owner_pid}; resume to recover)")
    return EXIT_OK


def _cmd_locks(args: argparse.Namespace) -> int:
    try:
        _repo_root, policy = _resolve_policy(args)
    except LoopError as exc:
        print(f"autoloop locks: ERROR {exc}", file=sys.stderr)
        return _exit_code_for(exc)
    locks = LockCoordinator(policy.run_root / LOCKS_DIRNAME)

    if args.break_session:
        print(locks.force_break(args.break_session, reason=args.reason))
        return EXIT_OK
    if args.clean:
        removed = locks.clean_stale()
        for record in removed:
            print(f"removed: {record.session_id} (pid={record.owner_pid})")
        print(f"stale_locks_removed: {len(removed)}")
        return EXIT_OK

    records = locks.list_records()
    if not records:
        print("locks: none")
        return EXIT_OK
    for record in records:
        liveness = "alive" if locks.is_alive(record) else "stale"
        print(f"{record.session_id}: pid={record.owner_pid} acquired_at={record.acquired_at} {liveness}")
    return EXIT_OK


def _cmd_archive(args: argparse.Namespace) -> int:
    try:
        _repo_root, policy = _resolve_policy(args)
        paths = resolve_session_paths(policy.run_root, args.session)
        destination = archive_session(
            paths, LockCoordinator(paths.locks_dir, log_path=paths.log_path)
        )
    except LoopError as exc:
        print(f"autoloop archive: ERROR {exc}", file=sys.stderr)
        return _exit_code_for(exc)
    print(f"archived: {destination}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_policy_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--repo-root",
        default=".",
        help="Repository root the agent runs in (default: current directory)",
    )
    parser.add_argument(
        "--policy",
        default=None,
        help="Path to the policy YAML (default: <repo-root>/.autoloop/policy.yaml)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="autoloop multi-stage agent loop engine")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Start a new session for a pipeline")
    run.add_argument("pipeline", help="Path to the pipeline YAML file")
    run.add_argument("--session", required=True, help="Session name")
    run.add_argument(
        "--force",
        action="store_true",
        help="Archive an existing session with the same name before starting.",
    )
    run.add_argument("--quiet", action="store_true", help="Do not echo agent output.")
    _add_policy_arguments(run)
    run.set_defaults(handler=_cmd_run)

    resume = subparsers.add_parser("resume", help="Reconcile and continue an interrupted session")
    resume.add_argument("--session", required=True, help="Session name")
    resume.add_argument(
        "--pipeline",
        default=None,
        help="Pipeline YAML (default: the copy stored in the session directory)",
    )
    resume.add_argument("--quiet", action="store_true", help="Do not echo agent output.")
    _add_policy_arguments(resume)
    resume.set_defaults(handler=_cmd_resume)

    status = subparsers.add_parser("status", help="Show session state")
    status.add_argument("--session", required=True, help="Session name")
    _add_policy_arguments(status)
    status.set_defaults(handler=_cmd_status)

    locks = subparsers.add_parser("locks", help="List session locks")
    locks.add_argument("--clean", action="store_true", help="Remove locks held by dead processes.")
    locks.add_argument(
        "--break",
        dest="break_session",
        default=None,
        metavar="SESSION",
        help="Forcibly remove the lock for SESSION.",
    )
    locks.add_argument("--reason", default="manual break", help="Reason recorded for --break.")
    _add_policy_arguments(locks)
    locks.set_defaults(handler=_cmd_locks)

    archive = subparsers.add_parser("archive", help="Move a session directory to the archive")
    archive.add_argument("--session", required=True, help="Session name")
    _add_policy_arguments(archive)
    archive.set_defaults(handler=_cmd_archive)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return EXIT_UNRECOVERABLE
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
