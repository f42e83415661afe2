"""Autoloop utility functions -- timestamps, JSON IO, atomic writes, logging."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

from jsonschema import Draft202012Validator

from autoloop.constants import PACKAGE_SCHEMA_DIR
from autoloop.models import StateCorrupt


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _archive_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


# ---------------------------------------------------------------------------
# JSON IO
# ---------------------------------------------------------------------------


def _write_text_atomic(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via temp file, fsync, and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.tmp-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    _write_text_atomic(path, json.dumps(payload, indent=2) + "\n")


def _read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateCorrupt(f"{path} is not valid JSON: {exc}") from exc
    except OSError as exc:
        raise StateCorrupt(f"{path} could not be read: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateCorrupt(f"{path} must contain an object")
    return payload


def _load_json_if_exists(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------


@lru_cache(maxsize=None)
def _load_schema(schema_name: str) -> dict[str, Any]:
    path = PACKAGE_SCHEMA_DIR / f"{schema_name}.schema.json"
    return json.loads(path.read_text(encoding="utf-8"))


def _format_error_path(error_path: Iterable[Any]) -> str:
    pieces = ["$"]
    for part in error_path:
        if isinstance(part, int):
            pieces.append(f"[{part}]")
        else:
            pieces.append(f".{part}")
    return "".join(pieces)


def _schema_violations(payload: Any, *, schema_name: str, path: Path) -> list[str]:
    validator = Draft202012Validator(_load_schema(schema_name))
    failures: list[str] = []
    for error in sorted(
        validator.iter_errors(payload), key=lambda item: _format_error_path(item.path)
    ):
        location = _format_error_path(error.path)
        failures.append(f"{path} schema violation at {location}: {error.message}")
    return failures


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _normalize_space(value: Any) -> str:
    return " ".join(str(value).split())


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(log_path: Path, message: str) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")
