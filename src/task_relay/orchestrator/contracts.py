"""File-based contracts between the relay and its workers."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from uuid import uuid4

from task_relay.orchestrator.models import ResultRecord

UNROUTABLE_PREFIX = "error-"
ROUTED_BY = "task-relay"


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON so readers never observe a half-written document."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")
    tmp_path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
        "utf-8",
    )
    os.replace(tmp_path, path)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def move_to_dir(path: Path, target_dir: Path) -> Path:
    """Move a handled file into ``target_dir``, replacing a same-named older copy."""

    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / path.name
    os.replace(path, target)
    return target


def is_candidate_file(path: Path) -> bool:
    """JSON documents that are not hidden temp files."""

    return path.suffix == ".json" and not path.name.startswith(".")


def read_result_record(path: Path) -> ResultRecord:
    """Deserialize and validate a worker result file."""

    raw = load_json(path)
    agent = raw.get("agent")
    if not isinstance(agent, str) or not agent.strip():
        raise ValueError("result.agent must be a non-empty string")
    task_source = raw.get("task_source")
    task_id = raw.get("task_id")
    output_file = raw.get("output_file") or raw.get("file_path")
    error = raw.get("error")
    completed_at = raw.get("completed_at")
    return ResultRecord(
        filename=path.name,
        agent=agent.strip().lower(),
        result=raw.get("result"),
        task_source=_non_empty(task_source),
        task_id=_non_empty(task_id),
        output_file=_non_empty(output_file),
        error=_non_empty(error),
        completed_at=completed_at if isinstance(completed_at, str) else None,
        raw=raw,
    )


def unroutable_record(task: dict[str, Any], *, reason: str) -> dict[str, Any]:
    """Original payload plus an explanation, tagged for human re-triage."""

    return {**task, "_error": reason, "_status": "unroutable"}


def _non_empty(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text == "unknown":
        return None
    return text
