"""Declarative worker roster.

A worker is a plain record: adding one is a validated append to the roster
file, never code generation.  The roster feeds the router's tables, the
classifier vocabulary and the health monitor's target list.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from task_relay.orchestrator.contracts import write_json_atomic

logger = logging.getLogger(__name__)

MAX_WORKERS = 15
WORKER_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]{1,20}$")
RESERVED_NAMES = frozenset(
    {"orchestrator", "stan", "stan-orchestrator", "claude", "root", "admin"},
)


class RosterError(ValueError):
    """Raised when a worker record or roster file violates the roster rules."""


@dataclass(slots=True)
class WorkerSpec:
    """One worker as the relay sees it."""

    name: str
    display_name: str = ""
    role: str = ""
    description: str = ""
    task_type: str | None = None
    keywords: tuple[str, ...] = ()
    escalation: bool = False
    health_url: str | None = None
    enabled: bool = True
    max_concurrent_tasks: int = 1
    timeout_seconds: int = 300

    @property
    def routable_type(self) -> str:
        """Task type that routes to this worker through the ordinary table."""

        return self.task_type or (self.keywords[0] if self.keywords else self.name)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> WorkerSpec:
        name = raw.get("name")
        if not isinstance(name, str):
            raise RosterError("worker.name must be a string")
        keywords = raw.get("keywords") or ()
        if not isinstance(keywords, list | tuple) or not all(
            isinstance(item, str) for item in keywords
        ):
            raise RosterError(f"worker {name!r}: keywords must be a list of strings")
        return cls(
            name=name.strip().lower(),
            display_name=str(raw.get("display_name") or ""),
            role=str(raw.get("role") or ""),
            description=str(raw.get("description") or ""),
            task_type=raw.get("task_type") or None,
            keywords=tuple(keyword.strip().lower() for keyword in keywords if keyword.strip()),
            escalation=raw.get("escalation") is True,
            health_url=raw.get("health_url") or None,
            enabled=raw.get("enabled", True) is not False,
            max_concurrent_tasks=int(raw.get("max_concurrent_tasks", 1)),
            timeout_seconds=int(raw.get("timeout_seconds", 300)),
        )

    def to_mapping(self) -> dict[str, object]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "role": self.role,
            "description": self.description,
            "task_type": self.task_type,
            "keywords": list(self.keywords),
            "escalation": self.escalation,
            "health_url": self.health_url,
            "enabled": self.enabled,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass(slots=True)
class Roster:
    """Ordered, validated list of workers."""

    workers: tuple[WorkerSpec, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if len(self.workers) > MAX_WORKERS:
            raise RosterError(
                f"Roster holds {len(self.workers)} workers; the maximum is {MAX_WORKERS}.",
            )
        seen: set[str] = set()
        for worker in self.workers:
            validate_worker_name(worker.name)
            if worker.name in seen:
                raise RosterError(f"Worker {worker.name!r} is listed twice.")
            seen.add(worker.name)
            if worker.max_concurrent_tasks < 1:
                raise RosterError(f"Worker {worker.name!r}: max_concurrent_tasks must be >= 1.")
            if worker.timeout_seconds < 1:
                raise RosterError(f"Worker {worker.name!r}: timeout_seconds must be >= 1.")

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(worker.name for worker in self.workers)

    @property
    def escalation_workers(self) -> tuple[WorkerSpec, ...]:
        return tuple(worker for worker in self.workers if worker.escalation)

    def get(self, name: str) -> WorkerSpec | None:
        normalized = name.strip().lower()
        for worker in self.workers:
            if worker.name == normalized:
                return worker
        return None

    def add(self, worker: WorkerSpec) -> Roster:
        """Return a new roster with ``worker`` appended; the receiver is unchanged."""

        validate_worker_name(worker.name)
        if self.get(worker.name) is not None:
            raise RosterError(f"Worker {worker.name!r} already exists.")
        if len(self.workers) >= MAX_WORKERS:
            raise RosterError(
                f"Max {MAX_WORKERS} workers reached; cannot add {worker.name!r}.",
            )
        return Roster(workers=(*self.workers, worker))

    def with_enabled(self, name: str, *, enabled: bool) -> Roster:
        worker = self.get(name)
        if worker is None:
            raise RosterError(f"Unknown worker: {name!r}")
        return Roster(
            workers=tuple(
                replace(item, enabled=enabled) if item.name == worker.name else item
                for item in self.workers
            ),
        )

    def to_mapping(self) -> dict[str, object]:
        return {"workers": [worker.to_mapping() for worker in self.workers]}


def validate_worker_name(name: str) -> None:
    """Reject names outside the allowed pattern and reserved identities."""

    if not WORKER_NAME_PATTERN.fullmatch(name):
        raise RosterError(
            f"Invalid worker name {name!r}: must be lowercase alphanumeric plus hyphens, "
            "2-21 chars, starting with a letter.",
        )
    if name in RESERVED_NAMES:
        raise RosterError(f"{name!r} is a reserved name.")


def default_roster() -> Roster:
    """The stock fleet: seven specialists plus the escalation worker."""

    def _worker(name: str, role: str, task_type: str, keywords: tuple[str, ...]) -> WorkerSpec:
        return WorkerSpec(
            name=name,
            display_name=name.capitalize(),
            role=role,
            task_type=task_type,
            keywords=keywords,
            health_url=f"http://{name}:3001/health",
        )

    return Roster(
        workers=(
            _worker(
                "magnus",
                "Equipment Specialist",
                "equipment",
                ("equipment", "technical", "knowledge"),
            ),
            _worker(
                "pete",
                "Document Formatter",
                "document",
                ("document", "reconstruct", "pdf", "format"),
            ),
            _worker(
                "caesar",
                "ERP Analyst",
                "epicor",
                ("epicor", "order", "csr", "baq", "customer"),
            ),
            _worker(
                "maggie",
                "Communications Drafter",
                "email",
                ("email", "draft", "communication", "letter", "respond"),
            ),
            _worker(
                "clark",
                "Database Clerk",
                "supabase",
                ("supabase", "query", "upload", "task-write", "database"),
            ),
            replace(
                _worker(
                    "sentry",
                    "Webhook Sentry",
                    "webhook",
                    ("webhook", "cron", "schedule", "hook"),
                ),
                health_url="http://sentry:3000/health",
            ),
            _worker(
                "scout",
                "Researcher",
                "research",
                ("research", "search", "investigate", "lookup", "find out", "web"),
            ),
            WorkerSpec(
                name="oracle",
                display_name="Oracle",
                role="Escalation Reasoner",
                task_type="complex",
                keywords=(
                    "complex",
                    "architecture",
                    "code-review",
                    "audit",
                    "oracle",
                    "refactor",
                    "security",
                ),
                escalation=True,
                health_url=None,
                timeout_seconds=900,
            ),
        ),
    )


def load_roster(path: Path | None) -> Roster:
    """Load the roster file, or the stock fleet when no file is configured."""

    if path is None or not path.exists():
        return default_roster()
    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise RosterError(f"Roster file {path} is not valid JSON: {error}") from error
    if not isinstance(raw, dict) or not isinstance(raw.get("workers"), list):
        raise RosterError(f"Roster file {path} must be an object with a 'workers' list.")
    return Roster(workers=tuple(WorkerSpec.from_mapping(item) for item in raw["workers"]))


def save_roster(path: Path, roster: Roster) -> None:
    write_json_atomic(path, roster.to_mapping())
    logger.info("Roster saved: path=%s workers=%d", path, len(roster.workers))
