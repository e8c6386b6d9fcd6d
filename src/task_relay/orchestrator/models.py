"""Domain models for task routing, dispatch and lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    INBOX = "inbox"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.DONE, TaskStatus.ERROR}


ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.INBOX: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.ERROR}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.DONE, TaskStatus.ERROR, TaskStatus.INBOX}),
    TaskStatus.DONE: frozenset({TaskStatus.INBOX}),
    TaskStatus.ERROR: frozenset({TaskStatus.INBOX}),
}


def can_transition(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    """Lifecycle edges; re-queue to ``inbox`` is open from every state."""

    return status_to in ALLOWED_TRANSITIONS[status_from] or status_to == TaskStatus.INBOX


class InvalidTransitionError(ValueError):
    """Raised when a requested status change is not part of the lifecycle."""

    def __init__(self, task_id: str, status_from: TaskStatus, status_to: TaskStatus) -> None:
        super().__init__(
            f"Invalid transition for task {task_id}: {status_from.value} -> {status_to.value}",
        )
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class HealthStatus(str, Enum):
    """Per-worker status reported in a health snapshot."""

    OK = "ok"
    UNHEALTHY = "unhealthy"
    UNREACHABLE = "unreachable"
    STALE = "stale"
    OFFLINE = "offline"


class DeliverableType(str, Enum):
    PDF = "pdf"
    AUDIO = "audio"
    VIDEO = "video"
    IMAGE = "image"
    DOCUMENT = "document"
    FILE = "file"
    TEXT = "text"


class FailureClass(str, Enum):
    """Normalized failure classes for external inference calls."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"


@dataclass(slots=True)
class Task:
    """Unit of work as seen by the router and dispatcher.

    ``id`` is assigned by the durable store; purely file-originated tasks
    carry ``None`` until a record is created for them.
    """

    type: str = ""
    description: str = ""
    id: str | None = None
    assigned_to: str | None = None
    status: TaskStatus = TaskStatus.INBOX
    priority: str = "normal"
    user_id: str | None = None
    context: Any = None
    payload: Any = None
    source: str | None = None
    conversation_id: str | None = None
    workflow: bool = False
    parent_task_id: str | None = None
    workflow_step: int | None = None
    depends_on: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> Task:
        """Build a task from a flat JSON object, keeping unknown keys in ``extra``."""

        known = {
            "id",
            "type",
            "description",
            "assigned_to",
            "status",
            "priority",
            "user_id",
            "context",
            "payload",
            "_source",
            "source",
            "conversation_id",
            "workflow",
            "parent_task_id",
            "workflow_step",
            "depends_on",
        }
        status_raw = raw.get("status")
        try:
            status = TaskStatus(status_raw) if status_raw else TaskStatus.INBOX
        except ValueError:
            status = TaskStatus.INBOX
        return cls(
            id=_optional_str(raw.get("id")),
            type=str(raw.get("type") or ""),
            description=str(raw.get("description") or ""),
            assigned_to=_optional_str(raw.get("assigned_to")),
            status=status,
            priority=str(raw.get("priority") or "normal"),
            user_id=_optional_str(raw.get("user_id")),
            context=raw.get("context"),
            payload=raw.get("payload"),
            source=_optional_str(raw.get("source") or raw.get("_source")),
            conversation_id=_optional_str(raw.get("conversation_id")),
            workflow=raw.get("workflow") is True,
            parent_task_id=_optional_str(raw.get("parent_task_id")),
            workflow_step=_optional_int(raw.get("workflow_step")),
            depends_on=_optional_int(raw.get("depends_on")),
            extra={key: value for key, value in raw.items() if key not in known},
        )

    def to_mapping(self) -> dict[str, Any]:
        """Serialize back to the flat JSON object shape workers consume."""

        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "type": self.type,
                "description": self.description,
                "status": self.status.value,
                "priority": self.priority,
            },
        )
        optional: dict[str, Any] = {
            "id": self.id,
            "assigned_to": self.assigned_to,
            "user_id": self.user_id,
            "source": self.source,
            "conversation_id": self.conversation_id,
            "parent_task_id": self.parent_task_id,
            "workflow_step": self.workflow_step,
            "depends_on": self.depends_on,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.context is not None:
            payload["context"] = self.context
        if self.payload is not None:
            payload["payload"] = self.payload
        if self.workflow:
            payload["workflow"] = True
        return payload


@dataclass(slots=True)
class WorkflowSubtask:
    """One step of a decomposed task; exists only between decomposition and dispatch."""

    index: int
    agent: str
    description: str
    depends_on: int | None = None
    parent_task_id: str | None = None
    source_file: str | None = None


@dataclass(slots=True)
class Deliverable:
    """Artifact metadata attached to a task update."""

    type: DeliverableType
    locator: str | None
    content_kind: str
    size_bytes: int | None = None
    checksum_sha256: str | None = None
    preview: str | None = None

    def to_metadata(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "type": self.type.value,
            "locator": self.locator,
            "content_kind": self.content_kind,
        }
        if self.size_bytes is not None:
            payload["size_bytes"] = self.size_bytes
        if self.checksum_sha256 is not None:
            payload["checksum_sha256"] = self.checksum_sha256
        if self.preview is not None:
            payload["preview"] = self.preview
        return payload


@dataclass(slots=True)
class ResultRecord:
    """Worker output dropped into the outbox."""

    filename: str
    agent: str
    result: Any
    task_source: str | None
    task_id: str | None
    output_file: str | None
    error: str | None
    completed_at: str | None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskUpdateWrite:
    """One append-only result entry for a task."""

    agent: str
    result: Any
    deliverable: Deliverable | None = None
    source_file: str | None = None
    result_file: str | None = None
    conversation_id: str | None = None
    completed_at: str | None = None


@dataclass(slots=True)
class TaskUpdateView:
    update_id: int
    task_id: str
    agent: str
    result: Any
    deliverable: dict[str, Any] | None
    source_file: str | None
    result_file: str | None
    conversation_id: str | None
    completed_at: str | None
    recorded_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a durable task record."""

    task_type: str
    description: str
    task_id: str | None = None
    assigned_to: str | None = None
    priority: str = "normal"
    user_id: str | None = None
    source: str | None = None
    conversation_id: str | None = None
    context: Any = None
    payload: Any = None
    is_workflow: bool = False
    parent_task_id: str | None = None
    workflow_step: int | None = None
    workflow_cycle: int | None = None
    depends_on: int | None = None
    status: TaskStatus = TaskStatus.INBOX


@dataclass(slots=True)
class TaskView:
    """Readable task record for CLI, dispatcher and reconciler logic."""

    task_id: str
    user_id: str | None
    task_type: str
    description: str
    assigned_to: str | None
    status: TaskStatus
    priority: str
    source: str | None
    conversation_id: str | None
    context: Any
    payload: Any
    is_workflow: bool
    parent_task_id: str | None
    workflow_step: int | None
    workflow_cycle: int | None
    depends_on: int | None
    dispatched_agent: str | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime

    def to_task(self) -> Task:
        return Task(
            id=self.task_id,
            type=self.task_type,
            description=self.description,
            assigned_to=self.assigned_to,
            status=self.status,
            priority=self.priority,
            user_id=self.user_id,
            context=self.context,
            payload=self.payload,
            source=self.source,
            conversation_id=self.conversation_id,
            workflow=self.is_workflow,
            parent_task_id=self.parent_task_id,
            workflow_step=self.workflow_step,
            depends_on=self.depends_on,
        )


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream and update trail."""

    task: TaskView
    events: list[TaskEventView]
    updates: list[TaskUpdateView]


@dataclass(slots=True)
class AgentHealth:
    """Status of one worker inside a snapshot."""

    agent: str
    status: HealthStatus
    error: str | None = None
    last_task_at: str | None = None
    current_task: str | None = None
    uptime_seconds: int | None = None

    def to_metadata(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "error": self.error,
            "last_task_at": self.last_task_at,
            "current_task": self.current_task,
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass(slots=True)
class HealthSnapshot:
    """Point-in-time map from worker name to reported status."""

    generated_at: datetime
    agents: dict[str, AgentHealth]

    def to_metadata(self) -> dict[str, object]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "agents": {name: health.to_metadata() for name, health in self.agents.items()},
        }


@dataclass(slots=True)
class WriteRequest:
    """Generic write-back request restricted by the store allow-list."""

    table: str
    key: str
    values: dict[str, Any]


@dataclass(slots=True)
class WriteResult:
    ok: bool
    table: str
    key: str
    error: str | None = None
    applied: dict[str, Any] = field(default_factory=dict)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None
