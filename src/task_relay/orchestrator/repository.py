"""Durable task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from task_relay.orchestrator.models import (
    AgentHealth,
    InvalidTransitionError,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskUpdateView,
    TaskUpdateWrite,
    TaskView,
    WriteRequest,
    WriteResult,
    can_transition,
)
from task_relay.storage.alembic_runner import upgrade_head
from task_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_relay.storage.sqlmodel_models import (
    AgentStatusRecord,
    TaskEventRecord,
    TaskRecord,
    TaskUpdateRecord,
)

logger = logging.getLogger(__name__)

# Writable fields per table: (value type, nullable).
WRITE_FIELD_TYPES: dict[str, dict[str, tuple[type, bool]]] = {
    "tasks": {
        "status": (str, False),
        "priority": (str, False),
        "assigned_to": (str, True),
        "description": (str, False),
        "error_summary": (str, True),
    },
    "agent_status": {
        "status": (str, False),
        "error": (str, True),
        "current_task": (str, True),
        "last_task_at": (str, True),
        "uptime_seconds": (int, True),
    },
}
WRITABLE_FIELDS: dict[str, frozenset[str]] = {
    table: frozenset(fields) for table, fields in WRITE_FIELD_TYPES.items()
}


class TaskNotFoundError(LookupError):
    """Raised when a task id does not exist in the store."""


class WriteDeniedError(PermissionError):
    """Raised when a write targets a table or field outside the allow-list."""


class TaskRepository:
    """Task persistence facade: records, lifecycle transitions, update and event trails."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a task record, ``inbox`` unless the payload says otherwise."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        cycle = payload.workflow_cycle
        if cycle is None and payload.parent_task_id is not None:
            cycle = 1
        with Session(self.engine) as session:
            row = TaskRecord(
                task_id=task_id,
                user_id=payload.user_id,
                task_type=payload.task_type or "general",
                description=payload.description,
                assigned_to=payload.assigned_to,
                status=payload.status.value,
                priority=payload.priority,
                source=payload.source,
                conversation_id=payload.conversation_id,
                context_json=_dump_json(payload.context),
                payload_json=_dump_json(payload.payload),
                is_workflow=payload.is_workflow,
                parent_task_id=payload.parent_task_id,
                workflow_step=payload.workflow_step,
                workflow_cycle=cycle,
                depends_on=payload.depends_on,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # The event row references the task row; insert the task first.
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=payload.status,
                details={
                    "task_type": row.task_type,
                    "source": payload.source,
                    "parent_task_id": payload.parent_task_id,
                    "workflow_step": payload.workflow_step,
                    "workflow_cycle": cycle,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_or_create_task(self, payload: TaskCreate) -> tuple[TaskView, bool]:
        """Return the existing record for ``payload.task_id`` or create it."""

        if payload.task_id is not None:
            existing = self.get_task(task_id=payload.task_id)
            if existing is not None:
                return existing, False
        return self.create_task(payload), True

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return None
            return _to_task_view(row)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRecord).order_by(col(TaskRecord.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_inbox_tasks(self, *, limit: int = 100) -> list[TaskView]:
        """Top-level tasks waiting in ``inbox``; workflow steps are released by their parent."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(
                    TaskRecord.status == TaskStatus.INBOX.value,
                    col(TaskRecord.parent_task_id).is_(None),
                )
                .order_by(col(TaskRecord.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def latest_workflow_cycle(self, *, parent_task_id: str) -> int:
        """Highest step cycle recorded under ``parent_task_id``; ``0`` before the first."""

        with Session(self.engine) as session:
            value = session.exec(
                select(func.max(TaskRecord.workflow_cycle)).where(
                    TaskRecord.parent_task_id == parent_task_id,
                ),
            ).one()
        return int(value or 0)

    def list_workflow_steps(
        self,
        *,
        parent_task_id: str,
        cycle: int | None = None,
    ) -> list[TaskView]:
        """Steps of one decomposition cycle, the latest unless ``cycle`` is given."""

        if cycle is None:
            cycle = self.latest_workflow_cycle(parent_task_id=parent_task_id)
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(
                    TaskRecord.parent_task_id == parent_task_id,
                    TaskRecord.workflow_cycle == cycle,
                )
                .order_by(col(TaskRecord.workflow_step).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_parents_with_waiting_steps(self) -> list[str]:
        """Workflow parents that have at least one step sitting in ``inbox``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord.parent_task_id)
                .where(
                    TaskRecord.status == TaskStatus.INBOX.value,
                    col(TaskRecord.parent_task_id).is_not(None),
                )
                .distinct(),
            ).all()
        return sorted(str(parent_id) for parent_id in rows)

    def transition(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        allowed_from: Iterable[TaskStatus],
        status_to: TaskStatus,
        event_type: str,
        details: dict[str, object] | None = None,
        dispatched_agent: str | None = None,
        error_summary: str | None = None,
    ) -> TaskStatus | None:
        """Conditionally move a task to ``status_to``.

        Returns the previous status when the row matched, ``None`` when the
        task was not in one of ``allowed_from`` (last-write-wins otherwise).
        Raises ``TaskNotFoundError`` for unknown ids.
        """

        allowed = [status.value for status in allowed_from]
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            if previous.value not in allowed:
                return None

            values: dict[str, Any] = {
                "status": status_to.value,
                "updated_at": to_db_datetime(now),
            }
            if dispatched_agent is not None:
                values["dispatched_agent"] = dispatched_agent
            if status_to == TaskStatus.ERROR:
                values["error_summary"] = error_summary
            elif status_to == TaskStatus.INBOX:
                values["error_summary"] = None
                values["dispatched_agent"] = None

            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.task_id) == task_id,
                    col(TaskRecord.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details=details or {},
            )
            session.commit()
            return previous

    def append_update(self, *, task_id: str, update: TaskUpdateWrite) -> TaskUpdateView:
        """Append one result entry; never merges with earlier entries."""

        now = utc_now()
        with Session(self.engine) as session:
            if session.get(TaskRecord, task_id) is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            row = TaskUpdateRecord(
                task_id=task_id,
                agent=update.agent,
                result_json=json.dumps(update.result, ensure_ascii=False, sort_keys=True),
                deliverable_json=(
                    json.dumps(update.deliverable.to_metadata(), ensure_ascii=False, sort_keys=True)
                    if update.deliverable is not None
                    else None
                ),
                source_file=update.source_file,
                result_file=update.result_file,
                conversation_id=update.conversation_id,
                completed_at=update.completed_at,
                recorded_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="update_appended",
                status_from=None,
                status_to=None,
                details={
                    "agent": update.agent,
                    "result_file": update.result_file,
                    "has_deliverable": update.deliverable is not None,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_update_view(row)

    def list_updates(self, *, task_id: str) -> list[TaskUpdateView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskUpdateRecord)
                .where(TaskUpdateRecord.task_id == task_id)
                .order_by(col(TaskUpdateRecord.id).asc()),
            ).all()
        return [_to_update_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream and update trail."""

        with Session(self.engine) as session:
            task = session.get(TaskRecord, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.id).asc()),
            ).all()
            task_view = _to_task_view(task)

        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=int(row.id or 0),
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(
            task=task_view,
            events=events,
            updates=self.list_updates(task_id=task_id),
        )

    def upsert_agent_status(self, *, health: AgentHealth, heartbeat_at: datetime) -> None:
        """Mirror one snapshot entry into ``agent_status`` keyed by worker name."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(AgentStatusRecord, health.agent)
            if row is None:
                row = AgentStatusRecord(
                    agent_name=health.agent,
                    status=health.status.value,
                    last_heartbeat=heartbeat_at,
                    updated_at=now,
                )
            row.status = health.status.value
            row.error = health.error
            row.last_heartbeat = heartbeat_at
            row.last_task_at = health.last_task_at
            row.current_task = health.current_task
            row.uptime_seconds = health.uptime_seconds
            row.updated_at = now
            session.add(row)
            session.commit()

    def list_agent_status(self) -> list[AgentStatusRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentStatusRecord).order_by(col(AgentStatusRecord.agent_name).asc()),
            ).all()
            for row in rows:
                session.expunge(row)
        return list(rows)

    def apply_write(self, request: WriteRequest) -> WriteResult:
        """Apply a generic write restricted to the table/field allow-list.

        Denied writes are returned as a descriptive error, never attempted.
        """

        try:
            _check_write_allowed(request)
        except WriteDeniedError as error:
            logger.warning("WRITE DENIED: %s", error)
            return WriteResult(ok=False, table=request.table, key=request.key, error=str(error))

        invalid = _invalid_write_value(request)
        if invalid is not None:
            logger.warning("WRITE REJECTED: %s", invalid)
            return WriteResult(ok=False, table=request.table, key=request.key, error=invalid)

        if request.table == "tasks":
            return self._apply_task_write(request)
        return self._apply_agent_status_write(request)

    def _apply_task_write(self, request: WriteRequest) -> WriteResult:
        values = dict(request.values)
        if "status" in values:
            try:
                values["status"] = TaskStatus(values["status"]).value
            except ValueError:
                return WriteResult(
                    ok=False,
                    table=request.table,
                    key=request.key,
                    error=f"Invalid task status: {values['status']!r}",
                )
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskRecord, request.key)
            if row is None:
                return WriteResult(
                    ok=False,
                    table=request.table,
                    key=request.key,
                    error=f"Task not found: {request.key}",
                )
            previous = TaskStatus(row.status)
            if "status" in values:
                requested = TaskStatus(values["status"])
                if requested != previous and not can_transition(previous, requested):
                    return WriteResult(
                        ok=False,
                        table=request.table,
                        key=request.key,
                        error=str(InvalidTransitionError(request.key, previous, requested)),
                    )
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = now
            session.add(row)
            new_status = TaskStatus(row.status)
            self._add_event(
                session=session,
                task_id=request.key,
                event_type="write_back",
                status_from=previous if new_status != previous else None,
                status_to=new_status if new_status != previous else None,
                details={"fields": sorted(values)},
            )
            session.commit()
        return WriteResult(ok=True, table=request.table, key=request.key, applied=values)

    def _apply_agent_status_write(self, request: WriteRequest) -> WriteResult:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(AgentStatusRecord, request.key)
            if row is None:
                row = AgentStatusRecord(
                    agent_name=request.key,
                    status=str(request.values.get("status", "unknown")),
                    last_heartbeat=now,
                    updated_at=now,
                )
            for name, value in request.values.items():
                setattr(row, name, value)
            row.updated_at = now
            session.add(row)
            session.commit()
        return WriteResult(
            ok=True,
            table=request.table,
            key=request.key,
            applied=dict(request.values),
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _check_write_allowed(request: WriteRequest) -> None:
    allowed_fields = WRITABLE_FIELDS.get(request.table)
    if allowed_fields is None:
        raise WriteDeniedError(
            f"DENIED: Write access to '{request.table}' is not permitted. "
            f"Writable tables: {', '.join(sorted(WRITABLE_FIELDS))}",
        )
    if not request.values:
        raise WriteDeniedError(f"DENIED: Empty write to '{request.table}'.")
    rejected = sorted(set(request.values) - allowed_fields)
    if rejected:
        raise WriteDeniedError(
            f"DENIED: Fields {', '.join(rejected)} of '{request.table}' are not writable. "
            f"Writable fields: {', '.join(sorted(allowed_fields))}",
        )


def _invalid_write_value(request: WriteRequest) -> str | None:
    field_types = WRITE_FIELD_TYPES[request.table]
    for name, value in sorted(request.values.items()):
        expected, nullable = field_types[name]
        if value is None:
            if not nullable:
                return f"Field '{name}' of '{request.table}' cannot be null"
            continue
        # bool is an int subclass but never a valid column value here.
        if isinstance(value, bool) or not isinstance(value, expected):
            return (
                f"Field '{name}' of '{request.table}' expects {expected.__name__}, "
                f"got {type(value).__name__}"
            )
    return None


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json_value(value: str | None) -> Any:
    if value is None:
        return None
    return json.loads(value)


def _load_json_object(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else {}


def _to_task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        task_type=row.task_type,
        description=row.description,
        assigned_to=row.assigned_to,
        status=TaskStatus(row.status),
        priority=row.priority,
        source=row.source,
        conversation_id=row.conversation_id,
        context=_load_json_value(row.context_json),
        payload=_load_json_value(row.payload_json),
        is_workflow=bool(row.is_workflow),
        parent_task_id=row.parent_task_id,
        workflow_step=row.workflow_step,
        workflow_cycle=row.workflow_cycle,
        depends_on=row.depends_on,
        dispatched_agent=row.dispatched_agent,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_update_view(row: TaskUpdateRecord) -> TaskUpdateView:
    return TaskUpdateView(
        update_id=int(row.id or 0),
        task_id=row.task_id,
        agent=row.agent,
        result=json.loads(row.result_json) if row.result_json else None,
        deliverable=_load_json_object(row.deliverable_json) or None,
        source_file=row.source_file,
        result_file=row.result_file,
        conversation_id=row.conversation_id,
        completed_at=row.completed_at,
        recorded_at=to_utc_aware_datetime(row.recorded_at),
    )
