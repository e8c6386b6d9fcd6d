from __future__ import annotations

import allure
import pytest

from task_relay.orchestrator.models import (
    TaskCreate,
    TaskStatus,
    TaskUpdateWrite,
    WriteRequest,
)
from task_relay.orchestrator.repository import TaskNotFoundError, TaskRepository

pytestmark = [
    allure.epic("Store"),
    allure.feature("Task Repository"),
]


def test_create_task_round_trips_context_and_payload(repository: TaskRepository) -> None:
    view = repository.create_task(
        TaskCreate(
            task_type="epicor",
            description="pull open orders",
            priority="high",
            source="webhook",
            context={"customer": "ACME"},
            payload={"type": "epicor", "extra": [1, 2]},
        ),
    )

    stored = repository.get_task(task_id=view.task_id)

    assert stored is not None
    assert stored.status == TaskStatus.INBOX
    assert stored.context == {"customer": "ACME"}
    assert stored.payload["extra"] == [1, 2]
    details = repository.get_task_details(task_id=view.task_id)
    assert details is not None
    assert details.events[0].event_type == "created"
    assert details.events[0].details["source"] == "webhook"


def test_get_or_create_is_idempotent_on_task_id(repository: TaskRepository) -> None:
    payload = TaskCreate(task_type="email", description="x", task_id="fixed-id")

    first, created = repository.get_or_create_task(payload)
    second, created_again = repository.get_or_create_task(payload)

    assert created is True
    assert created_again is False
    assert first.task_id == second.task_id == "fixed-id"


def test_list_inbox_tasks_excludes_workflow_steps(repository: TaskRepository) -> None:
    parent = repository.create_task(
        TaskCreate(task_type="workflow", description="parent", is_workflow=True),
    )
    repository.create_task(
        TaskCreate(
            task_type="research",
            description="step",
            parent_task_id=parent.task_id,
            workflow_step=0,
        ),
    )

    inbox = repository.list_inbox_tasks()

    assert [task.task_id for task in inbox] == [parent.task_id]
    assert len(repository.list_tasks(status=TaskStatus.INBOX)) == 2


def test_transition_guards_on_current_status(repository: TaskRepository) -> None:
    task_id = repository.create_task(TaskCreate(task_type="email", description="x")).task_id

    skipped = repository.transition(
        task_id=task_id,
        allowed_from=[TaskStatus.IN_PROGRESS],
        status_to=TaskStatus.DONE,
        event_type="completed",
    )
    moved = repository.transition(
        task_id=task_id,
        allowed_from=[TaskStatus.INBOX],
        status_to=TaskStatus.IN_PROGRESS,
        event_type="dispatched",
        dispatched_agent="maggie",
    )

    assert skipped is None
    assert moved == TaskStatus.INBOX
    with pytest.raises(TaskNotFoundError, match="Task not found: ghost"):
        repository.transition(
            task_id="ghost",
            allowed_from=[TaskStatus.INBOX],
            status_to=TaskStatus.IN_PROGRESS,
            event_type="dispatched",
        )


def test_append_update_requires_existing_task(repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        repository.append_update(task_id="ghost", update=TaskUpdateWrite(agent="scout"))


def test_write_back_denies_unlisted_tables_and_fields(repository: TaskRepository) -> None:
    task_id = repository.create_task(TaskCreate(task_type="email", description="x")).task_id

    table = repository.apply_write(WriteRequest(table="users", key="u-1", values={"a": 1}))
    field = repository.apply_write(
        WriteRequest(table="tasks", key=task_id, values={"task_type": "other"}),
    )
    empty = repository.apply_write(WriteRequest(table="tasks", key=task_id, values={}))

    assert not table.ok
    assert table.error is not None
    assert table.error.startswith("DENIED: Write access to 'users'")
    assert field.error is not None
    assert field.error.startswith("DENIED: Fields task_type")
    assert empty.error == "DENIED: Empty write to 'tasks'."
    stored = repository.get_task(task_id=task_id)
    assert stored is not None
    assert stored.task_type == "email"


def test_write_back_applies_allowed_fields(repository: TaskRepository) -> None:
    task_id = repository.create_task(TaskCreate(task_type="email", description="x")).task_id

    result = repository.apply_write(
        WriteRequest(
            table="tasks",
            key=task_id,
            values={"priority": "urgent", "status": "in_progress"},
        ),
    )

    assert result.ok
    assert result.applied == {"priority": "urgent", "status": "in_progress"}
    stored = repository.get_task_details(task_id=task_id)
    assert stored is not None
    assert stored.task.priority == "urgent"
    assert stored.task.status == TaskStatus.IN_PROGRESS
    assert stored.events[-1].event_type == "write_back"


def test_write_back_rejects_illegal_status(repository: TaskRepository) -> None:
    task_id = repository.create_task(TaskCreate(task_type="email", description="x")).task_id

    unknown = repository.apply_write(
        WriteRequest(table="tasks", key=task_id, values={"status": "archived"}),
    )
    illegal = repository.apply_write(
        WriteRequest(table="tasks", key=task_id, values={"status": "done"}),
    )
    missing = repository.apply_write(
        WriteRequest(table="tasks", key="ghost", values={"priority": "low"}),
    )

    assert unknown.error == "Invalid task status: 'archived'"
    assert illegal.error == f"Invalid transition for task {task_id}: inbox -> done"
    assert missing.error == "Task not found: ghost"


def test_write_back_creates_agent_status_row(repository: TaskRepository) -> None:
    result = repository.apply_write(
        WriteRequest(
            table="agent_status",
            key="scout",
            values={"status": "ok", "current_task": "t-1"},
        ),
    )

    assert result.ok
    rows = repository.list_agent_status()
    assert [(row.agent_name, row.status, row.current_task) for row in rows] == [
        ("scout", "ok", "t-1"),
    ]


def test_creation_and_updates_hold_under_foreign_keys(repository: TaskRepository) -> None:
    with repository.engine.connect() as connection:
        assert connection.exec_driver_sql("PRAGMA foreign_keys").scalar_one() == 1
    parent = repository.create_task(
        TaskCreate(task_type="workflow", description="parent", is_workflow=True),
    )
    step = repository.create_task(
        TaskCreate(
            task_type="research",
            description="step",
            parent_task_id=parent.task_id,
            workflow_step=0,
        ),
    )

    repository.append_update(task_id=step.task_id, update=TaskUpdateWrite(agent="scout"))

    details = repository.get_task_details(task_id=step.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created", "update_appended"]
    assert details.task.workflow_cycle == 1
    assert len(details.updates) == 1


def test_non_object_context_and_payload_are_kept_verbatim(repository: TaskRepository) -> None:
    view = repository.create_task(
        TaskCreate(
            task_type="email",
            description="x",
            context=["keep", "me"],
            payload="raw text",
        ),
    )

    stored = repository.get_task(task_id=view.task_id)

    assert stored is not None
    assert stored.context == ["keep", "me"]
    assert stored.payload == "raw text"
    assert stored.to_task().to_mapping()["payload"] == "raw text"


def test_write_back_rejects_values_of_the_wrong_type(repository: TaskRepository) -> None:
    task_id = repository.create_task(TaskCreate(task_type="email", description="x")).task_id

    null_description = repository.apply_write(
        WriteRequest(table="tasks", key=task_id, values={"description": None}),
    )
    object_task = repository.apply_write(
        WriteRequest(table="agent_status", key="scout", values={"current_task": {"id": 1}}),
    )
    flag_uptime = repository.apply_write(
        WriteRequest(table="agent_status", key="scout", values={"uptime_seconds": True}),
    )
    cleared = repository.apply_write(
        WriteRequest(table="tasks", key=task_id, values={"error_summary": None}),
    )

    assert null_description.error == "Field 'description' of 'tasks' cannot be null"
    assert object_task.error == "Field 'current_task' of 'agent_status' expects str, got dict"
    assert flag_uptime.error == "Field 'uptime_seconds' of 'agent_status' expects int, got bool"
    assert cleared.ok
    stored = repository.get_task(task_id=task_id)
    assert stored is not None
    assert stored.description == "x"
    assert repository.list_agent_status() == []
