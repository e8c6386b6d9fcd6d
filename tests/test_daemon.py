from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from task_relay.orchestrator.contracts import write_json_atomic
from task_relay.orchestrator.daemon import Area, DaemonSummary, RelayDaemon
from task_relay.orchestrator.models import Task, TaskCreate, TaskStatus, WorkflowSubtask
from task_relay.orchestrator.services import RelayServices

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Relay Daemon"),
]

ServicesFactory = Callable[..., RelayServices]


def test_run_once_moves_task_from_store_to_done(make_services: ServicesFactory) -> None:
    services = make_services()
    stored = services.repository.create_task(
        TaskCreate(task_type="document", description="rebuild the product sheet"),
    )
    daemon = RelayDaemon(services)

    first = daemon.run_once()

    assert (first.store_drops, first.inbox_files, first.failures) == (1, 1, 0)
    task = services.repository.get_task(task_id=stored.task_id)
    assert task is not None
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.dispatched_agent == "pete"

    write_json_atomic(
        services.settings.workspace.outbox_dir / "pete-result.json",
        {"agent": "pete", "result": "sheet rebuilt", "task_id": stored.task_id},
    )
    second = daemon.run_once()

    assert (second.store_drops, second.inbox_files, second.result_files) == (0, 0, 1)
    task = services.repository.get_task(task_id=stored.task_id)
    assert task is not None
    assert task.status == TaskStatus.DONE


def test_unroutable_record_in_outbox_is_left_alone(make_services: ServicesFactory) -> None:
    services = make_services()
    write_json_atomic(
        services.settings.workspace.inbox_dir / "odd.json",
        {"type": "misc", "description": "ping"},
    )
    daemon = RelayDaemon(services)

    daemon.run_once()
    again = daemon.run_once()

    assert again.result_files == 0
    assert (services.settings.workspace.outbox_dir / "error-odd.json").exists()


def test_handle_path_survives_handler_errors(
    make_services: ServicesFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    services = make_services()
    path = services.settings.workspace.inbox_dir / "boom.json"
    write_json_atomic(path, {"type": "research", "description": "x"})

    def _explode(_: Path) -> None:
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(services.inbox, "process_file", _explode)
    summary = DaemonSummary()

    RelayDaemon(services).handle_path(Area.INBOX, path, summary)

    assert summary.failures == 1
    assert summary.inbox_files == 0


def test_vanished_path_is_skipped(make_services: ServicesFactory) -> None:
    services = make_services()
    summary = DaemonSummary()

    RelayDaemon(services).handle_path(
        Area.OUTBOX,
        services.settings.workspace.outbox_dir / "gone.json",
        summary,
    )

    assert summary == DaemonSummary()


def test_run_loop_stops_after_max_seconds(make_services: ServicesFactory) -> None:
    services = make_services()
    write_json_atomic(
        services.settings.workspace.inbox_dir / "job.json",
        {"type": "email", "description": "thank the vendor"},
    )

    summary = RelayDaemon(services).run_loop(max_seconds=0.3)

    assert summary.inbox_files == 1
    assert len(services.mailbox.pending("maggie")) == 1


def test_requeued_workflow_step_is_picked_up_by_the_poll(make_services: ServicesFactory) -> None:
    services = make_services()
    workflow = services.dispatcher.dispatch_workflow(
        Task(type="workflow", description="research vendors, then email the shortlist"),
        [
            WorkflowSubtask(index=0, agent="scout", description="research vendors"),
            WorkflowSubtask(index=1, agent="maggie", description="email shortlist", depends_on=0),
        ],
        source_file=None,
    )
    research, email = workflow.step_task_ids
    outbox = services.settings.workspace.outbox_dir
    write_json_atomic(
        outbox / "scout-fail.json",
        {"agent": "scout", "error": "search quota exceeded", "task_id": research},
    )
    daemon = RelayDaemon(services)
    daemon.run_once()
    parent = services.repository.get_task(task_id=workflow.parent_task_id)
    assert parent is not None
    assert parent.status == TaskStatus.ERROR

    services.lifecycle.requeue(research)
    summary = daemon.run_once()

    assert summary.steps_resumed == 1
    assert len(services.mailbox.pending("scout")) == 2
    step = services.repository.get_task(task_id=research)
    assert step is not None
    assert step.status == TaskStatus.IN_PROGRESS

    write_json_atomic(
        outbox / "scout-ok.json",
        {"agent": "scout", "result": "three vendors", "task_id": research},
    )
    daemon.run_once()

    follow_up = services.repository.get_task(task_id=email)
    assert follow_up is not None
    assert follow_up.status == TaskStatus.IN_PROGRESS
    assert len(services.mailbox.pending("maggie")) == 1
