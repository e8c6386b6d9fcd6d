from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import allure
import pytest
from conftest import ScriptedBackend

from task_relay.config import Settings, WorkspaceSettings
from task_relay.orchestrator.contracts import load_json, write_json_atomic
from task_relay.orchestrator.intake import IntakeStatus, store_filename
from task_relay.orchestrator.models import TaskCreate, TaskStatus
from task_relay.orchestrator.services import RelayServices

pytestmark = [
    allure.epic("Intake"),
    allure.feature("Inbox, Records & Hooks"),
]

ServicesFactory = Callable[..., RelayServices]


def _drop(services: RelayServices, name: str, payload: dict[str, object]) -> Path:
    path = services.settings.workspace.inbox_dir / name
    write_json_atomic(path, payload)
    return path


def test_keyword_match_dispatches_and_archives(make_services: ServicesFactory) -> None:
    services = make_services()
    path = _drop(services, "job.json", {"type": "research", "description": "compare vendors"})

    outcome = services.inbox.process_file(path)

    assert outcome.status == IntakeStatus.DISPATCHED
    assert outcome.agent == "scout"
    pending = services.mailbox.pending("scout")
    assert len(pending) == 1
    assert load_json(pending[0])["_source_file"] == "job.json"
    assert not path.exists()
    assert (services.settings.workspace.processed_dir / "job.json").exists()


def test_second_discovery_of_same_path_is_a_noop(make_services: ServicesFactory) -> None:
    services = make_services()
    path = _drop(services, "job.json", {"type": "email", "description": "reply to ACME"})

    services.inbox.process_file(path)
    again = services.inbox.process_file(path)

    assert again.status == IntakeStatus.MISSING
    assert len(services.mailbox.pending("maggie")) == 1


def test_unroutable_task_writes_error_record(make_services: ServicesFactory) -> None:
    services = make_services()
    stored = services.repository.create_task(TaskCreate(task_type="misc", description="ping"))
    payload = {"id": stored.task_id, "type": "misc", "description": "ping", "note": "keep me"}
    path = _drop(services, "odd.json", payload)

    outcome = services.inbox.process_file(path)

    assert outcome.status == IntakeStatus.UNROUTABLE
    error_file = services.settings.workspace.outbox_dir / "error-odd.json"
    assert outcome.error_file == error_file
    record = load_json(error_file)
    assert record["note"] == "keep me"
    assert record["_status"] == "unroutable"
    assert record["_error"] == "Could not determine target agent"
    assert (services.settings.workspace.processed_dir / "odd.json").exists()
    task = services.repository.get_task(task_id=stored.task_id)
    assert task is not None
    assert task.status == TaskStatus.ERROR


def test_classifier_fallback_dispatches(make_services: ServicesFactory) -> None:
    backend = ScriptedBackend("Thinking...\nmaggie")
    services = make_services(backend=backend)
    path = _drop(services, "vague.json", {"type": "misc", "description": "sort this out"})

    outcome = services.inbox.process_file(path)

    assert outcome.status == IntakeStatus.DISPATCHED
    assert outcome.agent == "maggie"
    assert len(backend.requests) == 1


def test_malformed_inbox_file_is_archived(make_services: ServicesFactory) -> None:
    services = make_services()
    path = services.settings.workspace.inbox_dir / "broken.json"
    path.write_text("{nope", "utf-8")

    outcome = services.inbox.process_file(path)

    assert outcome.status == IntakeStatus.INVALID
    assert not path.exists()
    assert not list(services.settings.workspace.outbox_dir.glob("*.json"))


def test_workflow_request_decomposes_into_steps(make_services: ServicesFactory) -> None:
    plan = json.dumps(
        [
            {"agent": "scout", "description": "research the three vendors"},
            {"agent": "maggie", "description": "email the shortlist", "depends_on": 0},
        ],
    )
    services = make_services(backend=ScriptedBackend(plan))
    path = _drop(
        services,
        "wf.json",
        {"type": "workflow", "description": "research vendors, then email the shortlist"},
    )

    outcome = services.inbox.process_file(path)

    assert outcome.status == IntakeStatus.WORKFLOW
    assert outcome.workflow is not None
    steps = services.repository.list_workflow_steps(parent_task_id=outcome.workflow.parent_task_id)
    assert [(step.assigned_to, step.status) for step in steps] == [
        ("scout", TaskStatus.IN_PROGRESS),
        ("maggie", TaskStatus.INBOX),
    ]
    assert services.mailbox.pending("maggie") == []


def test_record_intake_queues_and_maps_assignee(make_services: ServicesFactory) -> None:
    services = make_services()

    view, path = services.records.accept(
        {"id": "rec-1", "type": "general", "description": "look into it", "assigned_to": "Scout"},
    )

    assert view.task_id == "rec-1"
    assert view.task_type == "research"
    assert path == services.settings.workspace.inbox_dir / store_filename("rec-1")
    assert load_json(path)["type"] == "research"


def test_record_intake_does_not_requeue_started_tasks(make_services: ServicesFactory) -> None:
    services = make_services()
    view, _ = services.records.accept({"id": "rec-2", "type": "email", "description": "x"})
    services.lifecycle.mark_in_progress(view.task_id, agent="maggie")

    again, path = services.records.accept({"id": "rec-2", "type": "email", "description": "x"})

    assert path is None
    assert again.status == TaskStatus.IN_PROGRESS


def test_store_poller_surfaces_each_inbox_row_once(make_services: ServicesFactory) -> None:
    services = make_services()
    stored = services.repository.create_task(TaskCreate(task_type="pdf", description="rebuild"))

    first = services.poller.poll()
    second = services.poller.poll()

    assert [path.name for path in first] == [store_filename(stored.task_id)]
    assert second == []
    assert load_json(first[0])["id"] == stored.task_id


def test_hook_without_handler_becomes_webhook_task(make_services: ServicesFactory) -> None:
    services = make_services()

    path = services.hooks.accept("nightly", {"rows": 3})

    task = load_json(path)
    assert path.name.startswith("hook-nightly-")
    assert task["type"] == "webhook"
    assert task["description"] == "Webhook trigger: nightly"
    assert task["context"]["payload"] == {"rows": 3}
    with pytest.raises(ValueError, match="Invalid hook name"):
        services.hooks.accept("../escape", {})


def test_hook_handler_overrides_type(
    make_services: ServicesFactory,
    relay_settings: Settings,
    tmp_path: Path,
) -> None:
    hooks_dir = tmp_path / "hooks"
    write_json_atomic(
        hooks_dir / "invoices.json",
        {"route_to": "epicor", "description": "Sync invoices"},
    )
    settings = Settings(
        db_path=relay_settings.db_path,
        workspace=WorkspaceSettings(
            workspace_dir=relay_settings.workspace.workspace_dir,
            agents_dir=relay_settings.workspace.agents_dir,
            hooks_dir=hooks_dir,
        ),
        daemon=relay_settings.daemon,
    )
    services = make_services(settings=settings)

    path = services.hooks.accept("invoices", None)
    outcome = services.inbox.process_file(path)

    assert load_json(services.mailbox.pending("caesar")[0])["description"] == "Sync invoices"
    assert outcome.agent == "caesar"


OFFSITE_PLAN = (
    "Plan the quarterly offsite for the sales team: pick a venue near the coast, line up "
    "catering for forty people, arrange travel and share the agenda with everyone involved."
)


def test_long_unroutable_task_falls_back_to_decomposition(make_services: ServicesFactory) -> None:
    plan = json.dumps(
        [
            {"agent": "magnus", "description": "pick a venue near the coast"},
            {"agent": "maggie", "description": "share the agenda", "depends_on": 0},
        ],
    )
    backend = ScriptedBackend("not sure", plan)
    services = make_services(backend=backend)
    path = _drop(services, "offsite.json", {"type": "misc", "description": OFFSITE_PLAN})

    outcome = services.inbox.process_file(path)

    assert outcome.status == IntakeStatus.WORKFLOW
    assert outcome.agent == "decomposition"
    assert len(backend.requests) == 2
    assert outcome.workflow is not None
    assert [result.agent for result in outcome.workflow.released] == ["magnus"]


def test_single_step_decomposition_is_not_a_workflow(make_services: ServicesFactory) -> None:
    plan = json.dumps([{"agent": "magnus", "description": "pick a venue near the coast"}])
    backend = ScriptedBackend("not sure", plan)
    services = make_services(backend=backend)
    path = _drop(services, "offsite.json", {"type": "misc", "description": OFFSITE_PLAN})

    outcome = services.inbox.process_file(path)

    assert outcome.status == IntakeStatus.UNROUTABLE
    assert len(backend.requests) == 2
    assert (services.settings.workspace.outbox_dir / "error-offsite.json").exists()
    assert services.mailbox.pending("magnus") == []


def test_opaque_context_and_payload_reach_the_mailbox(make_services: ServicesFactory) -> None:
    services = make_services()
    path = _drop(
        services,
        "raw.json",
        {"type": "email", "description": "x", "context": ["keep", "me"], "payload": "raw text"},
    )

    services.inbox.process_file(path)

    entry = load_json(services.mailbox.pending("maggie")[0])
    assert entry["context"] == ["keep", "me"]
    assert entry["payload"] == "raw text"

    view, store_file = services.records.accept(
        {"id": "rec-3", "type": "email", "description": "x", "context": "note", "payload": [1]},
    )
    assert view.context == "note"
    assert store_file is not None
    assert load_json(store_file)["payload"] == [1]
