from __future__ import annotations

from collections.abc import Callable

import allure
import pytest
from fastapi.testclient import TestClient

from task_relay.orchestrator.contracts import write_json_atomic
from task_relay.orchestrator.models import AgentHealth, HealthStatus, TaskCreate
from task_relay.orchestrator.services import RelayServices
from task_relay.storage.common import utc_now
from task_relay.web.app import create_app

pytestmark = [
    allure.epic("Intake"),
    allure.feature("Webhook API"),
]


@pytest.fixture()
def services(make_services: Callable[..., RelayServices]) -> RelayServices:
    return make_services()


@pytest.fixture()
def client(services: RelayServices) -> TestClient:
    return TestClient(create_app(services))


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "task-relay"}


def test_new_task_hook_accepts_record(client: TestClient, services: RelayServices) -> None:
    response = client.post(
        "/hook/new-task",
        json={"record": {"id": "web-1", "type": "email", "description": "reply"}},
    )

    assert response.status_code == 200
    assert response.json() == {
        "status": "accepted",
        "task_id": "web-1",
        "task_status": "inbox",
        "queued": True,
    }
    assert (services.settings.workspace.inbox_dir / "store-web-1.json").exists()
    stored = services.repository.get_task(task_id="web-1")
    assert stored is not None
    assert stored.source == "webhook"


def test_new_task_hook_requires_record(client: TestClient) -> None:
    response = client.post("/hook/new-task", json={"something": "else"})

    assert response.status_code == 400
    assert response.json()["detail"] == "No record in payload"


def test_named_hook_drops_inbox_file(client: TestClient, services: RelayServices) -> None:
    response = client.post("/hook/nightly-sync", json={"changed": 4})

    body = response.json()
    assert response.status_code == 200
    assert body["hook"] == "nightly-sync"
    assert (services.settings.workspace.inbox_dir / body["file"]).exists()


def test_named_hook_rejects_bad_name(client: TestClient) -> None:
    response = client.post("/hook/bad.name", json={})

    assert response.status_code == 400


def test_write_back_status_codes(client: TestClient, services: RelayServices) -> None:
    task_id = services.repository.create_task(
        TaskCreate(task_type="email", description="x"),
    ).task_id

    denied = client.post(
        "/write-back",
        json={"table": "users", "key": "u-1", "values": {"role": "admin"}},
    )
    missing = client.post(
        "/write-back",
        json={"table": "tasks", "key": "ghost", "values": {"priority": "low"}},
    )
    illegal = client.post(
        "/write-back",
        json={"table": "tasks", "key": task_id, "values": {"status": "done"}},
    )
    applied = client.post(
        "/write-back",
        json={"table": "tasks", "key": task_id, "values": {"priority": "high"}},
    )

    assert denied.status_code == 403
    assert denied.json()["detail"].startswith("DENIED")
    assert missing.status_code == 404
    assert illegal.status_code == 400
    assert applied.status_code == 200
    assert applied.json()["applied"] == {"priority": "high"}


def test_status_combines_snapshot_and_rows(client: TestClient, services: RelayServices) -> None:
    assert client.get("/status").json() == {"snapshot": None, "agents": []}

    snapshot = {"generated_at": "now", "agents": {}}
    write_json_atomic(services.settings.workspace.status_file, snapshot)
    services.repository.upsert_agent_status(
        health=AgentHealth(agent="scout", status=HealthStatus.UNREACHABLE, error="timeout"),
        heartbeat_at=utc_now(),
    )

    body = client.get("/status").json()

    assert body["snapshot"] == {"generated_at": "now", "agents": {}}
    assert [(row["agent"], row["status"]) for row in body["agents"]] == [("scout", "unreachable")]


def test_write_back_bad_values_return_400(
    client: TestClient,
    services: RelayServices,
) -> None:
    task_id = services.repository.create_task(
        TaskCreate(task_type="email", description="x"),
    ).task_id

    null_description = client.post(
        "/write-back",
        json={"table": "tasks", "key": task_id, "values": {"description": None}},
    )
    object_task = client.post(
        "/write-back",
        json={"table": "agent_status", "key": "scout", "values": {"current_task": {"id": 1}}},
    )

    assert null_description.status_code == 400
    assert null_description.json()["detail"] == "Field 'description' of 'tasks' cannot be null"
    assert object_task.status_code == 400
    assert "expects str" in object_task.json()["detail"]
