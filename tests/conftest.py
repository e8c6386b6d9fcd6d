"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import httpx
import pytest

from task_relay.config import DaemonSettings, HealthSettings, Settings, WorkspaceSettings
from task_relay.http.client import JsonHttpClient
from task_relay.orchestrator.backend import InferenceRequest, InferenceResult
from task_relay.orchestrator.repository import TaskRepository
from task_relay.orchestrator.services import RelayServices, build_services


class ScriptedBackend:
    """Inference backend returning queued answers; records every request."""

    def __init__(self, *answers: InferenceResult | str) -> None:
        self.answers = list(answers)
        self.requests: list[InferenceRequest] = []

    def run(self, request: InferenceRequest) -> InferenceResult:
        self.requests.append(request)
        if not self.answers:
            return InferenceResult(exit_code=1, timed_out=False, stdout="", stderr="no answer")
        answer = self.answers.pop(0)
        if isinstance(answer, str):
            return InferenceResult(exit_code=0, timed_out=False, stdout=answer, stderr="")
        return answer


@pytest.fixture()
def relay_settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "relay.db",
        workspace=WorkspaceSettings(
            workspace_dir=tmp_path / "workspace",
            agents_dir=tmp_path / "agents",
        ),
        health=HealthSettings(stale_after_seconds=900),
        daemon=DaemonSettings(
            poll_interval_seconds=0.05,
            write_stability_seconds=0,
            watch_enabled=False,
            store_poll_enabled=True,
            health_enabled=False,
        ),
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "store.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def offline_transport() -> httpx.MockTransport:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.MockTransport(_handler)


@pytest.fixture()
def make_services(
    relay_settings: Settings,
    offline_transport: httpx.MockTransport,
) -> Iterator[Callable[..., RelayServices]]:
    """Factory for wired services over a temp workspace; closes everything afterwards."""

    built: list[RelayServices] = []

    def _make(
        *,
        backend: ScriptedBackend | None = None,
        transport: httpx.BaseTransport | None = None,
        settings: Settings | None = None,
    ) -> RelayServices:
        services = build_services(
            settings or relay_settings,
            backend=backend,
            http_client=JsonHttpClient(transport=transport or offline_transport),
        )
        services.repository.init_schema()
        services.ensure_directories()
        built.append(services)
        return services

    yield _make
    for services in built:
        services.close()


@pytest.fixture()
def relay_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point ``Settings.from_env`` at a temp workspace; returns the DB path."""

    monkeypatch.setenv("TASK_RELAY_WORKSPACE_DIR", str(tmp_path / "workspace"))
    monkeypatch.setenv("TASK_RELAY_AGENTS_DIR", str(tmp_path / "agents"))
    monkeypatch.setenv("TASK_RELAY_WRITE_STABILITY_SECONDS", "0")
    monkeypatch.setenv("TASK_RELAY_WATCH_ENABLED", "false")
    monkeypatch.setenv("TASK_RELAY_HEALTH_ENABLED", "false")
    monkeypatch.delenv("TASK_RELAY_ROSTER_PATH", raising=False)
    monkeypatch.delenv("TASK_RELAY_INFERENCE_COMMAND", raising=False)
    monkeypatch.delenv("TASK_RELAY_CHAT_CALLBACK_URL", raising=False)
    return tmp_path / "relay.db"
