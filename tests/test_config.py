from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_relay.config import (
    ConfigError,
    InferenceSettings,
    RoutingSettings,
    Settings,
    WebhookSettings,
    WorkspaceSettings,
)

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TASK_RELAY_DB_PATH",
        "TASK_RELAY_WORKSPACE_DIR",
        "TASK_RELAY_ROSTER_PATH",
        "TASK_RELAY_WATCH_ENABLED",
        "TASK_RELAY_CHAT_CALLBACK_URL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".task_relay.db")
    assert settings.workspace.inbox_dir == Path("workspace/inbox")
    assert settings.workspace.roster_file == Path("workspace/roster.json")
    assert settings.daemon.watch_enabled is True
    assert settings.webhook.port == 3000
    assert settings.routing.escalation_worker == "oracle"
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_RELAY_WORKSPACE_DIR", str(tmp_path / "ws"))
    monkeypatch.setenv("TASK_RELAY_ROSTER_PATH", str(tmp_path / "fleet.json"))
    monkeypatch.setenv("TASK_RELAY_ESCALATION_WORKER", " Oracle ")
    monkeypatch.setenv("TASK_RELAY_WATCH_ENABLED", "off")
    monkeypatch.setenv("TASK_RELAY_POLL_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("TASK_RELAY_CHAT_CALLBACK_URL", " https://chat.example/cb ")

    settings = Settings.from_env(db_path=tmp_path / "relay.db")

    assert settings.db_path == tmp_path / "relay.db"
    assert settings.workspace.outbox_processed_dir == tmp_path / "ws" / "outbox" / "processed"
    assert settings.workspace.roster_file == tmp_path / "fleet.json"
    assert settings.routing.escalation_worker == "oracle"
    assert settings.daemon.watch_enabled is False
    assert settings.daemon.poll_interval_seconds == 2.5  # noqa: PLR2004
    assert settings.webhook.chat_callback_url == "https://chat.example/cb"


def test_invalid_boolean_env_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASK_RELAY_HEALTH_ENABLED", "maybe")

    with pytest.raises(ConfigError, match="TASK_RELAY_HEALTH_ENABLED"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(routing=RoutingSettings(escalation_worker="")), "ESCALATION_WORKER"),
        (
            Settings(inference=InferenceSettings(command_template="llm --ask")),
            "{prompt} placeholder",
        ),
        (Settings(inference=InferenceSettings(timeout_seconds=0)), "INFERENCE_TIMEOUT"),
        (Settings(webhook=WebhookSettings(port=70000)), "WEBHOOK_PORT"),
        (
            Settings(webhook=WebhookSettings(chat_callback_url="ftp://chat/cb")),
            "CHAT_CALLBACK_URL",
        ),
    ],
)
def test_validate_rejects_bad_values(settings: Settings, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        settings.validate()


def test_inference_template_with_placeholder_is_valid() -> None:
    Settings(inference=InferenceSettings(command_template="llm -p {prompt}")).validate()


def test_workspace_paths_derive_from_root(tmp_path: Path) -> None:
    workspace = WorkspaceSettings(workspace_dir=tmp_path)

    assert workspace.processed_dir == tmp_path / "processed"
    assert workspace.status_file == tmp_path / "agent-status.json"
