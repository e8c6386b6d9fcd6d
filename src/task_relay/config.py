"""Runtime configuration for the task relay daemon, webhook receiver and CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


class ConfigError(ValueError):
    """Raised for settings the relay cannot start with."""


@dataclass(slots=True)
class WorkspaceSettings:
    """Shared filesystem layout used as the coordination medium."""

    workspace_dir: Path = Path("workspace")
    agents_dir: Path = Path("agents")
    roster_path: Path | None = None
    hooks_dir: Path | None = None

    @property
    def inbox_dir(self) -> Path:
        return self.workspace_dir / "inbox"

    @property
    def processed_dir(self) -> Path:
        return self.workspace_dir / "processed"

    @property
    def outbox_dir(self) -> Path:
        return self.workspace_dir / "outbox"

    @property
    def outbox_processed_dir(self) -> Path:
        return self.outbox_dir / "processed"

    @property
    def status_file(self) -> Path:
        return self.workspace_dir / "agent-status.json"

    @property
    def roster_file(self) -> Path:
        return self.roster_path or self.workspace_dir / "roster.json"


@dataclass(slots=True)
class RoutingSettings:
    """Router and decomposer thresholds."""

    escalation_worker: str = "oracle"
    min_decomposition_chars: int = 120


@dataclass(slots=True)
class InferenceSettings:
    """External inference command used for classification and decomposition.

    The command template must contain ``{prompt}``; an empty template means
    the LLM fallbacks are not configured and are skipped.
    """

    command_template: str = ""
    timeout_seconds: int = 30


@dataclass(slots=True)
class HealthSettings:
    """Worker health polling policy."""

    interval_seconds: float = 30.0
    request_timeout_seconds: float = 5.0
    stale_after_seconds: int = 900


@dataclass(slots=True)
class DaemonSettings:
    """Watch/poll loop policy."""

    poll_interval_seconds: float = 30.0
    write_stability_seconds: float = 0.5
    watch_enabled: bool = True
    store_poll_enabled: bool = True
    health_enabled: bool = True


@dataclass(slots=True)
class WebhookSettings:
    """Inbound HTTP receiver and onward chat delivery."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000
    chat_callback_url: str = ""
    chat_callback_timeout_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_relay.db")
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    inference: InferenceSettings = field(default_factory=InferenceSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_RELAY_DB_PATH", ".task_relay.db")),
            workspace=WorkspaceSettings(
                workspace_dir=Path(os.getenv("TASK_RELAY_WORKSPACE_DIR", "workspace")),
                agents_dir=Path(os.getenv("TASK_RELAY_AGENTS_DIR", "agents")),
                roster_path=_env_path("TASK_RELAY_ROSTER_PATH"),
                hooks_dir=_env_path("TASK_RELAY_HOOKS_DIR"),
            ),
            routing=RoutingSettings(
                escalation_worker=os.getenv("TASK_RELAY_ESCALATION_WORKER", "oracle")
                .strip()
                .lower(),
                min_decomposition_chars=int(
                    os.getenv("TASK_RELAY_MIN_DECOMPOSITION_CHARS", "120"),
                ),
            ),
            inference=InferenceSettings(
                command_template=os.getenv("TASK_RELAY_INFERENCE_COMMAND", ""),
                timeout_seconds=int(os.getenv("TASK_RELAY_INFERENCE_TIMEOUT_SECONDS", "30")),
            ),
            health=HealthSettings(
                interval_seconds=float(os.getenv("TASK_RELAY_HEALTH_INTERVAL_SECONDS", "30")),
                request_timeout_seconds=float(
                    os.getenv("TASK_RELAY_HEALTH_TIMEOUT_SECONDS", "5"),
                ),
                stale_after_seconds=int(os.getenv("TASK_RELAY_HEALTH_STALE_AFTER_SECONDS", "900")),
            ),
            daemon=DaemonSettings(
                poll_interval_seconds=float(
                    os.getenv("TASK_RELAY_POLL_INTERVAL_SECONDS", "30"),
                ),
                write_stability_seconds=float(
                    os.getenv("TASK_RELAY_WRITE_STABILITY_SECONDS", "0.5"),
                ),
                watch_enabled=_env_bool("TASK_RELAY_WATCH_ENABLED", default=True),
                store_poll_enabled=_env_bool("TASK_RELAY_STORE_POLL_ENABLED", default=True),
                health_enabled=_env_bool("TASK_RELAY_HEALTH_ENABLED", default=True),
            ),
            webhook=WebhookSettings(
                host=os.getenv("TASK_RELAY_WEBHOOK_HOST", "0.0.0.0"),  # noqa: S104
                port=int(os.getenv("TASK_RELAY_WEBHOOK_PORT", "3000")),
                chat_callback_url=os.getenv("TASK_RELAY_CHAT_CALLBACK_URL", "").strip(),
                chat_callback_timeout_seconds=float(
                    os.getenv("TASK_RELAY_CHAT_CALLBACK_TIMEOUT_SECONDS", "5"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the daemon cannot run with."""

        if not self.routing.escalation_worker:
            raise ConfigError("TASK_RELAY_ESCALATION_WORKER must not be empty.")
        if self.routing.min_decomposition_chars < 0:
            raise ConfigError("TASK_RELAY_MIN_DECOMPOSITION_CHARS must be >= 0.")
        if self.inference.timeout_seconds <= 0:
            raise ConfigError("TASK_RELAY_INFERENCE_TIMEOUT_SECONDS must be > 0.")
        template = self.inference.command_template.strip()
        if template and "{prompt}" not in template:
            raise ConfigError("TASK_RELAY_INFERENCE_COMMAND must include a {prompt} placeholder.")
        if self.health.interval_seconds <= 0:
            raise ConfigError("TASK_RELAY_HEALTH_INTERVAL_SECONDS must be > 0.")
        if self.health.request_timeout_seconds <= 0:
            raise ConfigError("TASK_RELAY_HEALTH_TIMEOUT_SECONDS must be > 0.")
        if self.health.stale_after_seconds <= 0:
            raise ConfigError("TASK_RELAY_HEALTH_STALE_AFTER_SECONDS must be > 0.")
        if self.daemon.poll_interval_seconds <= 0:
            raise ConfigError("TASK_RELAY_POLL_INTERVAL_SECONDS must be > 0.")
        if self.daemon.write_stability_seconds < 0:
            raise ConfigError("TASK_RELAY_WRITE_STABILITY_SECONDS must be >= 0.")
        if not 0 < self.webhook.port < 65536:  # noqa: PLR2004
            raise ConfigError(f"Invalid TASK_RELAY_WEBHOOK_PORT: {self.webhook.port}")
        if self.webhook.chat_callback_url:
            _validate_http_url(self.webhook.chat_callback_url, name="TASK_RELAY_CHAT_CALLBACK_URL")


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")
