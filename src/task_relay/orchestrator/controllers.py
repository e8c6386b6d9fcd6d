"""Controllers for relay CLI commands."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import uvicorn

from task_relay.config import Settings
from task_relay.orchestrator.daemon import RelayDaemon
from task_relay.orchestrator.intake import drop_to_inbox, store_filename
from task_relay.orchestrator.models import HealthStatus, Task, TaskStatus
from task_relay.orchestrator.repository import TaskNotFoundError
from task_relay.orchestrator.roster import WorkerSpec, load_roster, save_roster
from task_relay.orchestrator.services import RelayServices, build_services
from task_relay.web.app import create_app

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TasksListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskShowCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for submitting a task record."""

    db_path: Path | None
    task_type: str
    description: str
    assigned_to: str | None
    priority: str
    user_id: str | None
    workflow: bool


@dataclass(slots=True)
class TaskRequeueCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class WorkersListCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerAddCommand:
    """CLI input for roster append."""

    db_path: Path | None
    name: str
    display_name: str
    role: str
    description: str
    task_type: str | None
    keywords: tuple[str, ...]
    health_url: str | None
    escalation: bool
    timeout_seconds: int


@dataclass(slots=True)
class WorkerToggleCommand:
    db_path: Path | None
    name: str
    enabled: bool


@dataclass(slots=True)
class RouteCommand:
    """CLI input for a routing dry run; nothing is written."""

    db_path: Path | None
    task_type: str
    description: str
    assigned_to: str | None
    use_inference: bool


@dataclass(slots=True)
class RunCommand:
    """CLI input for the relay daemon."""

    db_path: Path | None
    once: bool
    serve: bool
    max_seconds: float | None = None


@dataclass(slots=True)
class ServeCommand:
    db_path: Path | None
    host: str | None
    port: int | None


@dataclass(slots=True)
class HealthCommand:
    db_path: Path | None


@dataclass(slots=True)
class ReconcileCommand:
    db_path: Path | None


class RelayCliController:
    """Coordinates task, roster, daemon and inspection CLI operations."""

    def list_tasks(self, command: TasksListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _services(settings) as services:
            tasks = services.repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            step = f" step={task.workflow_step}" if task.workflow_step is not None else ""
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"agent={task.dispatched_agent or '-'} priority={task.priority}{step} "
                f"updated_at={task.updated_at.isoformat()}",
            )
        return lines

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            details = services.repository.get_task_details(task_id=command.task_id)
            steps = (
                services.repository.list_workflow_steps(parent_task_id=command.task_id)
                if details is not None and details.task.is_workflow
                else []
            )
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Source: {task.source or '-'}",
            f"Agent: {task.dispatched_agent or '-'}",
            f"Parent: {task.parent_task_id or '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Description: {task.description}",
            f"Updates: {len(details.updates)}",
        ]
        for update in details.updates:
            deliverable = update.deliverable["type"] if update.deliverable else "-"
            lines.append(
                f"  update {update.recorded_at.isoformat()} agent={update.agent} "
                f"deliverable={deliverable} result_file={update.result_file or '-'}",
            )
        if steps:
            lines.append(f"Workflow steps: {len(steps)}")
            for step in steps:
                depends = step.depends_on if step.depends_on is not None else "-"
                lines.append(
                    f"  [{step.workflow_step}] {step.task_id} agent={step.assigned_to or '-'} "
                    f"status={step.status.value} depends_on={depends}",
                )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        record: dict[str, object] = {
            "type": command.task_type,
            "description": command.description,
            "priority": command.priority,
            "workflow": command.workflow,
        }
        if command.assigned_to:
            record["assigned_to"] = command.assigned_to
        if command.user_id:
            record["user_id"] = command.user_id
        with _services(settings) as services:
            view, path = services.records.accept(record, source="cli")
        return [
            f"Task created: task_id={view.task_id} type={view.task_type} "
            f"status={view.status.value}",
            f"Inbox file: {path if path is not None else '-'}",
        ]

    def requeue_task(self, command: TaskRequeueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            previous = services.lifecycle.requeue(command.task_id, actor="cli")
            view = services.repository.get_task(task_id=command.task_id)
            if view is None:
                raise TaskNotFoundError(f"Task not found: {command.task_id}")
            path = None
            if view.parent_task_id is None:
                path = drop_to_inbox(
                    settings.workspace.inbox_dir,
                    view.to_task(),
                    filename=store_filename(view.task_id),
                )
        lines = [
            f"Task re-queued: {command.task_id} ({previous.value} -> {TaskStatus.INBOX.value})",
            f"Inbox file: {path if path is not None else '-'}",
        ]
        if path is None:
            lines.append(f"Workflow step of {view.parent_task_id}; released on the next relay poll")
        return lines

    def list_workers(self, command: WorkersListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        roster = load_roster(settings.workspace.roster_file)
        lines = [f"Workers: {len(roster.workers)} (roster: {settings.workspace.roster_file})"]
        for worker in roster.workers:
            flags = []
            if worker.escalation:
                flags.append("escalation")
            if not worker.enabled:
                flags.append("disabled")
            lines.append(
                f"  {worker.name} type={worker.routable_type} "
                f"keywords={','.join(worker.keywords) or '-'} "
                f"health={worker.health_url or '-'}"
                + (f" [{' '.join(flags)}]" if flags else ""),
            )
        return lines

    def add_worker(self, command: WorkerAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        roster_file = settings.workspace.roster_file
        roster = load_roster(roster_file).add(
            WorkerSpec(
                name=command.name.strip().lower(),
                display_name=command.display_name or command.name,
                role=command.role,
                description=command.description,
                task_type=command.task_type,
                keywords=tuple(keyword.strip().lower() for keyword in command.keywords),
                escalation=command.escalation,
                health_url=command.health_url,
                timeout_seconds=command.timeout_seconds,
            ),
        )
        save_roster(roster_file, roster)
        return [
            f"Worker added: {command.name} ({len(roster.workers)} workers)",
            f"Roster: {roster_file}",
        ]

    def toggle_worker(self, command: WorkerToggleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        roster_file = settings.workspace.roster_file
        roster = load_roster(roster_file).with_enabled(command.name, enabled=command.enabled)
        save_roster(roster_file, roster)
        state = "enabled" if command.enabled else "disabled"
        return [f"Worker {state}: {command.name}"]

    def route(self, command: RouteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        task = Task(
            type=command.task_type,
            description=command.description,
            assigned_to=command.assigned_to,
        )
        with _services(settings) as services:
            agent = services.router.route(task)
            strategy = "keyword" if agent is not None else None
            if agent is None and command.use_inference:
                agent = services.classifier.classify(task)
                strategy = "classifier" if agent is not None else None
        if agent is None:
            return ["Route: unroutable"]
        return [f"Route: {agent} (strategy={strategy})"]

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            daemon = RelayDaemon(services)
            server = _start_embedded_server(services) if command.serve else None
            try:
                summary = (
                    daemon.run_once()
                    if command.once
                    else daemon.run_loop(max_seconds=command.max_seconds)
                )
            finally:
                if server is not None:
                    server.should_exit = True

        return [
            "Relay summary: "
            f"inbox_files={summary.inbox_files} result_files={summary.result_files} "
            f"store_drops={summary.store_drops} health_polls={summary.health_polls} "
            f"steps_resumed={summary.steps_resumed} failures={summary.failures}",
        ]

    def serve(self, command: ServeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        host = command.host or settings.webhook.host
        port = command.port or settings.webhook.port
        with _services(settings) as services:
            services.ensure_directories()
            uvicorn.run(create_app(services), host=host, port=port, log_config=None)
        return [f"Webhook server stopped: {host}:{port}"]

    def health(self, command: HealthCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            snapshot = services.health.poll()

        lines = [
            f"Health snapshot: {snapshot.generated_at.isoformat()} "
            f"({settings.workspace.status_file})",
        ]
        for name, health in sorted(snapshot.agents.items()):
            detail = f" error={health.error}" if health.error else ""
            if health.current_task:
                detail += f" current_task={health.current_task}"
            lines.append(f"  {name}: {health.status.value}{detail}")
        ok = sum(1 for item in snapshot.agents.values() if item.status == HealthStatus.OK)
        lines.append(f"OK: {ok}/{len(snapshot.agents)}")
        return lines

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            services.ensure_directories()
            outcomes = services.reconciler.scan()

        lines = [f"Result files: {len(outcomes)}"]
        for outcome in outcomes:
            lines.append(
                f"  {outcome.filename}: {outcome.status.value} task_id={outcome.task_id or '-'}",
            )
        return lines


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _start_embedded_server(services: RelayServices) -> uvicorn.Server:
    webhook = services.settings.webhook
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(services),
            host=webhook.host,
            port=webhook.port,
            log_config=None,
        ),
    )
    thread = threading.Thread(target=server.run, name="task-relay-webhook", daemon=True)
    thread.start()
    logger.info("Webhook server listening on %s:%d", webhook.host, webhook.port)
    return server


@contextmanager
def _services(settings: Settings) -> Iterator[RelayServices]:
    settings.validate()
    services = build_services(settings)
    try:
        services.repository.init_schema()
        yield services
    finally:
        services.close()
