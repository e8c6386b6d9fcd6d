"""CLI entrypoint for task-relay."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from task_relay import __version__
from task_relay.config import ConfigError
from task_relay.orchestrator.controllers import (
    HealthCommand,
    ReconcileCommand,
    RelayCliController,
    RouteCommand,
    RunCommand,
    ServeCommand,
    TaskCreateCommand,
    TaskRequeueCommand,
    TaskShowCommand,
    TasksListCommand,
    WorkerAddCommand,
    WorkersListCommand,
    WorkerToggleCommand,
)
from task_relay.orchestrator.models import InvalidTransitionError, TaskStatus
from task_relay.orchestrator.repository import TaskNotFoundError
from task_relay.orchestrator.roster import RosterError

click.rich_click.USE_MARKDOWN = True
RELAY_CONTROLLER = RelayCliController()
LOG_LEVELS = ("debug", "info", "warning", "error")
CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="task-relay")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="info",
    show_default=True,
    help="Root logging level.",
)
def task_relay(log_level: str) -> None:
    """Task relay: route, dispatch and reconcile work for a fleet of file-driven workers."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_relay.group()
def tasks() -> None:
    """Task store commands."""


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Only show tasks in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _run(
            RELAY_CONTROLLER.list_tasks,
            TasksListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@tasks.command("show")
@db_path_option
@click.argument("task_id")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its updates, workflow steps and events."""

    _emit_lines(
        _run(RELAY_CONTROLLER.show_task, TaskShowCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("create")
@db_path_option
@click.option("--type", "task_type", default="general", show_default=True, help="Task type.")
@click.option("--description", required=True, help="What the worker should do.")
@click.option("--assigned-to", default=None, help="Worker name to pin the task to.")
@click.option("--priority", default="normal", show_default=True, help="Advisory priority.")
@click.option("--user-id", default=None, help="Requesting user id.")
@click.option(
    "--workflow/--no-workflow",
    default=False,
    show_default=True,
    help="Ask for decomposition into a multi-step workflow.",
)
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    description: str,
    assigned_to: str | None,
    priority: str,
    user_id: str | None,
    workflow: bool,
) -> None:
    """Store a new task as `inbox` and drop it into the inbox directory."""

    _emit_lines(
        _run(
            RELAY_CONTROLLER.create_task,
            TaskCreateCommand(
                db_path=db_path,
                task_type=task_type,
                description=description,
                assigned_to=assigned_to,
                priority=priority,
                user_id=user_id,
                workflow=workflow,
            ),
        ),
    )


@tasks.command("requeue")
@db_path_option
@click.argument("task_id")
def tasks_requeue(db_path: Path | None, task_id: str) -> None:
    """Reset a task to `inbox` and hand it to the relay again."""

    _emit_lines(
        _run(
            RELAY_CONTROLLER.requeue_task,
            TaskRequeueCommand(db_path=db_path, task_id=task_id),
        ),
    )


@task_relay.group()
def workers() -> None:
    """Worker roster commands."""


@workers.command("list")
@db_path_option
def workers_list(db_path: Path | None) -> None:
    """Show the roster."""

    _emit_lines(_run(RELAY_CONTROLLER.list_workers, WorkersListCommand(db_path=db_path)))


@workers.command("add")
@db_path_option
@click.argument("name")
@click.option("--display-name", default="", help="Human readable name.")
@click.option("--role", default="", help="Short role label.")
@click.option("--description", default="", help="One-line summary used in inference prompts.")
@click.option("--type", "task_type", default=None, help="Routable task type.")
@click.option(
    "--keyword",
    "keywords",
    multiple=True,
    help="Routing keyword. Can be repeated.",
)
@click.option("--health-url", default=None, help="Health endpoint polled by the relay.")
@click.option(
    "--escalation/--no-escalation",
    default=False,
    show_default=True,
    help="Register as an escalation worker.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=300,
    show_default=True,
    help="Per-task timeout advertised to the worker.",
)
def workers_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    display_name: str,
    role: str,
    description: str,
    task_type: str | None,
    keywords: tuple[str, ...],
    health_url: str | None,
    escalation: bool,
    timeout_seconds: int,
) -> None:
    """Append a worker to the roster."""

    _emit_lines(
        _run(
            RELAY_CONTROLLER.add_worker,
            WorkerAddCommand(
                db_path=db_path,
                name=name,
                display_name=display_name,
                role=role,
                description=description,
                task_type=task_type,
                keywords=keywords,
                health_url=health_url,
                escalation=escalation,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )


@workers.command("enable")
@db_path_option
@click.argument("name")
def workers_enable(db_path: Path | None, name: str) -> None:
    """Enable a worker for routing and health polling."""

    _emit_lines(
        _run(
            RELAY_CONTROLLER.toggle_worker,
            WorkerToggleCommand(db_path=db_path, name=name, enabled=True),
        ),
    )


@workers.command("disable")
@db_path_option
@click.argument("name")
def workers_disable(db_path: Path | None, name: str) -> None:
    """Disable a worker; it is reported offline and no longer routed to."""

    _emit_lines(
        _run(
            RELAY_CONTROLLER.toggle_worker,
            WorkerToggleCommand(db_path=db_path, name=name, enabled=False),
        ),
    )


@task_relay.command("route")
@db_path_option
@click.option("--type", "task_type", default="general", show_default=True, help="Task type.")
@click.option("--description", default="", help="Task description.")
@click.option("--assigned-to", default=None, help="Worker name the task is pinned to.")
@click.option(
    "--inference/--no-inference",
    "use_inference",
    default=False,
    show_default=True,
    help="Fall back to the inference classifier when keywords do not match.",
)
def route(
    db_path: Path | None,
    task_type: str,
    description: str,
    assigned_to: str | None,
    use_inference: bool,
) -> None:
    """Show which worker a task would be routed to, without dispatching it."""

    _emit_lines(
        _run(
            RELAY_CONTROLLER.route,
            RouteCommand(
                db_path=db_path,
                task_type=task_type,
                description=description,
                assigned_to=assigned_to,
                use_inference=use_inference,
            ),
        ),
    )


@task_relay.command("run")
@db_path_option
@click.option("--once", is_flag=True, help="Run a single poll pass and exit.")
@click.option(
    "--serve/--no-serve",
    default=False,
    show_default=True,
    help="Also run the webhook server in the same process.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop the loop after this many seconds.",
)
def run(db_path: Path | None, once: bool, serve: bool, max_seconds: float | None) -> None:
    """Run the relay: watch inbox and outbox, poll the store, poll worker health."""

    _emit_lines(
        _run(
            RELAY_CONTROLLER.run,
            RunCommand(db_path=db_path, once=once, serve=serve, max_seconds=max_seconds),
        ),
    )


@task_relay.command("serve")
@db_path_option
@click.option("--host", default=None, help="Bind host (default from TASK_RELAY_WEBHOOK_HOST).")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help="Bind port (default from TASK_RELAY_WEBHOOK_PORT).",
)
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Run only the webhook receiver."""

    _emit_lines(
        _run(RELAY_CONTROLLER.serve, ServeCommand(db_path=db_path, host=host, port=port)),
    )


@task_relay.command("health")
@db_path_option
def health(db_path: Path | None) -> None:
    """Poll every worker once and write the status snapshot."""

    _emit_lines(_run(RELAY_CONTROLLER.health, HealthCommand(db_path=db_path)))


@task_relay.command("reconcile")
@db_path_option
def reconcile(db_path: Path | None) -> None:
    """Process every result file currently in the outbox."""

    _emit_lines(_run(RELAY_CONTROLLER.reconcile, ReconcileCommand(db_path=db_path)))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (ConfigError, RosterError, InvalidTransitionError, TaskNotFoundError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_relay()
