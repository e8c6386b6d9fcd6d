"""Wiring of the relay's components from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from task_relay.config import ConfigError, Settings
from task_relay.http.client import JsonHttpClient
from task_relay.orchestrator.backend import CliInferenceBackend, InferenceBackend
from task_relay.orchestrator.classifier import Classifier
from task_relay.orchestrator.decomposer import Decomposer
from task_relay.orchestrator.dispatcher import Dispatcher
from task_relay.orchestrator.health import HealthMonitor
from task_relay.orchestrator.intake import HookIntake, InboxProcessor, RecordIntake, StorePoller
from task_relay.orchestrator.lifecycle import StatusSynchronizer
from task_relay.orchestrator.mailbox import Mailbox
from task_relay.orchestrator.notifier import ChatNotifier
from task_relay.orchestrator.reconciler import OutboxReconciler
from task_relay.orchestrator.repository import TaskRepository
from task_relay.orchestrator.roster import Roster, load_roster
from task_relay.orchestrator.routing import Router, RoutingTable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelayServices:
    """Everything one relay process needs, built once and shared by daemon and web app."""

    settings: Settings
    repository: TaskRepository
    roster: Roster
    routing_table: RoutingTable
    router: Router
    classifier: Classifier
    decomposer: Decomposer
    mailbox: Mailbox
    lifecycle: StatusSynchronizer
    dispatcher: Dispatcher
    inbox: InboxProcessor
    reconciler: OutboxReconciler
    records: RecordIntake
    poller: StorePoller
    hooks: HookIntake
    health: HealthMonitor
    http_client: JsonHttpClient
    notifier_client: JsonHttpClient | None = None

    def ensure_directories(self) -> None:
        workspace = self.settings.workspace
        for directory in (
            workspace.inbox_dir,
            workspace.processed_dir,
            workspace.outbox_dir,
            workspace.outbox_processed_dir,
            workspace.agents_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def close(self) -> None:
        self.http_client.close()
        if self.notifier_client is not None:
            self.notifier_client.close()
        self.repository.close()


def worker_vocabulary(roster: Roster) -> dict[str, str]:
    """Enabled worker names with a one-line summary for inference prompts."""

    vocabulary: dict[str, str] = {}
    for worker in roster.workers:
        if not worker.enabled:
            continue
        summary = worker.description or worker.role or ", ".join(worker.keywords) or worker.name
        vocabulary[worker.name] = summary
    return vocabulary


def build_services(
    settings: Settings,
    *,
    backend: InferenceBackend | None = None,
    http_client: JsonHttpClient | None = None,
) -> RelayServices:
    """Build the component graph; ``backend`` overrides the configured inference command."""

    workspace = settings.workspace
    roster = load_roster(workspace.roster_file)
    try:
        routing_table = RoutingTable.from_roster(
            roster,
            escalation_worker=settings.routing.escalation_worker,
        )
    except ValueError as error:
        raise ConfigError(str(error)) from error
    repository = TaskRepository(settings.db_path)
    if backend is None and settings.inference.command_template.strip():
        backend = CliInferenceBackend(command_template=settings.inference.command_template)
    vocabulary = worker_vocabulary(roster)
    client = http_client or JsonHttpClient(
        timeout_seconds=settings.health.request_timeout_seconds,
    )

    lifecycle = StatusSynchronizer(repository)
    mailbox = Mailbox(workspace.agents_dir)
    dispatcher = Dispatcher(
        mailbox=mailbox,
        repository=repository,
        lifecycle=lifecycle,
        routing_table=routing_table,
        processed_dir=workspace.processed_dir,
    )
    router = Router(routing_table)
    classifier = Classifier(
        backend=backend,
        vocabulary=vocabulary,
        timeout_seconds=settings.inference.timeout_seconds,
    )
    decomposer = Decomposer(
        backend=backend,
        vocabulary=vocabulary,
        min_description_chars=settings.routing.min_decomposition_chars,
        timeout_seconds=settings.inference.timeout_seconds,
    )
    notifier_client = (
        JsonHttpClient(timeout_seconds=settings.webhook.chat_callback_timeout_seconds)
        if settings.webhook.chat_callback_url
        else None
    )
    notifier = (
        ChatNotifier(callback_url=settings.webhook.chat_callback_url, client=notifier_client)
        if notifier_client is not None
        else None
    )
    logger.debug(
        "Relay wired: workers=%s inference=%s chat_callback=%s",
        ",".join(roster.names),
        "on" if backend is not None else "off",
        "on" if notifier is not None else "off",
    )
    return RelayServices(
        settings=settings,
        repository=repository,
        roster=roster,
        routing_table=routing_table,
        router=router,
        classifier=classifier,
        decomposer=decomposer,
        mailbox=mailbox,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        inbox=InboxProcessor(
            router=router,
            classifier=classifier,
            decomposer=decomposer,
            dispatcher=dispatcher,
            lifecycle=lifecycle,
            inbox_dir=workspace.inbox_dir,
            processed_dir=workspace.processed_dir,
            outbox_dir=workspace.outbox_dir,
        ),
        reconciler=OutboxReconciler(
            repository=repository,
            lifecycle=lifecycle,
            outbox_dir=workspace.outbox_dir,
            archive_dir=workspace.outbox_processed_dir,
            processed_dir=workspace.processed_dir,
            inbox_dir=workspace.inbox_dir,
            dispatcher=dispatcher,
            notifier=notifier,
            deliverable_base_dir=workspace.workspace_dir,
        ),
        records=RecordIntake(
            repository=repository,
            routing_table=routing_table,
            inbox_dir=workspace.inbox_dir,
        ),
        poller=StorePoller(repository=repository, inbox_dir=workspace.inbox_dir),
        hooks=HookIntake(inbox_dir=workspace.inbox_dir, hooks_dir=workspace.hooks_dir),
        health=HealthMonitor(
            roster=roster,
            client=client,
            status_file=workspace.status_file,
            repository=repository,
            stale_after_seconds=settings.health.stale_after_seconds,
        ),
        http_client=client,
        notifier_client=notifier_client,
    )
