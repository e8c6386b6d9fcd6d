"""Task intake: inbox file processing, record envelopes, store polling and named hooks."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from task_relay.orchestrator.classifier import Classifier
from task_relay.orchestrator.contracts import (
    UNROUTABLE_PREFIX,
    is_candidate_file,
    load_json,
    move_to_dir,
    unroutable_record,
    write_json_atomic,
)
from task_relay.orchestrator.decomposer import Decomposer, is_workflow_request
from task_relay.orchestrator.dispatcher import Dispatcher, DispatchResult, WorkflowDispatch
from task_relay.orchestrator.lifecycle import StatusSynchronizer
from task_relay.orchestrator.models import Task, TaskCreate, TaskStatus, TaskView, WorkflowSubtask
from task_relay.orchestrator.repository import TaskNotFoundError, TaskRepository
from task_relay.orchestrator.routing import Router, RoutingTable
from task_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

UNROUTABLE_REASON = "Could not determine target agent"
STORE_FILE_PREFIX = "store-"
INBOX_FILE_SOURCE = "inbox-file"
HOOK_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class IntakeStatus(str, Enum):
    DISPATCHED = "dispatched"
    WORKFLOW = "workflow"
    UNROUTABLE = "unroutable"
    INVALID = "invalid"
    MISSING = "missing"
    IGNORED = "ignored"


@dataclass(slots=True)
class IntakeOutcome:
    filename: str
    status: IntakeStatus
    agent: str | None = None
    task_id: str | None = None
    dispatch: DispatchResult | None = None
    workflow: WorkflowDispatch | None = None
    error_file: Path | None = None


@dataclass(slots=True)
class RoutingDecision:
    """Which strategy resolved the task, if any."""

    agent: str | None = None
    strategy: str | None = None
    subtasks: list[WorkflowSubtask] = field(default_factory=list)


class InboxProcessor:
    """Route one inbox file and hand it off, or record it as unroutable.

    Strategy order: explicit workflow request, keyword router, LLM
    classifier, decomposition fallback for long descriptions.  The inbox
    file is moved to the processed area once handled, which is what makes
    a second discovery of the same path a no-op.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        router: Router,
        classifier: Classifier,
        decomposer: Decomposer,
        dispatcher: Dispatcher,
        lifecycle: StatusSynchronizer,
        inbox_dir: Path,
        processed_dir: Path,
        outbox_dir: Path,
    ) -> None:
        self.router = router
        self.classifier = classifier
        self.decomposer = decomposer
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle
        self.inbox_dir = inbox_dir
        self.processed_dir = processed_dir
        self.outbox_dir = outbox_dir

    def scan(self) -> list[IntakeOutcome]:
        if not self.inbox_dir.is_dir():
            return []
        return [
            self.process_file(path)
            for path in sorted(self.inbox_dir.iterdir())
            if path.is_file() and is_candidate_file(path)
        ]

    def process_file(self, path: Path) -> IntakeOutcome:
        filename = path.name
        if not is_candidate_file(path):
            return IntakeOutcome(filename=filename, status=IntakeStatus.IGNORED)
        if not path.exists():
            logger.debug("Inbox file vanished before handling: %s", filename)
            return IntakeOutcome(filename=filename, status=IntakeStatus.MISSING)

        try:
            raw = load_json(path)
        except FileNotFoundError:
            return IntakeOutcome(filename=filename, status=IntakeStatus.MISSING)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as error:
            logger.error("Malformed task file %s: %s", filename, error)
            self._archive(path)
            return IntakeOutcome(filename=filename, status=IntakeStatus.INVALID)

        logger.info("New task received: %s", filename)
        task = Task.from_mapping(raw)
        task.source = task.source or INBOX_FILE_SOURCE
        decision = self.resolve(task, source_file=filename)

        if decision.subtasks:
            workflow = self.dispatcher.dispatch_workflow(
                task,
                decision.subtasks,
                source_file=filename,
            )
            outcome = IntakeOutcome(
                filename=filename,
                status=IntakeStatus.WORKFLOW,
                agent=decision.strategy,
                task_id=workflow.parent_task_id,
                workflow=workflow,
            )
        elif decision.agent is not None:
            dispatch = self.dispatcher.dispatch(decision.agent, task, source_file=filename)
            outcome = IntakeOutcome(
                filename=filename,
                status=IntakeStatus.DISPATCHED,
                agent=decision.agent,
                task_id=task.id,
                dispatch=dispatch,
            )
        else:
            outcome = self._record_unroutable(raw, task=task, filename=filename)

        self._archive(path)
        return outcome

    def resolve(self, task: Task, *, source_file: str | None) -> RoutingDecision:
        decomposition_tried = False
        if is_workflow_request(task):
            decomposition_tried = True
            subtasks = self.decomposer.decompose(task, source_file=source_file)
            if subtasks is not None and len(subtasks) > 1:
                return RoutingDecision(strategy="workflow", subtasks=subtasks)
            logger.info("Workflow request %s produced no workflow; routing directly", source_file)

        agent = self.router.route(task)
        if agent is not None:
            return RoutingDecision(agent=agent, strategy="keyword")

        logger.info("Keyword routing failed for %s, using classifier", source_file)
        agent = self.classifier.classify(task)
        if agent is not None:
            return RoutingDecision(agent=agent, strategy="classifier")

        if not decomposition_tried and self.decomposer.qualifies_as_fallback(task):
            subtasks = self.decomposer.decompose(task, source_file=source_file)
            if subtasks is not None and len(subtasks) > 1:
                return RoutingDecision(strategy="decomposition", subtasks=subtasks)
        return RoutingDecision()

    def _record_unroutable(
        self,
        raw: dict[str, Any],
        *,
        task: Task,
        filename: str,
    ) -> IntakeOutcome:
        logger.warning("UNROUTABLE: %s - writing error record to outbox", filename)
        error_file = self.outbox_dir / f"{UNROUTABLE_PREFIX}{filename}"
        write_json_atomic(error_file, unroutable_record(raw, reason=UNROUTABLE_REASON))
        if task.id is not None:
            try:
                self.lifecycle.mark_error(task.id, reason=UNROUTABLE_REASON)
            except TaskNotFoundError:
                logger.debug("Unroutable task %s has no store record", task.id)
        return IntakeOutcome(
            filename=filename,
            status=IntakeStatus.UNROUTABLE,
            task_id=task.id,
            error_file=error_file,
        )

    def _archive(self, path: Path) -> None:
        try:
            move_to_dir(path, self.processed_dir)
        except FileNotFoundError:
            logger.debug("Inbox file already moved: %s", path.name)


def task_from_record(
    record: dict[str, Any],
    *,
    source: str,
    routing_table: RoutingTable,
) -> Task:
    """Normalise a store record into a routable task.

    An ``assigned_to`` that names a worker is mapped onto that worker's
    routable type so the keyword router lands on it.
    """

    assigned_to = str(record.get("assigned_to") or "").strip().lower() or None
    mapped_type = routing_table.type_for_worker(assigned_to) if assigned_to else None
    return Task(
        id=str(record["id"]) if record.get("id") else None,
        type=mapped_type or str(record.get("type") or "general"),
        description=str(record.get("description") or record.get("title") or ""),
        priority=str(record.get("priority") or "normal"),
        assigned_to=assigned_to,
        user_id=str(record["user_id"]) if record.get("user_id") else None,
        conversation_id=(
            str(record["conversation_id"]) if record.get("conversation_id") else None
        ),
        context=record.get("context"),
        payload=record.get("payload"),
        source=source,
        workflow=record.get("workflow") is True,
        extra={"_received_at": utc_now().isoformat()},
    )


def store_filename(task_id: str) -> str:
    return f"{STORE_FILE_PREFIX}{task_id}.json"


def drop_to_inbox(inbox_dir: Path, task: Task, *, filename: str) -> Path:
    path = inbox_dir / filename
    write_json_atomic(path, task.to_mapping())
    logger.info("Task dropped to inbox: %s", filename)
    return path


class RecordIntake:
    """Accepts ``{record: {...}}`` envelopes: upsert as ``inbox``, then drop to the inbox."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        routing_table: RoutingTable,
        inbox_dir: Path,
    ) -> None:
        self.repository = repository
        self.routing_table = routing_table
        self.inbox_dir = inbox_dir

    def accept(
        self,
        record: dict[str, Any],
        *,
        source: str = "webhook",
    ) -> tuple[TaskView, Path | None]:
        task = task_from_record(record, source=source, routing_table=self.routing_table)
        view, created = self.repository.get_or_create_task(
            TaskCreate(
                task_id=task.id,
                task_type=task.type,
                description=task.description,
                assigned_to=task.assigned_to,
                priority=task.priority,
                user_id=task.user_id,
                source=source,
                conversation_id=task.conversation_id,
                context=task.context,
                payload=task.payload,
                is_workflow=task.workflow,
            ),
        )
        if not created and view.status != TaskStatus.INBOX:
            logger.info(
                "Record %s already %s; not re-queued",
                view.task_id,
                view.status.value,
            )
            return view, None
        task.id = view.task_id
        path = drop_to_inbox(self.inbox_dir, task, filename=store_filename(view.task_id))
        return view, path


class StorePoller:
    """Surfaces store rows still in ``inbox`` as deterministic inbox files."""

    def __init__(self, *, repository: TaskRepository, inbox_dir: Path, limit: int = 100) -> None:
        self.repository = repository
        self.inbox_dir = inbox_dir
        self.limit = limit

    def poll(self) -> list[Path]:
        dropped: list[Path] = []
        for view in self.repository.list_inbox_tasks(limit=self.limit):
            filename = store_filename(view.task_id)
            if (self.inbox_dir / filename).exists():
                continue
            task = view.to_task()
            task.source = task.source or "store-poller"
            dropped.append(drop_to_inbox(self.inbox_dir, task, filename=filename))
        if dropped:
            logger.info("Store poll: %d inbox task(s) surfaced", len(dropped))
        return dropped


@dataclass(slots=True)
class HookHandler:
    name: str
    task_type: str | None = None
    description: str | None = None
    route_to: str | None = None


class HookIntake:
    """Turns arbitrary ``/hook/<name>`` payloads into inbox tasks."""

    def __init__(self, *, inbox_dir: Path, hooks_dir: Path | None) -> None:
        self.inbox_dir = inbox_dir
        self.hooks_dir = hooks_dir

    def handler(self, name: str) -> HookHandler | None:
        if self.hooks_dir is None:
            return None
        path = self.hooks_dir / f"{name}.json"
        try:
            raw = load_json(path)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as error:
            logger.warning("Invalid hook handler %s: %s", path.name, error)
            return None
        return HookHandler(
            name=name,
            task_type=_optional_text(raw.get("task_type")),
            description=_optional_text(raw.get("description")),
            route_to=_optional_text(raw.get("route_to")),
        )

    def accept(self, name: str, payload: Any) -> Path:
        if not HOOK_NAME_PATTERN.fullmatch(name):
            raise ValueError(f"Invalid hook name: {name!r}")
        handler = self.handler(name)
        received_at = utc_now()
        task_type = "webhook"
        description = f"Webhook trigger: {name}"
        if handler is not None:
            task_type = handler.route_to or handler.task_type or task_type
            description = handler.description or description
        task = Task(
            type=task_type,
            description=description,
            context={"webhook": name, "payload": payload, "received_at": received_at.isoformat()},
            source=f"hook:{name}",
        )
        stamp = received_at.strftime("%Y%m%dT%H%M%S%fZ")
        return drop_to_inbox(
            self.inbox_dir,
            task,
            filename=f"hook-{name}-{stamp}-{uuid4().hex[:8]}.json",
        )


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
