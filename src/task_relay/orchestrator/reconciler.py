"""Close the loop between worker result files and task records."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from task_relay.orchestrator.contracts import (
    UNROUTABLE_PREFIX,
    is_candidate_file,
    load_json,
    move_to_dir,
    read_result_record,
)
from task_relay.orchestrator.deliverables import detect_deliverable
from task_relay.orchestrator.dispatcher import Dispatcher
from task_relay.orchestrator.lifecycle import StatusSynchronizer
from task_relay.orchestrator.models import Deliverable, ResultRecord, TaskUpdateWrite
from task_relay.orchestrator.notifier import ChatNotifier
from task_relay.orchestrator.repository import TaskRepository

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    UNMATCHED = "unmatched"
    INVALID = "invalid"
    IGNORED = "ignored"
    MISSING = "missing"


@dataclass(slots=True)
class Correlation:
    task_id: str | None
    conversation_id: str | None = None
    user_id: str | None = None
    via: str | None = None


@dataclass(slots=True)
class ReconcileOutcome:
    filename: str
    status: ReconcileStatus
    task_id: str | None = None
    archived_to: Path | None = None
    deliverable: Deliverable | None = None


class OutboxReconciler:
    """Correlates each result file to its task, updates it, and archives the file once.

    The archive move happens whatever the outcome, so a result file is never
    seen twice by either the watcher or the backup poll.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        lifecycle: StatusSynchronizer,
        outbox_dir: Path,
        archive_dir: Path,
        processed_dir: Path,
        inbox_dir: Path | None = None,
        dispatcher: Dispatcher | None = None,
        notifier: ChatNotifier | None = None,
        deliverable_base_dir: Path | None = None,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.outbox_dir = outbox_dir
        self.archive_dir = archive_dir
        self.processed_dir = processed_dir
        self.inbox_dir = inbox_dir
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.deliverable_base_dir = deliverable_base_dir

    def scan(self) -> list[ReconcileOutcome]:
        """Reconcile every result file currently in the outbox, oldest name first."""

        if not self.outbox_dir.is_dir():
            return []
        return [
            self.reconcile_file(path)
            for path in sorted(self.outbox_dir.iterdir())
            if path.is_file() and self.accepts(path)
        ]

    def accepts(self, path: Path) -> bool:
        return is_candidate_file(path) and not path.name.startswith(UNROUTABLE_PREFIX)

    def reconcile_file(self, path: Path) -> ReconcileOutcome:
        if not self.accepts(path):
            return ReconcileOutcome(filename=path.name, status=ReconcileStatus.IGNORED)
        if not path.exists():
            # Already handled through the other discovery path.
            logger.debug("Result file vanished before handling: %s", path.name)
            return ReconcileOutcome(filename=path.name, status=ReconcileStatus.MISSING)

        outcome = ReconcileOutcome(filename=path.name, status=ReconcileStatus.UNMATCHED)
        try:
            try:
                record = read_result_record(path)
            except (json.JSONDecodeError, UnicodeDecodeError, TypeError, ValueError) as error:
                logger.warning("Invalid result file %s: %s", path.name, error)
                outcome.status = ReconcileStatus.INVALID
                return outcome
            self._apply(record, outcome)
            return outcome
        finally:
            try:
                outcome.archived_to = move_to_dir(path, self.archive_dir)
            except FileNotFoundError:
                logger.debug("Result file already archived: %s", path.name)

    def correlate(self, record: ResultRecord) -> Correlation:
        """Direct ``task_id`` first, then the processed copy named by ``task_source``."""

        if record.task_id is not None:
            return Correlation(task_id=record.task_id, via="task_id")
        if record.task_source is None:
            return Correlation(task_id=None)

        source = self._load_source_copy(Path(record.task_source).name)
        if source is None:
            return Correlation(task_id=None)
        task_id = source.get("id")
        return Correlation(
            task_id=str(task_id) if task_id else None,
            conversation_id=_optional_text(source.get("conversation_id")),
            user_id=_optional_text(source.get("user_id")),
            via="task_source",
        )

    def _load_source_copy(self, filename: str) -> dict[str, Any] | None:
        # A fast worker can answer before the inbox file has been archived.
        directories = [self.processed_dir]
        if self.inbox_dir is not None:
            directories.append(self.inbox_dir)
        for directory in directories:
            try:
                return load_json(directory / filename)
            except (OSError, json.JSONDecodeError, UnicodeDecodeError, TypeError):
                continue
        return None

    def _apply(self, record: ResultRecord, outcome: ReconcileOutcome) -> None:
        correlation = self.correlate(record)
        deliverable = detect_deliverable(
            output_file=record.output_file,
            result=record.result,
            base_dir=self.deliverable_base_dir,
        )
        outcome.deliverable = deliverable

        task = (
            self.repository.get_task(task_id=correlation.task_id)
            if correlation.task_id is not None
            else None
        )
        if task is None:
            logger.info(
                "Unmatched result %s from %s (task_id=%s, task_source=%s)",
                record.filename,
                record.agent,
                correlation.task_id,
                record.task_source,
            )
            return

        conversation_id = correlation.conversation_id or task.conversation_id
        update = TaskUpdateWrite(
            agent=record.agent,
            result=record.result if record.error is None else record.raw,
            deliverable=deliverable,
            source_file=record.task_source,
            result_file=record.filename,
            conversation_id=conversation_id,
            completed_at=record.completed_at,
        )
        outcome.task_id = task.task_id
        if record.error is not None:
            self.lifecycle.mark_error(
                task.task_id,
                reason=record.error,
                agent=record.agent,
                update=update,
            )
            outcome.status = ReconcileStatus.FAILED
        else:
            self.lifecycle.mark_done(task.task_id, update=update)
            outcome.status = ReconcileStatus.COMPLETED
        logger.info(
            "Result %s from %s -> task %s (%s via %s)",
            record.filename,
            record.agent,
            task.task_id,
            outcome.status.value,
            correlation.via,
        )

        if task.parent_task_id is not None and self.dispatcher is not None:
            self.dispatcher.on_step_terminal(task.task_id)

        if conversation_id and self.notifier is not None:
            self.notifier.notify(
                conversation_id=conversation_id,
                task_id=task.task_id,
                user_id=correlation.user_id or task.user_id,
                agent=record.agent,
                result=record.result,
                deliverable=deliverable,
                error=record.error,
            )


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
