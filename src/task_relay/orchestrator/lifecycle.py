"""Task lifecycle state machine over the durable store."""

from __future__ import annotations

import logging

from task_relay.orchestrator.models import (
    InvalidTransitionError,
    TaskStatus,
    TaskUpdateView,
    TaskUpdateWrite,
)
from task_relay.orchestrator.repository import TaskRepository

logger = logging.getLogger(__name__)


class StatusSynchronizer:
    """Moves task records through ``inbox -> in_progress -> {done, error}``.

    Re-queue to ``inbox`` is accepted from any state and starts a fresh
    cycle.  Every accepted change is recorded in the task event trail.
    """

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def mark_in_progress(
        self,
        task_id: str,
        *,
        agent: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Record a dispatch; returns ``False`` when the task was not in ``inbox``."""

        previous = self.repository.transition(
            task_id=task_id,
            allowed_from=(TaskStatus.INBOX,),
            status_to=TaskStatus.IN_PROGRESS,
            event_type="dispatched",
            details={"agent": agent, **(details or {})},
            dispatched_agent=agent,
        )
        if previous is None:
            logger.warning("Task %s was not in inbox at dispatch; status left unchanged", task_id)
            return False
        logger.info("Task %s -> in_progress (agent=%s)", task_id, agent)
        return True

    def mark_done(self, task_id: str, *, update: TaskUpdateWrite) -> TaskUpdateView:
        """Append ``update`` and close the task.

        A result for a task still in ``inbox`` first records ``in_progress`` so
        the dispatch always precedes completion in the event trail.  A task
        already ``done`` keeps its status and still gets the update appended.
        """

        self._ensure_in_progress(task_id, agent=update.agent)
        view = self.repository.append_update(task_id=task_id, update=update)
        previous = self.repository.transition(
            task_id=task_id,
            allowed_from=(TaskStatus.IN_PROGRESS,),
            status_to=TaskStatus.DONE,
            event_type="completed",
            details={"agent": update.agent, "update_id": view.update_id},
        )
        if previous is None:
            current = self.repository.get_task(task_id=task_id)
            logger.info(
                "Task %s got an extra result from %s; status stays %s",
                task_id,
                update.agent,
                current.status.value if current is not None else "unknown",
            )
        else:
            logger.info("Task %s -> done (agent=%s)", task_id, update.agent)
        return view

    def mark_error(
        self,
        task_id: str,
        *,
        reason: str,
        agent: str | None = None,
        update: TaskUpdateWrite | None = None,
    ) -> bool:
        """Move an ``inbox`` or ``in_progress`` task to ``error``.

        ``update`` (the worker's error result, when there is one) is appended
        before the transition so the failure detail is kept.
        """

        if update is not None:
            self._ensure_in_progress(task_id, agent=update.agent)
            self.repository.append_update(task_id=task_id, update=update)
        previous = self.repository.transition(
            task_id=task_id,
            allowed_from=(TaskStatus.INBOX, TaskStatus.IN_PROGRESS),
            status_to=TaskStatus.ERROR,
            event_type="failed",
            details={"reason": reason, "agent": agent},
            error_summary=reason,
        )
        if previous is None:
            logger.warning("Task %s already terminal; error not recorded: %s", task_id, reason)
            return False
        logger.info("Task %s -> error: %s", task_id, reason)
        return True

    def requeue(self, task_id: str, *, actor: str = "operator") -> TaskStatus:
        """Reset a task to ``inbox`` for a fresh cycle; returns the previous status."""

        previous = self.repository.transition(
            task_id=task_id,
            allowed_from=tuple(TaskStatus),
            status_to=TaskStatus.INBOX,
            event_type="requeued",
            details={"actor": actor},
        )
        if previous is None:
            # Status moved between the read and the conditional update.
            current = self.repository.get_task(task_id=task_id)
            status = current.status if current is not None else TaskStatus.INBOX
            raise InvalidTransitionError(task_id, status, TaskStatus.INBOX)
        logger.info("Task %s requeued from %s by %s", task_id, previous.value, actor)
        return previous

    def reopen(self, task_id: str, *, agent: str, reason: str) -> TaskStatus:
        """Re-queue a closed task and put it straight back to ``in_progress``.

        Used for a workflow parent whose step was re-queued: both moves are
        ordinary lifecycle edges, so the event trail stays readable.
        """

        previous = self.requeue(task_id, actor=agent)
        self.mark_in_progress(task_id, agent=agent, details={"reason": reason})
        return previous

    def _ensure_in_progress(self, task_id: str, *, agent: str) -> None:
        self.repository.transition(
            task_id=task_id,
            allowed_from=(TaskStatus.INBOX,),
            status_to=TaskStatus.IN_PROGRESS,
            event_type="result_before_dispatch",
            details={"agent": agent},
            dispatched_agent=agent,
        )
