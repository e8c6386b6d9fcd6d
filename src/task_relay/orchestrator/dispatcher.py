"""Hand tasks to worker mailboxes and gate workflow steps on their predecessors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from task_relay.orchestrator.contracts import ROUTED_BY, write_json_atomic
from task_relay.orchestrator.lifecycle import StatusSynchronizer
from task_relay.orchestrator.mailbox import Mailbox, build_entry
from task_relay.orchestrator.models import (
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdateWrite,
    TaskView,
    WorkflowSubtask,
)
from task_relay.orchestrator.repository import TaskNotFoundError, TaskRepository
from task_relay.orchestrator.routing import RoutingTable

logger = logging.getLogger(__name__)

WORKFLOW_AGENT = "workflow"


@dataclass(slots=True)
class DispatchResult:
    agent: str
    mailbox_path: Path
    task_id: str | None
    marked_in_progress: bool


@dataclass(slots=True)
class WorkflowDispatch:
    """Outcome of starting a workflow: the parent record and its released steps."""

    parent_task_id: str
    step_task_ids: list[str]
    released: list[DispatchResult] = field(default_factory=list)


class Dispatcher:
    """Writes mailbox entries and records the hand-off in the store.

    Workflow steps become child task records.  A step with no predecessor
    is dispatched at once; a dependent step waits in ``inbox`` until
    :meth:`on_step_terminal` sees its predecessor finish.
    """

    def __init__(
        self,
        *,
        mailbox: Mailbox,
        repository: TaskRepository,
        lifecycle: StatusSynchronizer,
        routing_table: RoutingTable,
        processed_dir: Path,
    ) -> None:
        self.mailbox = mailbox
        self.repository = repository
        self.lifecycle = lifecycle
        self.routing_table = routing_table
        self.processed_dir = processed_dir

    def dispatch(
        self,
        agent: str,
        task: Task,
        *,
        source_file: str | None,
        source_name: str | None = None,
    ) -> DispatchResult:
        """Write ``task`` to ``agent``'s mailbox, then mark it ``in_progress`` when stored."""

        entry = build_entry(task.to_mapping(), source_file=source_file, source_name=source_name)
        path = self.mailbox.write(agent, entry)
        logger.info(
            "Dispatched %r task to %s: %s",
            task.type or "unknown",
            agent,
            source_file or task.id or path.name,
        )
        marked = False
        if task.id is not None:
            try:
                marked = self.lifecycle.mark_in_progress(
                    task.id,
                    agent=agent,
                    details={"mailbox_file": path.name, "source_file": source_file},
                )
            except TaskNotFoundError:
                logger.warning("Dispatched task %s has no store record", task.id)
        return DispatchResult(
            agent=agent,
            mailbox_path=path,
            task_id=task.id,
            marked_in_progress=marked,
        )

    def dispatch_workflow(
        self,
        task: Task,
        subtasks: list[WorkflowSubtask],
        *,
        source_file: str | None,
    ) -> WorkflowDispatch:
        """Record ``subtasks`` as a new step cycle under the parent and release the first ones.

        A re-queued parent comes back here with a fresh decomposition; steps of
        the earlier cycle that never finished are failed as superseded.
        """

        parent = self._ensure_parent_record(task, source_file=source_file)
        cycle = self.repository.latest_workflow_cycle(parent_task_id=parent.task_id) + 1
        if cycle > 1:
            self._supersede_cycle(parent.task_id, cycle=cycle - 1)
        step_ids: list[str] = []
        for subtask in subtasks:
            step = self.repository.create_task(
                TaskCreate(
                    task_type=self.routing_table.type_for_worker(subtask.agent) or subtask.agent,
                    description=subtask.description,
                    assigned_to=subtask.agent,
                    priority=parent.priority,
                    user_id=parent.user_id,
                    source=f"workflow:{parent.task_id}",
                    conversation_id=parent.conversation_id,
                    context=parent.context,
                    parent_task_id=parent.task_id,
                    workflow_step=subtask.index,
                    workflow_cycle=cycle,
                    depends_on=subtask.depends_on,
                ),
            )
            step_ids.append(step.task_id)

        self.lifecycle.mark_in_progress(
            parent.task_id,
            agent=WORKFLOW_AGENT,
            details={"steps": len(subtasks), "cycle": cycle, "source_file": source_file},
        )
        outcome = WorkflowDispatch(parent_task_id=parent.task_id, step_task_ids=step_ids)
        outcome.released = self.release_ready_steps(parent.task_id)
        logger.info(
            "Workflow %s cycle %d started: %d steps, %d released",
            parent.task_id,
            cycle,
            len(step_ids),
            len(outcome.released),
        )
        return outcome

    def on_step_terminal(self, step_task_id: str) -> list[DispatchResult]:
        """Release or fail dependents of a finished step and close the parent when complete."""

        step = self.repository.get_task(task_id=step_task_id)
        if step is None or step.parent_task_id is None:
            return []
        latest = self.repository.latest_workflow_cycle(parent_task_id=step.parent_task_id)
        if step.workflow_cycle != latest:
            logger.info(
                "Step %s belongs to superseded cycle %s of workflow %s; ignored",
                step.task_id,
                step.workflow_cycle,
                step.parent_task_id,
            )
            return []
        return self.release_ready_steps(step.parent_task_id)

    def resume_waiting_workflows(self) -> list[DispatchResult]:
        """Release re-queued steps, reopening a parent that had already closed.

        A step reset to ``inbox`` is not surfaced by the store poll; this pass
        hands it back to its workflow so the usual gating applies again.
        """

        released: list[DispatchResult] = []
        for parent_task_id in self.repository.list_parents_with_waiting_steps():
            parent = self.repository.get_task(task_id=parent_task_id)
            # An inbox parent is about to be decomposed again.
            if parent is None or parent.status == TaskStatus.INBOX:
                continue
            steps = self.repository.list_workflow_steps(parent_task_id=parent_task_id)
            if not any(step.status == TaskStatus.INBOX for step in steps):
                continue
            if parent.status.is_terminal:
                self.lifecycle.reopen(
                    parent_task_id,
                    agent=WORKFLOW_AGENT,
                    reason="workflow step re-queued",
                )
            released.extend(self.release_ready_steps(parent_task_id))
        return released

    def release_ready_steps(self, parent_task_id: str) -> list[DispatchResult]:
        released: list[DispatchResult] = []
        changed = True
        while changed:
            changed = False
            steps = self.repository.list_workflow_steps(parent_task_id=parent_task_id)
            by_index = {step.workflow_step: step for step in steps}
            for step in steps:
                if step.status == TaskStatus.ERROR and _predecessor_pending(step, by_index):
                    # Its predecessor was re-queued; the failure no longer holds.
                    self.lifecycle.requeue(step.task_id, actor=WORKFLOW_AGENT)
                    changed = True
                    continue
                if step.status != TaskStatus.INBOX:
                    continue
                predecessor = (
                    by_index.get(step.depends_on) if step.depends_on is not None else None
                )
                if step.depends_on is not None and predecessor is None:
                    self.lifecycle.mark_error(
                        step.task_id,
                        reason=f"predecessor step {step.depends_on} does not exist",
                    )
                    changed = True
                elif predecessor is None or predecessor.status == TaskStatus.DONE:
                    released.append(self._dispatch_step(step))
                    changed = True
                elif predecessor.status == TaskStatus.ERROR:
                    self.lifecycle.mark_error(
                        step.task_id,
                        reason=f"predecessor step {step.depends_on} failed",
                    )
                    changed = True
        self._close_parent_if_complete(parent_task_id)
        return released

    def _dispatch_step(self, step: TaskView) -> DispatchResult:
        agent = step.assigned_to or WORKFLOW_AGENT
        source_file = f"step-{step.task_id}.json"
        task = step.to_task()
        # Workers echo _source_file back as task_source; the processed copy lets
        # the reconciler resolve the step id from it.
        write_json_atomic(self.processed_dir / source_file, task.to_mapping())
        return self.dispatch(
            agent,
            task,
            source_file=source_file,
            source_name=f"workflow:{step.parent_task_id}#{step.workflow_step}",
        )

    def _supersede_cycle(self, parent_task_id: str, *, cycle: int) -> None:
        for step in self.repository.list_workflow_steps(parent_task_id=parent_task_id, cycle=cycle):
            if step.status.is_terminal:
                continue
            self.lifecycle.mark_error(
                step.task_id,
                reason=f"superseded by workflow cycle {cycle + 1}",
                agent=WORKFLOW_AGENT,
            )

    def _close_parent_if_complete(self, parent_task_id: str) -> None:
        steps = self.repository.list_workflow_steps(parent_task_id=parent_task_id)
        if not steps or not all(step.status.is_terminal for step in steps):
            return
        parent = self.repository.get_task(task_id=parent_task_id)
        if parent is None or parent.status != TaskStatus.IN_PROGRESS:
            return

        summary = [
            {
                "step": step.workflow_step,
                "agent": step.assigned_to,
                "task_id": step.task_id,
                "status": step.status.value,
            }
            for step in steps
        ]
        failed = [step for step in steps if step.status == TaskStatus.ERROR]
        update = TaskUpdateWrite(
            agent=ROUTED_BY,
            result={"workflow": summary},
            conversation_id=parent.conversation_id,
        )
        if failed:
            self.lifecycle.mark_error(
                parent_task_id,
                reason=f"{len(failed)} of {len(steps)} workflow steps failed",
                agent=ROUTED_BY,
                update=update,
            )
        else:
            self.lifecycle.mark_done(parent_task_id, update=update)
        logger.info(
            "Workflow %s complete: %d steps, %d failed",
            parent_task_id,
            len(steps),
            len(failed),
        )

    def _ensure_parent_record(self, task: Task, *, source_file: str | None) -> TaskView:
        parent, created = self.repository.get_or_create_task(
            TaskCreate(
                task_id=task.id,
                task_type=task.type or "workflow",
                description=task.description,
                assigned_to=task.assigned_to,
                priority=task.priority,
                user_id=task.user_id,
                source=task.source or source_file,
                conversation_id=task.conversation_id,
                context=task.context,
                payload=task.payload,
                is_workflow=True,
            ),
        )
        if created:
            task.id = parent.task_id
        return parent


def _predecessor_pending(step: TaskView, by_index: dict[int | None, TaskView]) -> bool:
    if step.depends_on is None:
        return False
    predecessor = by_index.get(step.depends_on)
    return predecessor is not None and not predecessor.status.is_terminal
