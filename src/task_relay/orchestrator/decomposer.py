"""Split a complex task into a short ordered workflow."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping

from task_relay.orchestrator.backend import BackendRunError, InferenceBackend, InferenceRequest
from task_relay.orchestrator.failure_classifier import classify_inference_failure
from task_relay.orchestrator.models import Task, WorkflowSubtask

logger = logging.getLogger(__name__)

MAX_SUBTASKS = 5


class DecompositionError(ValueError):
    """Inference output is not a usable workflow."""


def is_workflow_request(task: Task) -> bool:
    return task.workflow or task.type.strip().lower() == "workflow"


class Decomposer:
    """Ask the inference backend for 1-5 steps, each naming a known worker."""

    def __init__(
        self,
        *,
        backend: InferenceBackend | None,
        vocabulary: Mapping[str, str],
        min_description_chars: int = 120,
        timeout_seconds: int = 30,
    ) -> None:
        self.backend = backend
        self.vocabulary = {name.lower(): summary for name, summary in vocabulary.items()}
        self.min_description_chars = min_description_chars
        self.timeout_seconds = timeout_seconds

    def qualifies_as_fallback(self, task: Task) -> bool:
        """Long descriptions are likely multi-step rather than unroutable."""

        return len(task.description.strip()) >= self.min_description_chars

    def decompose(
        self,
        task: Task,
        *,
        source_file: str | None = None,
    ) -> list[WorkflowSubtask] | None:
        """Return the validated steps, or ``None`` when the attempt is discarded."""

        if self.backend is None:
            logger.debug("Decomposer not configured; skipping")
            return None

        try:
            result = self.backend.run(
                InferenceRequest(
                    prompt=build_decomposition_prompt(task=task, vocabulary=self.vocabulary),
                    timeout_seconds=self.timeout_seconds,
                    purpose="decompose",
                ),
            )
        except BackendRunError as error:
            logger.warning("Decomposition call failed (transient=%s): %s", error.transient, error)
            return None

        if not result.ok:
            failure = classify_inference_failure(
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                stdout=result.stdout,
                stderr=result.stderr,
            )
            logger.warning(
                "Decomposition failed: exit_code=%s %s",
                result.exit_code,
                failure.to_log_details(purpose="decompose"),
            )
            return None

        try:
            subtasks = parse_decomposition(
                result.stdout,
                known_workers=frozenset(self.vocabulary),
                parent_task_id=task.id,
                source_file=source_file,
            )
        except DecompositionError as error:
            logger.info("Decomposition discarded: %s", error)
            return None
        logger.info(
            "Decomposed task into %d steps: %s",
            len(subtasks),
            ", ".join(subtask.agent for subtask in subtasks),
        )
        return subtasks


def build_decomposition_prompt(*, task: Task, vocabulary: Mapping[str, str]) -> str:
    lines = [
        "You are a workflow planner. Break the task below into at most "
        f"{MAX_SUBTASKS} ordered steps, each handled by exactly one of these agents:",
        "",
    ]
    lines.extend(f"{name} = {summary}" for name, summary in vocabulary.items())
    lines.extend(
        [
            "",
            "Respond with ONLY a JSON array. Each element must be an object:",
            '{"agent": "<agent name>", "description": "<what this step does>", '
            '"depends_on": <0-based index of an earlier step or null>}',
            "",
            f"Task: {json.dumps(task.to_mapping(), ensure_ascii=False, sort_keys=True)}",
        ],
    )
    return "\n".join(lines)


def parse_decomposition(
    stdout: str,
    *,
    known_workers: frozenset[str],
    parent_task_id: str | None = None,
    source_file: str | None = None,
) -> list[WorkflowSubtask]:
    """Validate the JSON array embedded in inference output."""

    start = stdout.find("[")
    end = stdout.rfind("]")
    if start < 0 or end <= start:
        raise DecompositionError("no JSON array in output")
    try:
        payload = json.loads(stdout[start : end + 1])
    except json.JSONDecodeError as error:
        raise DecompositionError(f"malformed JSON array: {error}") from error
    if not isinstance(payload, list):
        raise DecompositionError("output is not an array")
    if not payload:
        raise DecompositionError("empty workflow")
    if len(payload) > MAX_SUBTASKS:
        raise DecompositionError(f"{len(payload)} steps exceeds the limit of {MAX_SUBTASKS}")

    subtasks: list[WorkflowSubtask] = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise DecompositionError(f"step {index} is not an object")
        agent = entry.get("agent")
        if not isinstance(agent, str) or agent.strip().lower() not in known_workers:
            raise DecompositionError(f"step {index} names unknown agent {agent!r}")
        description = entry.get("description")
        if not isinstance(description, str) or not description.strip():
            raise DecompositionError(f"step {index} has no description")
        depends_on = entry.get("depends_on")
        if depends_on is not None and (
            isinstance(depends_on, bool)
            or not isinstance(depends_on, int)
            or not 0 <= depends_on < index
        ):
            raise DecompositionError(
                f"step {index} depends_on {depends_on!r} is not an earlier step",
            )
        subtasks.append(
            WorkflowSubtask(
                index=index,
                agent=agent.strip().lower(),
                description=description.strip(),
                depends_on=depends_on,
                parent_task_id=parent_task_id,
                source_file=source_file,
            ),
        )
    return subtasks
