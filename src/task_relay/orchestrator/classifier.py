"""Best-effort LLM classification when keyword routing finds nothing."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping

from task_relay.orchestrator.backend import BackendRunError, InferenceBackend, InferenceRequest
from task_relay.orchestrator.failure_classifier import classify_inference_failure
from task_relay.orchestrator.models import Task

logger = logging.getLogger(__name__)


class Classifier:
    """Single-attempt classification into a fixed worker vocabulary.

    Any answer outside the vocabulary, a timeout, a failed call or a
    missing backend all mean "no classification"; the caller moves on to
    its next fallback.
    """

    def __init__(
        self,
        *,
        backend: InferenceBackend | None,
        vocabulary: Mapping[str, str],
        timeout_seconds: int = 30,
    ) -> None:
        self.backend = backend
        self.vocabulary = {name.lower(): summary for name, summary in vocabulary.items()}
        self.timeout_seconds = timeout_seconds

    def classify(self, task: Task) -> str | None:
        if self.backend is None:
            logger.debug("Classifier not configured; skipping")
            return None
        if not self.vocabulary:
            return None

        prompt = build_classification_prompt(task=task, vocabulary=self.vocabulary)
        try:
            result = self.backend.run(
                InferenceRequest(
                    prompt=prompt,
                    timeout_seconds=self.timeout_seconds,
                    purpose="classify",
                ),
            )
        except BackendRunError as error:
            logger.warning("Classification call failed (transient=%s): %s", error.transient, error)
            return None

        if not result.ok:
            failure = classify_inference_failure(
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                stdout=result.stdout,
                stderr=result.stderr,
            )
            logger.warning(
                "Classification failed: exit_code=%s %s",
                result.exit_code,
                failure.to_log_details(purpose="classify"),
            )
            return None

        answer = parse_classification(result.stdout)
        if answer not in self.vocabulary:
            logger.info("Classifier answered outside the vocabulary: %r", answer)
            return None
        return answer


def build_classification_prompt(*, task: Task, vocabulary: Mapping[str, str]) -> str:
    names = list(vocabulary)
    choices = ", ".join(names[:-1]) + (f", or {names[-1]}" if len(names) > 1 else names[0])
    lines = [
        f"You are a task router. Given this task, respond with ONLY one word: {choices}.",
        "",
    ]
    lines.extend(f"{name} = {summary}" for name, summary in vocabulary.items())
    lines.extend(
        [
            "",
            f"Task: {json.dumps(task.to_mapping(), ensure_ascii=False, sort_keys=True)}",
            "",
            "Agent:",
        ],
    )
    return "\n".join(lines)


def parse_classification(stdout: str) -> str:
    """Last non-empty output line, lowercased."""

    lines = [line.strip() for line in stdout.strip().lower().splitlines() if line.strip()]
    if not lines:
        return ""
    return lines[-1]
