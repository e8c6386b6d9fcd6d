"""Backend interface for classification and decomposition calls."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class InferenceRequest:
    """One prompt sent to the external inference command."""

    prompt: str
    timeout_seconds: int
    purpose: str = "classify"


@dataclass(slots=True)
class InferenceResult:
    """Execution outcome from the inference backend."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class InferenceBackend(Protocol):
    """Protocol implemented by inference runners."""

    def run(self, request: InferenceRequest) -> InferenceResult:
        """Run one prompt and return execution metadata."""
