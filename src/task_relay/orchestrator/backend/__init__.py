"""Inference backend implementations."""

from task_relay.orchestrator.backend.base import (
    InferenceBackend,
    InferenceRequest,
    InferenceResult,
)
from task_relay.orchestrator.backend.cli_backend import BackendRunError, CliInferenceBackend

__all__ = [
    "BackendRunError",
    "CliInferenceBackend",
    "InferenceBackend",
    "InferenceRequest",
    "InferenceResult",
]
