"""Subprocess-based backend runner for the inference CLI."""

from __future__ import annotations

import os
import shlex
import subprocess

from task_relay.orchestrator.backend.base import InferenceRequest, InferenceResult


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliInferenceBackend:
    """Execute the configured command template with the prompt substituted in."""

    def __init__(self, *, command_template: str) -> None:
        self.command_template = command_template

    def run(self, request: InferenceRequest) -> InferenceResult:
        run_args = _build_run_args(
            command_template=self.command_template,
            prompt=request.prompt,
        )
        env = os.environ.copy()
        env["TASK_RELAY_INFERENCE_PURPOSE"] = request.purpose

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Inference command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Inference command failed to start: {error}",
                transient=True,
            ) from error

        try:
            stdout, stderr = process.communicate(timeout=request.timeout_seconds)
        except subprocess.TimeoutExpired:
            _terminate_process(process)
            return InferenceResult(exit_code=124, timed_out=True, stdout="", stderr="")
        return InferenceResult(
            exit_code=process.returncode,
            timed_out=False,
            stdout=stdout or "",
            stderr=stderr or "",
        )


def _build_run_args(*, command_template: str, prompt: str) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Inference command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise BackendRunError(
            "Inference command template must include {prompt}.",
            transient=False,
        )
    try:
        rendered = stripped.format(prompt=shlex.quote(prompt))
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Inference command template rendered empty command.",
            transient=False,
        )
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.kill()
    except OSError:
        return
    try:
        process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        return
