"""FastAPI receiver for record envelopes, named hooks and write-back requests."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from task_relay import __version__
from task_relay.orchestrator.contracts import load_json
from task_relay.orchestrator.models import WriteRequest
from task_relay.orchestrator.services import RelayServices

logger = logging.getLogger(__name__)


class NewTaskEnvelope(BaseModel):
    record: dict[str, Any] | None = None


class WriteBackRequest(BaseModel):
    table: str = Field(min_length=1)
    key: str = Field(min_length=1)
    values: dict[str, Any] = Field(default_factory=dict)


def create_app(services: RelayServices) -> FastAPI:
    """Build the HTTP surface over already-wired relay services.

    Handlers are plain ``def`` so the synchronous store runs in FastAPI's
    thread pool.
    """

    app = FastAPI(title="task-relay", version=__version__)
    app.state.services = services

    def _services(request: Request) -> RelayServices:
        return request.app.state.services

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": "task-relay"}

    @app.post("/hook/new-task")
    def new_task(envelope: NewTaskEnvelope, request: Request) -> dict[str, Any]:
        if not envelope.record:
            raise HTTPException(status_code=400, detail="No record in payload")
        relay = _services(request)
        try:
            view, path = relay.records.accept(envelope.record, source="webhook")
        except (KeyError, TypeError, ValueError) as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        logger.info("Webhook record accepted: task_id=%s queued=%s", view.task_id, bool(path))
        return {
            "status": "accepted",
            "task_id": view.task_id,
            "task_status": view.status.value,
            "queued": path is not None,
        }

    @app.post("/hook/{name}")
    def named_hook(
        name: str,
        request: Request,
        payload: Any = Body(default=None),  # noqa: B008
    ) -> dict[str, str]:
        relay = _services(request)
        try:
            path = relay.hooks.accept(name, payload)
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"status": "accepted", "hook": name, "file": path.name}

    @app.post("/write-back")
    def write_back(body: WriteBackRequest, request: Request) -> dict[str, Any]:
        relay = _services(request)
        result = relay.repository.apply_write(
            WriteRequest(table=body.table, key=body.key, values=body.values),
        )
        if not result.ok:
            error = result.error or "write failed"
            if error.startswith("DENIED"):
                status_code = 403
            elif error.startswith("Task not found"):
                status_code = 404
            else:
                status_code = 400
            raise HTTPException(status_code=status_code, detail=error)
        return {
            "status": "ok",
            "table": result.table,
            "key": result.key,
            "applied": result.applied,
        }

    @app.get("/status")
    def status(request: Request) -> dict[str, Any]:
        relay = _services(request)
        status_file = relay.settings.workspace.status_file
        try:
            snapshot: dict[str, Any] | None = load_json(status_file)
        except FileNotFoundError:
            snapshot = None
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as error:
            logger.warning("Unreadable status snapshot %s: %s", status_file, error)
            snapshot = None
        rows = relay.repository.list_agent_status()
        return {
            "snapshot": snapshot,
            "agents": [
                {
                    "agent": row.agent_name,
                    "status": row.status,
                    "error": row.error,
                    "current_task": row.current_task,
                    "last_task_at": row.last_task_at,
                    "uptime_seconds": row.uptime_seconds,
                    "last_heartbeat": row.last_heartbeat.isoformat(),
                }
                for row in rows
            ],
        }

    return app
