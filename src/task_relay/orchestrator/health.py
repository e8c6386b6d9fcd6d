"""Worker liveness polling and the aggregated status snapshot."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path

from task_relay.http.client import JsonHttpClient, JsonResult
from task_relay.orchestrator.contracts import write_json_atomic
from task_relay.orchestrator.models import AgentHealth, HealthSnapshot, HealthStatus
from task_relay.orchestrator.repository import TaskRepository
from task_relay.orchestrator.roster import Roster
from task_relay.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Polls every enabled worker's health endpoint and rebuilds one snapshot.

    Disabled roster entries are reported ``offline`` without a request;
    workers with no ``health_url`` are left out of the snapshot.
    """

    def __init__(
        self,
        *,
        roster: Roster,
        client: JsonHttpClient,
        status_file: Path,
        repository: TaskRepository | None = None,
        stale_after_seconds: int = 900,
    ) -> None:
        self.roster = roster
        self.client = client
        self.status_file = status_file
        self.repository = repository
        self.stale_after = timedelta(seconds=stale_after_seconds)

    def poll(self, *, now: datetime | None = None) -> HealthSnapshot:
        """Probe all workers, write the snapshot file, mirror it to the store."""

        generated_at = now or utc_now()
        agents: dict[str, AgentHealth] = {}
        for worker in self.roster.workers:
            if not worker.enabled:
                agents[worker.name] = AgentHealth(
                    agent=worker.name,
                    status=HealthStatus.OFFLINE,
                    error="disabled in roster",
                )
                continue
            if not worker.health_url:
                continue
            agents[worker.name] = self.probe(worker.name, worker.health_url, now=generated_at)

        snapshot = HealthSnapshot(generated_at=generated_at, agents=agents)
        write_json_atomic(self.status_file, snapshot.to_metadata())
        if self.repository is not None:
            for health in agents.values():
                self.repository.upsert_agent_status(health=health, heartbeat_at=generated_at)

        not_ok = sorted(name for name, item in agents.items() if item.status != HealthStatus.OK)
        if not_ok:
            logger.warning(
                "Health poll: %d/%d not ok: %s",
                len(not_ok),
                len(agents),
                ", ".join(not_ok),
            )
        else:
            logger.debug("Health poll: all %d workers ok", len(agents))
        return snapshot

    def probe(self, agent: str, health_url: str, *, now: datetime) -> AgentHealth:
        response = self.client.get_json(health_url)
        return evaluate_health(
            agent,
            response,
            now=now,
            stale_after=self.stale_after,
        )


def evaluate_health(
    agent: str,
    response: JsonResult,
    *,
    now: datetime,
    stale_after: timedelta,
) -> AgentHealth:
    """Map one probe response onto a snapshot entry."""

    if not response.reached:
        return AgentHealth(
            agent=agent,
            status=HealthStatus.UNREACHABLE,
            error=response.error or "no response",
        )

    payload = response.payload or {}
    last_task_at = _optional_text(payload.get("last_task_at"))
    current_task = _optional_text(payload.get("current_task"))
    uptime = payload.get("uptime_seconds")
    health = AgentHealth(
        agent=agent,
        status=HealthStatus.OK,
        last_task_at=last_task_at,
        current_task=current_task,
        uptime_seconds=uptime if isinstance(uptime, int) and not isinstance(uptime, bool) else None,
    )

    reported = payload.get("status")
    if not response.is_success:
        health.status = HealthStatus.UNHEALTHY
        health.error = response.error
        return health
    if reported != HealthStatus.OK.value:
        health.status = HealthStatus.UNHEALTHY
        health.error = f"reported status {reported!r}"
        return health

    if current_task and last_task_at:
        started = _parse_timestamp(last_task_at)
        if started is not None and now - started > stale_after:
            health.status = HealthStatus.STALE
            health.error = f"current task running since {last_task_at}"
    return health


def _parse_timestamp(value: str) -> datetime | None:
    try:
        return from_iso(value)
    except ValueError:
        return None


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
