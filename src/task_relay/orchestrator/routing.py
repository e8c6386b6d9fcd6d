"""Deterministic task routing over injected keyword tables."""

from __future__ import annotations

from dataclasses import dataclass

from task_relay.orchestrator.models import Task
from task_relay.orchestrator.roster import Roster, default_roster


@dataclass(frozen=True, slots=True)
class RoutingTable:
    """Keyword tables used by the router.

    ``routes`` keeps declaration order: the description scan returns the
    first key found, so earlier entries win ties.
    """

    escalation_worker: str
    escalation_keywords: tuple[str, ...]
    routes: tuple[tuple[str, str], ...]
    escalation_assignees: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.escalation_worker:
            raise ValueError("RoutingTable.escalation_worker must not be empty.")
        seen: set[str] = set()
        for key, worker in self.routes:
            if not key or not worker:
                raise ValueError("RoutingTable.routes entries must be non-empty.")
            if key in seen:
                raise ValueError(f"Duplicate routing key: {key!r}")
            seen.add(key)

    @property
    def assignable_escalation(self) -> frozenset[str]:
        return self.escalation_assignees | {self.escalation_worker}

    @property
    def workers(self) -> tuple[str, ...]:
        """Every worker identity the table can produce, in declaration order."""

        ordered: list[str] = []
        for _, worker in self.routes:
            if worker not in ordered:
                ordered.append(worker)
        if self.escalation_worker not in ordered:
            ordered.append(self.escalation_worker)
        return tuple(ordered)

    def route_for_type(self, task_type: str) -> str | None:
        for key, worker in self.routes:
            if key == task_type:
                return worker
        return None

    def type_for_worker(self, worker: str) -> str | None:
        """First routing key that leads to ``worker``."""

        if worker == self.escalation_worker and self.escalation_keywords:
            return self.escalation_keywords[0]
        for key, candidate in self.routes:
            if candidate == worker:
                return key
        return None

    @classmethod
    def from_roster(cls, roster: Roster, *, escalation_worker: str | None = None) -> RoutingTable:
        """Build tables from roster keywords; the first escalation worker owns escalation."""

        escalation = [worker for worker in roster.escalation_workers if worker.enabled]
        if escalation_worker is None:
            if not escalation:
                raise ValueError("Roster has no enabled escalation worker.")
            escalation_worker = escalation[0].name
        primary = roster.get(escalation_worker)
        if primary is None:
            raise ValueError(f"Escalation worker {escalation_worker!r} is not in the roster.")
        escalation_keywords = primary.keywords

        routes: list[tuple[str, str]] = []
        seen: set[str] = set()
        for worker in roster.workers:
            if worker.escalation or not worker.enabled:
                continue
            keys = worker.keywords or (worker.routable_type,)
            for key in keys:
                if key in seen:
                    continue
                seen.add(key)
                routes.append((key, worker.name))
        return cls(
            escalation_worker=escalation_worker,
            escalation_keywords=escalation_keywords,
            routes=tuple(routes),
            escalation_assignees=frozenset(worker.name for worker in escalation),
        )


def default_routing_table() -> RoutingTable:
    return RoutingTable.from_roster(default_roster())


class Router:
    """Pure classifier from a task to exactly one worker identity or ``None``."""

    def __init__(self, table: RoutingTable) -> None:
        self.table = table

    def route(self, task: Task) -> str | None:
        table = self.table
        task_type = task.type.strip().lower()
        assigned_to = (task.assigned_to or "").strip().lower()
        content = task.description.lower()

        if assigned_to and assigned_to in table.assignable_escalation:
            return assigned_to

        if task_type in table.escalation_keywords:
            return table.escalation_worker
        for keyword in table.escalation_keywords:
            if keyword in content:
                return table.escalation_worker

        direct = table.route_for_type(task_type)
        if direct is not None:
            return direct

        for key, worker in table.routes:
            if key in content:
                return worker
        return None
