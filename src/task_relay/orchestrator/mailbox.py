"""Per-worker queue directories used as mailboxes.

Every dispatch is its own uniquely named file under
``<agents_dir>/<worker>/queue/``, so a burst of dispatches to the same worker
never overwrites an unread task.  Workers claim entries by moving them into
``queue/claimed/``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from task_relay.orchestrator.contracts import (
    ROUTED_BY,
    is_candidate_file,
    load_json,
    write_json_atomic,
)
from task_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

QUEUE_DIRNAME = "queue"
CLAIMED_DIRNAME = "claimed"


@dataclass(slots=True)
class MailboxEntry:
    """The enriched task handed to a worker."""

    task: dict[str, Any]
    routed_at: datetime
    source_file: str | None = None
    source_name: str | None = None
    routed_by: str = ROUTED_BY

    def to_mapping(self) -> dict[str, Any]:
        payload = dict(self.task)
        payload["_routed_by"] = self.routed_by
        payload["_routed_at"] = self.routed_at.isoformat()
        if self.source_file is not None:
            payload["_source_file"] = self.source_file
        if self.source_name is not None:
            payload["_source_name"] = self.source_name
        return payload


class Mailbox:
    def __init__(self, agents_dir: Path) -> None:
        self.agents_dir = agents_dir

    def queue_dir(self, worker: str) -> Path:
        return self.agents_dir / worker / QUEUE_DIRNAME

    def claimed_dir(self, worker: str) -> Path:
        return self.queue_dir(worker) / CLAIMED_DIRNAME

    def write(self, worker: str, entry: MailboxEntry) -> Path:
        """Atomically drop ``entry`` into the worker's queue and return its path."""

        stamp = entry.routed_at.strftime("%Y%m%dT%H%M%S%fZ")
        path = self.queue_dir(worker) / f"{stamp}-{uuid4().hex}.json"
        write_json_atomic(path, entry.to_mapping())
        logger.debug("Mailbox write: worker=%s path=%s", worker, path.name)
        return path

    def pending(self, worker: str) -> list[Path]:
        """Unclaimed entries, oldest first."""

        queue_dir = self.queue_dir(worker)
        if not queue_dir.is_dir():
            return []
        return sorted(
            path for path in queue_dir.iterdir() if path.is_file() and is_candidate_file(path)
        )

    def claim(self, worker: str) -> tuple[Path, dict[str, Any]] | None:
        """Move the oldest pending entry to ``claimed/`` and return it.

        Two claimers racing for the same entry cannot both win: the loser's
        rename fails and it moves on to the next entry.
        """

        claimed_dir = self.claimed_dir(worker)
        claimed_dir.mkdir(parents=True, exist_ok=True)
        for path in self.pending(worker):
            target = claimed_dir / path.name
            try:
                os.rename(path, target)
            except FileNotFoundError:
                continue
            return target, load_json(target)
        return None


def build_entry(
    task: dict[str, Any],
    *,
    source_file: str | None,
    source_name: str | None = None,
    routed_at: datetime | None = None,
) -> MailboxEntry:
    return MailboxEntry(
        task=task,
        routed_at=routed_at or utc_now(),
        source_file=source_file,
        source_name=source_name,
    )
