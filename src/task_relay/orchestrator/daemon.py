"""Single-threaded relay loop fed by a filesystem watch and a backup poll."""

from __future__ import annotations

import logging
import os
import queue
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from task_relay.orchestrator.services import RelayServices

logger = logging.getLogger(__name__)


class Area(str, Enum):
    INBOX = "inbox"
    OUTBOX = "outbox"


@dataclass(slots=True)
class DaemonSummary:
    """Aggregate loop counters for CLI reporting."""

    inbox_files: int = 0
    result_files: int = 0
    store_drops: int = 0
    steps_resumed: int = 0
    health_polls: int = 0
    failures: int = 0


class _QueueingHandler(FileSystemEventHandler):
    """Runs on the observer thread; only enqueues paths for the main loop."""

    def __init__(self, area: Area, sink: queue.Queue[tuple[Area, Path]]) -> None:
        super().__init__()
        self.area = area
        self.sink = sink

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.sink.put((self.area, Path(os.fsdecode(event.src_path))))

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writers rename a temp file into place.
        if not event.is_directory:
            self.sink.put((self.area, Path(os.fsdecode(event.dest_path))))


class RelayDaemon:
    """Handles inbox and outbox files one at a time.

    Discovery is redundant on purpose: the watch gives low latency, the
    poll catches missed events.  Both feed the same handlers, and every
    handled file is moved away, so a second sighting is skipped.
    """

    def __init__(self, services: RelayServices) -> None:
        self.services = services
        settings = services.settings
        self.poll_interval_seconds = settings.daemon.poll_interval_seconds
        self.health_interval_seconds = settings.health.interval_seconds
        self.write_stability_seconds = settings.daemon.write_stability_seconds
        self.watch_enabled = settings.daemon.watch_enabled
        self.store_poll_enabled = settings.daemon.store_poll_enabled
        self.health_enabled = settings.daemon.health_enabled
        self.events: queue.Queue[tuple[Area, Path]] = queue.Queue()
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> DaemonSummary:
        """One full pass: store poll, inbox scan, outbox scan, health poll."""

        summary = DaemonSummary()
        self.services.ensure_directories()
        self._poll_pass(summary)
        if self.health_enabled:
            self._health_pass(summary)
        return summary

    def run_loop(self, *, max_seconds: float | None = None) -> DaemonSummary:
        summary = DaemonSummary()
        self.services.ensure_directories()
        started = time.monotonic()
        next_poll = started
        next_health = started
        with self._signal_handlers(), self._observer():
            logger.info(
                "Relay started; watching %s",
                self.services.settings.workspace.workspace_dir,
            )
            while not self._stop_requested:
                now = time.monotonic()
                if max_seconds is not None and now - started >= max_seconds:
                    break
                if now >= next_poll:
                    self._poll_pass(summary)
                    next_poll = now + self.poll_interval_seconds
                if self.health_enabled and now >= next_health:
                    self._health_pass(summary)
                    next_health = now + self.health_interval_seconds
                self._drain_events(summary, timeout=min(0.5, self.poll_interval_seconds))
        logger.info(
            "Relay stopped (%s): inbox=%d results=%d failures=%d",
            self._stop_signal_name or "done",
            summary.inbox_files,
            summary.result_files,
            summary.failures,
        )
        return summary

    def request_stop(self) -> None:
        self._stop_requested = True

    def handle_path(self, area: Area, path: Path, summary: DaemonSummary) -> None:
        """Handle one discovered file; failures are logged and never stop the loop."""

        try:
            if not self._await_write_finish(path):
                return
            if area == Area.INBOX:
                self.services.inbox.process_file(path)
                summary.inbox_files += 1
            elif self.services.reconciler.accepts(path):
                self.services.reconciler.reconcile_file(path)
                summary.result_files += 1
        except Exception:  # noqa: BLE001
            summary.failures += 1
            logger.exception("Failed to handle %s file %s", area.value, path.name)

    def _poll_pass(self, summary: DaemonSummary) -> None:
        workspace = self.services.settings.workspace
        if self.store_poll_enabled:
            try:
                summary.store_drops += len(self.services.poller.poll())
            except Exception:  # noqa: BLE001
                summary.failures += 1
                logger.exception("Store poll failed")
            try:
                summary.steps_resumed += len(self.services.dispatcher.resume_waiting_workflows())
            except Exception:  # noqa: BLE001
                summary.failures += 1
                logger.exception("Workflow resume pass failed")
        for area, directory in (
            (Area.INBOX, workspace.inbox_dir),
            (Area.OUTBOX, workspace.outbox_dir),
        ):
            for path in sorted(directory.glob("*.json")):
                if self._stop_requested:
                    return
                self.handle_path(area, path, summary)

    def _health_pass(self, summary: DaemonSummary) -> None:
        try:
            self.services.health.poll()
            summary.health_polls += 1
        except Exception:  # noqa: BLE001
            summary.failures += 1
            logger.exception("Health poll failed")

    def _drain_events(self, summary: DaemonSummary, *, timeout: float) -> None:
        try:
            area, path = self.events.get(timeout=timeout)
        except queue.Empty:
            return
        self.handle_path(area, path, summary)
        while not self._stop_requested:
            try:
                area, path = self.events.get_nowait()
            except queue.Empty:
                return
            self.handle_path(area, path, summary)

    def _await_write_finish(self, path: Path) -> bool:
        """Wait until the file size holds steady; ``False`` when the file is gone."""

        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return False
        if self.write_stability_seconds <= 0:
            return True
        stable_since = time.monotonic()
        while time.monotonic() - stable_since < self.write_stability_seconds:
            if self._stop_requested:
                return False
            time.sleep(0.1)
            try:
                current = path.stat().st_size
            except FileNotFoundError:
                return False
            if current != size:
                size = current
                stable_since = time.monotonic()
        return True

    @contextmanager
    def _observer(self) -> Iterator[None]:
        if not self.watch_enabled:
            yield
            return
        workspace = self.services.settings.workspace
        observer = Observer()
        observer.schedule(
            _QueueingHandler(Area.INBOX, self.events),
            str(workspace.inbox_dir),
            recursive=False,
        )
        observer.schedule(
            _QueueingHandler(Area.OUTBOX, self.events),
            str(workspace.outbox_dir),
            recursive=False,
        )
        observer.start()
        try:
            yield
        finally:
            observer.stop()
            observer.join(timeout=5)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass
