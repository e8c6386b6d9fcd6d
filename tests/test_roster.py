from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from task_relay.orchestrator.roster import (
    MAX_WORKERS,
    Roster,
    RosterError,
    WorkerSpec,
    default_roster,
    load_roster,
    save_roster,
    validate_worker_name,
)

pytestmark = [
    allure.epic("Fleet"),
    allure.feature("Worker Roster"),
]


def test_default_roster_has_one_escalation_worker() -> None:
    roster = default_roster()

    assert roster.names == (
        "magnus",
        "pete",
        "caesar",
        "maggie",
        "clark",
        "sentry",
        "scout",
        "oracle",
    )
    assert [worker.name for worker in roster.escalation_workers] == ["oracle"]
    sentry = roster.get("sentry")
    assert sentry is not None
    assert sentry.health_url == "http://sentry:3000/health"


@pytest.mark.parametrize("name", ["A", "x", "9lives", "has space", "under_score", "a" * 22])
def test_invalid_names_are_rejected(name: str) -> None:
    with pytest.raises(RosterError, match="Invalid worker name"):
        validate_worker_name(name)


@pytest.mark.parametrize("name", ["admin", "root", "stan-orchestrator"])
def test_reserved_names_are_rejected(name: str) -> None:
    with pytest.raises(RosterError, match="reserved"):
        validate_worker_name(name)


def test_add_appends_without_mutating() -> None:
    roster = default_roster()

    grown = roster.add(WorkerSpec(name="ledger", task_type="accounting", keywords=("invoice",)))

    assert grown.names[-1] == "ledger"
    assert "ledger" not in roster.names


def test_add_rejects_duplicate_and_overflow() -> None:
    roster = default_roster()
    with pytest.raises(RosterError, match="already exists"):
        roster.add(WorkerSpec(name="scout"))

    full = Roster(workers=tuple(WorkerSpec(name=f"w-{index}") for index in range(MAX_WORKERS)))
    with pytest.raises(RosterError, match="Max 15 workers"):
        full.add(WorkerSpec(name="extra"))


def test_with_enabled_toggles_only_named_worker() -> None:
    roster = default_roster().with_enabled("pete", enabled=False)

    pete = roster.get("pete")
    maggie = roster.get("maggie")
    assert pete is not None
    assert maggie is not None
    assert pete.enabled is False
    assert maggie.enabled is True
    with pytest.raises(RosterError, match="Unknown worker"):
        roster.with_enabled("nobody", enabled=True)


def test_save_then_load_preserves_workers(tmp_path: Path) -> None:
    path = tmp_path / "roster.json"
    roster = default_roster().add(
        WorkerSpec(name="ledger", display_name="Ledger", keywords=("invoice", "billing")),
    )

    save_roster(path, roster)
    loaded = load_roster(path)

    assert loaded.names == roster.names
    ledger = loaded.get("ledger")
    assert ledger is not None
    assert ledger.keywords == ("invoice", "billing")
    assert ledger.routable_type == "invoice"


def test_missing_file_falls_back_to_default(tmp_path: Path) -> None:
    assert load_roster(tmp_path / "absent.json").names == default_roster().names
    assert load_roster(None).names == default_roster().names


def test_malformed_roster_files(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{oops", "utf-8")
    shapeless = tmp_path / "shapeless.json"
    shapeless.write_text(json.dumps({"workers": "scout"}), "utf-8")
    twice = tmp_path / "twice.json"
    twice.write_text(json.dumps({"workers": [{"name": "scout"}, {"name": "Scout"}]}), "utf-8")

    with pytest.raises(RosterError, match="not valid JSON"):
        load_roster(broken)
    with pytest.raises(RosterError, match="'workers' list"):
        load_roster(shapeless)
    with pytest.raises(RosterError, match="listed twice"):
        load_roster(twice)
