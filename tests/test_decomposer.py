from __future__ import annotations

import json

import allure
import pytest
from conftest import ScriptedBackend

from task_relay.orchestrator.decomposer import (
    MAX_SUBTASKS,
    DecompositionError,
    Decomposer,
    is_workflow_request,
    parse_decomposition,
)
from task_relay.orchestrator.models import Task

pytestmark = [
    allure.epic("Task Routing"),
    allure.feature("Workflow Decomposition"),
]

KNOWN = frozenset({"scout", "maggie", "pete"})


def _steps(*entries: dict[str, object]) -> str:
    return json.dumps(list(entries))


def test_parse_decomposition_extracts_array_from_chatter() -> None:
    stdout = "Here is the plan:\n" + _steps(
        {"agent": "scout", "description": "research vendors"},
        {"agent": "Maggie", "description": "draft the summary email", "depends_on": 0},
    )

    subtasks = parse_decomposition(
        stdout,
        known_workers=KNOWN,
        parent_task_id="t-1",
        source_file="job.json",
    )

    assert [(s.index, s.agent, s.depends_on) for s in subtasks] == [
        (0, "scout", None),
        (1, "maggie", 0),
    ]
    assert all(s.parent_task_id == "t-1" and s.source_file == "job.json" for s in subtasks)


@pytest.mark.parametrize(
    ("stdout", "message"),
    [
        ("no json here", "no JSON array"),
        ("[", "no JSON array"),
        ("[1, 2,]", "malformed"),
        ("[]", "empty workflow"),
        (_steps(*[{"agent": "scout", "description": "x"}] * 6), "exceeds the limit"),
        (_steps({"agent": "ghost", "description": "x"}), "unknown agent"),
        (_steps({"agent": "scout", "description": "  "}), "no description"),
        (_steps({"agent": "scout", "description": "x", "depends_on": 0}), "not an earlier"),
        (
            _steps(
                {"agent": "scout", "description": "x"},
                {"agent": "pete", "description": "y", "depends_on": True},
            ),
            "not an earlier",
        ),
        (_steps("scout"), "not an object"),
    ],
)
def test_parse_decomposition_rejects_invalid_output(stdout: str, message: str) -> None:
    with pytest.raises(DecompositionError, match=message):
        parse_decomposition(stdout, known_workers=KNOWN)


def test_decompose_never_returns_more_than_max_subtasks() -> None:
    too_many = _steps(*[{"agent": "scout", "description": f"step {i}"} for i in range(6)])
    decomposer = Decomposer(backend=ScriptedBackend(too_many), vocabulary=dict.fromkeys(KNOWN, ""))

    assert decomposer.decompose(Task(description="big job")) is None

    exact = _steps(*[{"agent": "scout", "description": f"step {i}"} for i in range(5)])
    decomposer = Decomposer(backend=ScriptedBackend(exact), vocabulary=dict.fromkeys(KNOWN, ""))
    subtasks = decomposer.decompose(Task(id="p", description="big job"), source_file="a.json")

    assert subtasks is not None
    assert len(subtasks) == MAX_SUBTASKS


def test_decompose_failed_call_is_no_workflow() -> None:
    decomposer = Decomposer(backend=ScriptedBackend(), vocabulary={"scout": "research"})

    assert decomposer.decompose(Task(description="anything")) is None


def test_fallback_threshold_uses_description_length() -> None:
    decomposer = Decomposer(backend=None, vocabulary={}, min_description_chars=20)

    assert not decomposer.qualifies_as_fallback(Task(description="short"))
    assert decomposer.qualifies_as_fallback(Task(description="x" * 20))


def test_workflow_request_detection() -> None:
    assert is_workflow_request(Task(workflow=True))
    assert is_workflow_request(Task(type=" Workflow "))
    assert not is_workflow_request(Task(type="email"))
