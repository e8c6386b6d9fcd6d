from __future__ import annotations

import hashlib
from pathlib import Path

import allure
import pytest

from task_relay.orchestrator.deliverables import (
    TEXT_PREVIEW_CHARS,
    classify_extension,
    detect_deliverable,
    file_deliverable,
    text_deliverable,
)
from task_relay.orchestrator.models import DeliverableType

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Deliverable Detection"),
]


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("report.PDF", DeliverableType.PDF),
        ("memo.mp3", DeliverableType.AUDIO),
        ("demo.webm", DeliverableType.VIDEO),
        ("chart.png", DeliverableType.IMAGE),
        ("letter.docx", DeliverableType.DOCUMENT),
        ("notes.md", DeliverableType.DOCUMENT),
        ("archive.zip", DeliverableType.FILE),
        ("no-extension", DeliverableType.FILE),
    ],
)
def test_classify_extension(name: str, expected: DeliverableType) -> None:
    assert classify_extension(name) == expected


def test_file_deliverable_reads_size_checksum_and_mime(tmp_path: Path) -> None:
    data = b"col1,col2\n1,2\n"
    (tmp_path / "export.csv").write_bytes(data)

    deliverable = file_deliverable("export.csv", base_dir=tmp_path)

    assert deliverable is not None
    assert deliverable.type == DeliverableType.DOCUMENT
    assert deliverable.locator == "export.csv"
    assert deliverable.content_kind == "text/csv"
    assert deliverable.size_bytes == len(data)
    assert deliverable.checksum_sha256 == hashlib.sha256(data).hexdigest()


def test_unreachable_file_falls_back_to_text(tmp_path: Path) -> None:
    deliverable = detect_deliverable(
        output_file="/nowhere/on/this/host.pdf",
        result={"message": "Report generated"},
        base_dir=tmp_path,
    )

    assert deliverable is not None
    assert deliverable.type == DeliverableType.TEXT
    assert deliverable.preview == "Report generated"


def test_text_preview_is_bounded() -> None:
    deliverable = text_deliverable("x" * (TEXT_PREVIEW_CHARS + 200))

    assert deliverable is not None
    assert len(deliverable.preview or "") == TEXT_PREVIEW_CHARS
    assert deliverable.size_bytes == TEXT_PREVIEW_CHARS + 200


def test_no_deliverable_without_file_or_text() -> None:
    assert detect_deliverable(output_file=None, result={"rows": 3}) is None
    assert detect_deliverable(output_file=None, result="   ") is None
