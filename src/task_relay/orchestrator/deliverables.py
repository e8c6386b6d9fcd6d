"""Deliverable detection for worker results."""

from __future__ import annotations

import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import Any

from task_relay.orchestrator.models import Deliverable, DeliverableType

logger = logging.getLogger(__name__)

TEXT_PREVIEW_CHARS = 500

_EXTENSION_TYPES: dict[str, DeliverableType] = {
    ".pdf": DeliverableType.PDF,
    **dict.fromkeys(
        (".mp3", ".wav", ".m4a", ".ogg", ".flac", ".aac", ".opus"),
        DeliverableType.AUDIO,
    ),
    **dict.fromkeys((".mp4", ".mov", ".webm", ".mkv", ".avi", ".m4v"), DeliverableType.VIDEO),
    **dict.fromkeys(
        (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".bmp", ".tiff"),
        DeliverableType.IMAGE,
    ),
    **dict.fromkeys(
        (
            ".doc",
            ".docx",
            ".odt",
            ".rtf",
            ".txt",
            ".md",
            ".html",
            ".htm",
            ".csv",
            ".xls",
            ".xlsx",
            ".ppt",
            ".pptx",
        ),
        DeliverableType.DOCUMENT,
    ),
}


def classify_extension(path: str) -> DeliverableType:
    return _EXTENSION_TYPES.get(Path(path).suffix.lower(), DeliverableType.FILE)


def file_deliverable(locator: str, *, base_dir: Path | None = None) -> Deliverable | None:
    """Describe the output file, or ``None`` when it cannot be read from here."""

    path = Path(locator)
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    digest = hashlib.sha256()
    size = 0
    try:
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(65536), b""):
                digest.update(chunk)
                size += len(chunk)
    except OSError as error:
        logger.info("Output file not readable, deliverable omitted: %s (%s)", locator, error)
        return None

    content_kind, _ = mimetypes.guess_type(path.name)
    return Deliverable(
        type=classify_extension(path.name),
        locator=locator,
        content_kind=content_kind or "application/octet-stream",
        size_bytes=size,
        checksum_sha256=digest.hexdigest(),
    )


def text_deliverable(result: Any) -> Deliverable | None:
    """Bounded text preview of an inline result."""

    text = _inline_text(result)
    if not text:
        return None
    return Deliverable(
        type=DeliverableType.TEXT,
        locator=None,
        content_kind="text/plain",
        size_bytes=len(text.encode("utf-8")),
        preview=text[:TEXT_PREVIEW_CHARS],
    )


def detect_deliverable(
    *,
    output_file: str | None,
    result: Any,
    base_dir: Path | None = None,
) -> Deliverable | None:
    if output_file:
        deliverable = file_deliverable(output_file, base_dir=base_dir)
        if deliverable is not None:
            return deliverable
    return text_deliverable(result)


def _inline_text(result: Any) -> str | None:
    if isinstance(result, str):
        return result.strip() or None
    if isinstance(result, dict):
        for key in ("text", "summary", "message", "content"):
            value = result.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None
