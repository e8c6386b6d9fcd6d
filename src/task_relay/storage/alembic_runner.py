"""Programmatic Alembic entry points for the task store."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

# src/task_relay/storage -> the checkout root holding alembic.ini and alembic/.
PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path | None = None) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    if db_path is not None:
        config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str | None:
    """Newest revision shipped in ``alembic/versions``."""

    return ScriptDirectory.from_config(alembic_config()).get_current_head()


def upgrade_head(db_path: Path) -> None:
    """Bring the store at ``db_path`` to the newest schema revision."""

    logger.debug("Upgrading task store schema at %s", db_path)
    command.upgrade(alembic_config(db_path), "head")
