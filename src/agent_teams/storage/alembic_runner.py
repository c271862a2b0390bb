"""Programmatic Alembic upgrades for the team database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path, *, project_root: Path = PROJECT_ROOT) -> Config:
    """Alembic config bound to `db_path`, with scripts from the project's `alembic/` dir."""

    config = Config(str(project_root / "alembic.ini"))
    config.set_main_option("script_location", str(project_root / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    logger.debug("Upgrading team database %s to head", db_path)
    command.upgrade(migration_config(db_path), "head")
