"""Alembic migrations for the process snapshot store, shipped with the package."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

SCRIPT_LOCATION = "crew_control:migrations"


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head for the given SQLite database."""

    config = Config()
    config.set_main_option("script_location", SCRIPT_LOCATION)
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    command.upgrade(config, "head")
