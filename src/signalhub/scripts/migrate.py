# src/signalhub/scripts/migrate.py
from __future__ import annotations

import os

from alembic import command
from alembic.config import Config

from signalhub.core.settings import settings

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", ".."))


def build_config(database_url: str | None = None) -> Config:
    """Return an Alembic config pointed at the project's migrations folder."""
    cfg = Config(os.path.join(PROJECT_ROOT, "migrations", "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(PROJECT_ROOT, "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url or settings.database_url_sync)
    return cfg


def run_upgrade_head(database_url: str | None = None) -> None:
    command.upgrade(build_config(database_url), "head")


if __name__ == "__main__":
    run_upgrade_head()
