"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory


def upgrade_head(database_url: str) -> None:
    """Apply Alembic migrations up to head for the given database URL."""

    command.upgrade(_alembic_config(database_url), "head")


def current_head() -> str | None:
    """Return the head revision shipped with the package."""

    script = ScriptDirectory.from_config(_alembic_config("sqlite://"))
    return script.get_current_head()


def _alembic_config(database_url: str) -> Config:
    root_dir = Path(__file__).resolve().parents[3]
    alembic_ini = root_dir / "alembic.ini"
    alembic_dir = root_dir / "alembic"

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(alembic_dir))
    # ConfigParser interpolation treats "%" specially (URL-encoded passwords).
    config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    return config
