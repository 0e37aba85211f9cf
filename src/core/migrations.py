"""Database migration utilities."""

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text

from src.database import get_engine
from src.logging_config import get_logger

logger = get_logger(__name__)


def get_alembic_config(database_url: str | None = None) -> Config:
    """Get Alembic configuration.

    Args:
        database_url: Overrides the URL otherwise taken from settings.
    """
    # Find the alembic.ini file relative to the app root
    app_root = Path(__file__).parent.parent.parent
    alembic_ini = app_root / "alembic.ini"

    if not alembic_ini.exists():
        raise FileNotFoundError(f"alembic.ini not found at {alembic_ini}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(app_root / "migrations"))
    if database_url:
        config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))

    return config


def run_migrations(database_url: str | None = None) -> None:
    """
    Run all pending database migrations synchronously.

    The migration environment drives the async engine with its own event
    loop, so call this from a thread (or a process) with no running loop.
    """
    logger.info("Running database migrations...")

    try:
        config = get_alembic_config(database_url)
        command.upgrade(config, "head")
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error("Database migration failed", error=str(e))
        raise


def get_head_revision() -> str | None:
    """Get the newest revision shipped with the code."""
    script = ScriptDirectory.from_config(get_alembic_config())
    return script.get_current_head()


async def get_database_revision() -> str | None:
    """Get the revision the database is stamped with, if any."""
    try:
        async with get_engine().connect() as conn:
            result = await conn.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1")
            )
            row = result.fetchone()
            return row[0] if row is not None else None
    except Exception as e:
        logger.warning("Could not read database revision", error=str(e))
        return None


async def check_migrations_current() -> bool:
    """
    Check if all migrations have been applied.

    Returns:
        True if database is at latest migration, False otherwise.
    """
    current = await get_database_revision()
    return current is not None and current == get_head_revision()


if __name__ == "__main__":
    from src.config import settings
    from src.logging_config import setup_logging

    setup_logging(
        log_format=settings.log_format,
        log_level=settings.log_level,
        service_name=settings.service_name,
    )
    run_migrations()
