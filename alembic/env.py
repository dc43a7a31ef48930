# alembic/env.py
import os
import sys
from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context

# project root on sys.path so `docembed` imports work when alembic runs from a checkout
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from docembed.config import settings  # noqa: E402
from docembed.models import Base  # noqa: E402

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _get_db_url() -> str:
    """DATABASE_URL from the environment wins over the settings default."""
    return os.environ.get("DATABASE_URL") or settings.database_url


def _to_sync_url(async_url: str) -> str:
    """
    Alembic runs synchronously: swap the async driver for its sync counterpart
    (asyncpg -> psycopg2, aiosqlite -> pysqlite).
    """
    return async_url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


if not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", _to_sync_url(_get_db_url()))


def run_migrations_offline():
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = create_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
