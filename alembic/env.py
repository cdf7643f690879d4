import os
import sys
from logging.config import fileConfig

from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context

# Make the cloudaudit package importable when alembic runs from the repo root
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Import Base and all models to ensure metadata is populated
from cloudaudit.core.database import Base
from cloudaudit.models import InspectionItemResult  # noqa: F401

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# Set target_metadata for autogenerate support
target_metadata = Base.metadata


def get_database_url() -> str:
    """Database URL from settings, which honour DATABASE_URL and its postgres:// form."""
    from cloudaudit.core.config import get_settings

    database_url = get_settings().sqlalchemy_database_uri
    # Managed PostgreSQL requires SSL
    if database_url.startswith("postgresql") and "sslmode" not in database_url:
        separator = "&" if "?" in database_url else "?"
        database_url = f"{database_url}{separator}sslmode=require"
    return database_url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Configures the context with just a URL, so no DBAPI is needed;
    context.execute() emits SQL to the script output.
    """
    url = get_database_url() if os.getenv("DATABASE_URL") else config.get_main_option("sqlalchemy.url")

    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against a live connection."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_database_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
