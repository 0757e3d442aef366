from logging.config import fileConfig
from alembic import context
from sqlalchemy import create_engine, pool
import os

from livecast.core.config import configs
from livecast.models.orm.base import Base

# registers live_streams, recorded_streams, user_profiles on Base.metadata
from livecast.models.orm import (  # noqa: F401
    UserProfile,
    LiveStream,
    RecordedStream,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# async driver -> sync driver Alembic can use
SYNC_DRIVERS = {
    "postgresql+asyncpg://": "postgresql+psycopg2://",
    "postgresql://": "postgresql+psycopg2://",
    "sqlite+aiosqlite://": "sqlite://",
}


def get_url() -> str:
    database_url = os.getenv("DATABASE_URL") or configs.DATABASE_URI
    if not database_url:
        raise ValueError("DATABASE_URL is not set")

    for prefix, replacement in SYNC_DRIVERS.items():
        if database_url.startswith(prefix):
            return replacement + database_url[len(prefix):]
    return database_url


def configure(database_url: str, **kwargs):
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # sqlite cannot ALTER most columns in place
        render_as_batch=database_url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline():
    """Emit SQL to stdout instead of running against a database."""
    url = get_url()
    configure(url, url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    url = get_url()
    connectable = create_engine(url, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        configure(url, connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
