"""
Alembic environment for the dataflow schema (pipelines, executions,
datasets, lineage, imports and async jobs).

The database URL always comes from core.config settings, never from
alembic.ini, so migrations target the same database as the API.
"""

import asyncio
from logging.config import fileConfig
from alembic import context

from core.config import settings
from core.database import build_engine
from models import Base  # registers every table on Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs):
    # compare_type catches enum and numeric column changes
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline():
    """Emit SQL to stdout instead of connecting"""
    _configure(url=settings.DATABASE_URL, literal_binds=True)


async def run_migrations_online():
    engine = build_engine()
    async with engine.connect() as connection:
        await connection.run_sync(lambda conn: _configure(connection=conn))
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
