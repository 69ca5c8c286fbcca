from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool, text
from alembic import context
import os
import sys

# Add project root to sys.path so 'tiered_approvals' package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Import all models so Base.metadata is populated
import tiered_approvals.models  # noqa: F401
from tiered_approvals.config import settings
from tiered_approvals.database import Base

config = context.config
database_url = settings.migration_database_url or config.get_main_option("sqlalchemy.url")
config.set_main_option("sqlalchemy.url", database_url)
if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs):
    # Leave tables without a model here alone in autogenerate
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        include_name=lambda name, type_, parent: type_ != "table" or name in target_metadata.tables,
        **kwargs,
    )


def run_migrations_offline():
    _configure(url=database_url, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        # gen_random_uuid() for primary keys
        connection.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))
        connection.commit()
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
