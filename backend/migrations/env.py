import os
from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context

# load .env if present
from dotenv import load_dotenv

load_dotenv()

config = context.config

# prefer env var over ini, then the application settings
db_url = os.getenv("DATABASE_URL")
if not db_url:
    from lotline.core.config import settings
    db_url = settings.database_url
config.set_main_option("sqlalchemy.url", db_url)

# logging config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from lotline.db.base import Base  # noqa: E402
import lotline.models  # noqa: E402,F401

target_metadata = Base.metadata


def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
