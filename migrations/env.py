from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from api.database import is_sqlite_url
from api.database import metadata as target_metadata
from config import DATABASE_URL

config = context.config

# The URL always comes from VOTELY_DATABASE_URL, never from alembic.ini
config.set_main_option("sqlalchemy.url", DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _configure_options(url: str) -> dict:
    # SQLite can't ALTER most things in place; batch mode rebuilds the table instead
    return {
        "target_metadata": target_metadata,
        "render_as_batch": is_sqlite_url(url),
        "compare_type": True,
    }


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of running it ('alembic upgrade head --sql')."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        url = config.get_main_option("sqlalchemy.url")
        context.configure(connection=connection, **_configure_options(url))

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
