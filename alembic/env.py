import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool, create_engine

from marketplace.core.config import settings
from marketplace.db.session import Base

# Import all models so Alembic sees them in metadata
from marketplace.models.user import User  # noqa: F401
from marketplace.models.vendor import Vendor  # noqa: F401
from marketplace.models.product import Product  # noqa: F401
from marketplace.models.order import Order, OrderItem  # noqa: F401
from marketplace.models.reservation import Reservation  # noqa: F401
from marketplace.models.payment import Payment  # noqa: F401
from marketplace.models.setting import Setting  # noqa: F401
from marketplace.models.audit_log import AuditLog  # noqa: F401


config = context.config

# Always migrate the database the app itself talks to
db_url = getattr(settings, "DATABASE_URL", None) or os.getenv("DATABASE_URL")
if not db_url:
    raise RuntimeError("DATABASE_URL is not set (check .env / marketplace.core.config.settings)")

config.set_main_option("sqlalchemy.url", db_url)

if config.config_file_name is not None and os.path.exists(config.config_file_name):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    # create_engine rather than engine_from_config: the URL comes from settings, not the ini file.
    connectable = create_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
