import logging
from logging.config import fileConfig
import os
import importlib
import pkgutil
from pathlib import Path

from flask import current_app
from alembic import context

# Alembic Config object (reads migrations/alembic.ini)
config = context.config


def _init_logging():
    ini = config.config_file_name
    if ini and Path(ini).exists():
        fileConfig(ini)
        return
    logging.basicConfig(level=logging.INFO)

_init_logging()
logger = logging.getLogger("alembic.env")


def get_engine():
    return current_app.extensions["migrate"].db.engine


def get_engine_url():
    return get_engine().url.render_as_string(hide_password=False).replace("%", "%%")


# Alembic needs a URL in offline mode
config.set_main_option("sqlalchemy.url", get_engine_url())
target_db = current_app.extensions["migrate"].db


def _autoload_models():
    """Import every module in app.models so autogenerate sees all billing tables."""
    import app.models as models_pkg
    for m in pkgutil.iter_modules(models_pkg.__path__):
        importlib.import_module(f"app.models.{m.name}")
    logger.info("Auto-loaded models from app.models/*")


# Audit and payment tables are append-only; autogenerate must never propose dropping them
_PROTECTED_TABLES = {"payment_transactions", "billing_events"}
_DROP_ALLOWLIST = {
    name.strip()
    for name in os.getenv("ALEMBIC_DROP_ALLOWLIST", "").split(",")
    if name.strip()
}


def _include_object(object, name, type_, reflected, compare_to):
    if not (reflected and compare_to is None):
        return True
    if name in _DROP_ALLOWLIST:
        return True
    if type_ == "table" and name in _PROTECTED_TABLES:
        logger.warning("Refusing to autogenerate DROP TABLE %s", name)
        return False
    if type_ == "index":
        return False
    return True


def _configure_kwargs(dialect_name: str) -> dict:
    return {
        "target_metadata": target_db.metadata,
        "compare_type": True,
        "compare_server_default": True,
        "include_object": _include_object,
        # SQLite cannot ALTER constraints in place
        "render_as_batch": dialect_name == "sqlite",
    }


def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    _autoload_models()
    context.configure(url=url, literal_binds=True, **_configure_kwargs(get_engine().dialect.name))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    def process_revision_directives(context_, revision, directives):
        if getattr(config.cmd_opts, "autogenerate", False):
            script = directives[0]
            if script.upgrade_ops.is_empty():
                directives[:] = []
                logger.info("No changes in schema detected.")

    conf_args = dict(current_app.extensions["migrate"].configure_args)
    conf_args.setdefault("process_revision_directives", process_revision_directives)

    _autoload_models()
    connectable = get_engine()
    with connectable.connect() as connection:
        context.configure(connection=connection, **{**conf_args, **_configure_kwargs(connection.dialect.name)})
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
