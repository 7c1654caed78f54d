import importlib
import logging
import pkgutil
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from flask import current_app

config = context.config

if config.config_file_name and Path(config.config_file_name).exists():
    fileConfig(config.config_file_name)
else:
    logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("alembic.env")

# Partial unique indexes reflect without their WHERE clause on some backends;
# autogenerate must never propose dropping or recreating them.
PROTECTED_INDEXES = {
    "uq_subscriptions_org_live",
    "uq_payment_methods_org_default",
}


def get_engine():
    return current_app.extensions["migrate"].db.engine


def get_engine_url():
    return get_engine().url.render_as_string(hide_password=False).replace("%", "%%")


config.set_main_option("sqlalchemy.url", get_engine_url())
target_db = current_app.extensions["migrate"].db


def get_metadata():
    if hasattr(target_db, "metadatas"):
        return target_db.metadatas[None]
    return target_db.metadata


def _load_models():
    # Every billing_engine.models module must be imported before metadata is compared
    import billing_engine.models as models_pkg

    for mod in pkgutil.iter_modules(models_pkg.__path__):
        importlib.import_module(f"billing_engine.models.{mod.name}")


def _include_object(obj, name, type_, reflected, compare_to):
    return not (type_ == "index" and name in PROTECTED_INDEXES)


def _common_options():
    return {
        "target_metadata": get_metadata(),
        "compare_type": True,
        "compare_server_default": True,
        "include_object": _include_object,
    }


def run_migrations_offline():
    _load_models()
    context.configure(url=config.get_main_option("sqlalchemy.url"), literal_binds=True, **_common_options())
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    def process_revision_directives(context_, revision, directives):
        # No empty revision files
        if getattr(config.cmd_opts, "autogenerate", False) and directives[0].upgrade_ops.is_empty():
            directives[:] = []
            logger.info("No changes in schema detected.")

    _load_models()
    engine = get_engine()
    conf_args = dict(current_app.extensions["migrate"].configure_args)
    conf_args.setdefault("process_revision_directives", process_revision_directives)
    conf_args.update(_common_options())
    # SQLite cannot ALTER constraints in place
    conf_args["render_as_batch"] = engine.dialect.name == "sqlite"

    with engine.connect() as connection:
        context.configure(connection=connection, **conf_args)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
