import logging
import os
from logging.config import fileConfig

from flask import current_app
from alembic import context

config = context.config
if config.config_file_name and os.path.exists(config.config_file_name):
    fileConfig(config.config_file_name)
logger = logging.getLogger("alembic.env")

# Importing the package registers every billing table on db.metadata
import billing_sync.models  # noqa: E402,F401

target_db = current_app.extensions["migrate"].db

# Indexes that exist only in the database (hand-made for ops dashboards) are kept
# unless named here, e.g. ALEMBIC_DROP_INDEX_ALLOWLIST=ix_old_a,ix_old_b
_DROP_INDEX_ALLOWLIST = {n.strip() for n in os.getenv("ALEMBIC_DROP_INDEX_ALLOWLIST", "").split(",") if n.strip()}


def _engine_url() -> str:
    return target_db.engine.url.render_as_string(hide_password=False).replace("%", "%%")


def _include_object(obj, name, type_, reflected, compare_to):
    if type_ == "index" and reflected and compare_to is None:
        return name in _DROP_INDEX_ALLOWLIST
    return True


def _configure_args(url: str) -> dict:
    return {
        "target_metadata": target_db.metadata,
        "compare_type": True,
        "compare_server_default": True,
        "include_object": _include_object,
        # SQLite (dev/tests) cannot ALTER most constraints in place
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline():
    url = _engine_url()
    context.configure(url=url, literal_binds=True, **_configure_args(url))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    def process_revision_directives(context_, revision, directives):
        if getattr(config.cmd_opts, "autogenerate", False) and directives[0].upgrade_ops.is_empty():
            directives[:] = []
            logger.info("No changes in schema detected.")

    conf_args = dict(current_app.extensions["migrate"].configure_args)
    conf_args.setdefault("process_revision_directives", process_revision_directives)
    conf_args.update(_configure_args(_engine_url()))

    with target_db.engine.connect() as connection:
        context.configure(connection=connection, **conf_args)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
