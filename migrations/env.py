import logging
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from flask import current_app

config = context.config
if config.config_file_name and Path(config.config_file_name).exists():
    fileConfig(config.config_file_name)
logger = logging.getLogger("alembic.env")

# Flask-Migrate hands us the app's db; the models package registers every table on import
migrate_ext = current_app.extensions["migrate"]
import tenantbill.models  # noqa: E402,F401

target_metadata = migrate_ext.db.metadata
engine = migrate_ext.db.engine
config.set_main_option("sqlalchemy.url", engine.url.render_as_string(hide_password=False).replace("%", "%%"))


def _skip_db_only_indexes(obj, name, type_, reflected, compare_to):
    # Hand-made indexes (e.g. partial indexes added in ops) are never dropped by autogenerate
    return not (type_ == "index" and reflected and compare_to is None)


def _no_empty_revisions(ctx, revision, directives):
    if getattr(config.cmd_opts, "autogenerate", False) and directives[0].upgrade_ops.is_empty():
        directives[:] = []
        logger.info("No schema changes detected; no revision written.")


def run_offline():
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        include_object=_skip_db_only_indexes,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online():
    options = dict(migrate_ext.configure_args)
    options.setdefault("process_revision_directives", _no_empty_revisions)
    options.update(
        target_metadata=target_metadata,
        compare_type=True,
        include_object=_skip_db_only_indexes,
        # SQLite needs batch mode for ALTER
        render_as_batch=engine.dialect.name == "sqlite",
    )
    with engine.connect() as connection:
        context.configure(connection=connection, **options)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
