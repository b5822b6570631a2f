"""
Schema migrations for the local store, run through Alembic.

Revisions live in backend/alembic/versions and are numbered 0001, 0002, ...
so the applied revision doubles as the integer schema version. Alembic keeps
it in the schema_version table. Revisions only ever add; existing tables and
rows are never dropped or rewritten.
"""

import logging
from functools import lru_cache

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Connection

from perfwatch.core.config import settings
from perfwatch.core.exceptions import SchemaVersionError

logger = logging.getLogger(__name__)

VERSION_TABLE = "schema_version"


def alembic_config(connection: Connection | None = None) -> Config:
    """Programmatic Alembic config; env.py reuses `connection` when given."""
    config = Config()
    config.set_main_option("script_location", str(settings.ALEMBIC_SCRIPT_LOCATION))
    if connection is not None:
        config.attributes["connection"] = connection
    return config


@lru_cache(maxsize=1)
def script_directory() -> ScriptDirectory:
    return ScriptDirectory.from_config(alembic_config())


def revision_to_version(revision: str | None) -> int | str:
    if revision is None:
        return 0
    return int(revision) if revision.isdigit() else revision


def head_version() -> int:
    return revision_to_version(script_directory().get_current_head())


CURRENT_SCHEMA_VERSION = head_version()


def current_revision(conn: Connection) -> str | None:
    context = MigrationContext.configure(conn, opts={"version_table": VERSION_TABLE})
    return context.get_current_revision()


def get_schema_version(conn: Connection) -> int:
    """Applied schema version, 0 for a fresh database."""
    return revision_to_version(current_revision(conn))


def check_schema_version(conn: Connection) -> None:
    """
    Refuse a database stamped with a revision this build does not ship.

    Raises:
        SchemaVersionError: the database was written by a newer build
    """
    revision = current_revision(conn)
    if revision is None:
        return
    known = {script.revision for script in script_directory().walk_revisions()}
    if revision not in known:
        raise SchemaVersionError(revision_to_version(revision), CURRENT_SCHEMA_VERSION)


def run_migrations(conn: Connection, target: str = "head") -> int:
    """
    Upgrade the schema on an open connection.

    Runs inside the caller's transaction, so a failed upgrade leaves the
    database as it was.

    Returns:
        The schema version after the upgrade

    Raises:
        SchemaVersionError: the database was written by a newer build
    """
    check_schema_version(conn)
    command.upgrade(alembic_config(conn), target)
    return get_schema_version(conn)
