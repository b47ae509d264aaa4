"""Versioned SQL migrations in the dbmate file format.

A migration is a file named ``<version>_<name>.sql``::

    -- migrate:up
    CREATE TABLE users (id integer primary key, name text);

    -- migrate:down
    DROP TABLE users;

Appending ``transaction:false`` to a block marker runs that block outside a
transaction. Applied versions are kept in the ``schema_migrations`` table.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set, Tuple
import logging
import re

from sqlalchemy import Connection, Engine, create_engine, text
from sqlalchemy.engine import URL

from .db_utils import MigrationError, driver_message, fix_query
from .engine import new_engine

logger = logging.getLogger(__name__)

_FILENAME = re.compile(r"^(\d+)_?(.*)\.sql$")
_MARKER = re.compile(r"^--\s*migrate:(up|down)(.*)$", re.MULTILINE)

SCHEMA_TABLE = "schema_migrations"


@dataclass
class Migration:
    version: str
    name: str
    path: Path
    up: str
    down: str = ""
    up_transaction: bool = True
    down_transaction: bool = True

    @property
    def filename(self) -> str:
        return self.path.name


def _transaction_option(options: str) -> bool:
    for option in options.split():
        key, _, value = option.partition(":")
        if key == "transaction":
            return value.lower() != "false"
    return True


def parse_migration(path: Path) -> Migration:
    """Load a migration file.

    Args:
        path: Path to ``<version>_<name>.sql``

    Returns:
        Migration with its up and down blocks

    Raises:
        MigrationError: If the name has no version or the file has no up block
    """
    match = _FILENAME.match(path.name)
    if not match:
        raise MigrationError(f"Invalid migration filename: {path.name}")

    content = path.read_text(encoding="utf-8")
    markers = list(_MARKER.finditer(content))
    blocks = {}
    for i, marker in enumerate(markers):
        end = markers[i + 1].start() if i + 1 < len(markers) else len(content)
        blocks[marker.group(1)] = (content[marker.end():end].strip(), _transaction_option(marker.group(2)))

    if "up" not in blocks:
        raise MigrationError(f"{path.name}: migration must define an up block with '-- migrate:up'")

    up, up_tx = blocks["up"]
    down, down_tx = blocks.get("down", ("", True))
    return Migration(
        version=match.group(1),
        name=match.group(2),
        path=path,
        up=up,
        down=down,
        up_transaction=up_tx,
        down_transaction=down_tx,
    )


def find_migrations(directory: Path | str) -> List[Migration]:
    """Load every migration in a directory, ordered by version.

    Raises:
        MigrationError: If the directory is missing or two files share a version
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise MigrationError(f"could not find migrations directory `{directory}`")

    migrations = [parse_migration(p) for p in directory.iterdir() if _FILENAME.match(p.name)]
    migrations.sort(key=lambda m: int(m.version))
    seen: Set[str] = set()
    for m in migrations:
        if m.version in seen:
            raise MigrationError(f"Duplicate migration version: {m.version}")
        seen.add(m.version)
    return migrations


def split_statements(sql: str) -> List[str]:
    """Split a SQL script on ``;`` outside quotes and comments.

    Chunks holding only whitespace or comments are dropped.
    """
    statements = []
    current: List[str] = []
    has_code = False
    quote: Optional[str] = None
    i = 0
    while i < len(sql):
        ch = sql[i]
        if quote:
            current.append(ch)
            if ch == quote:
                # doubled quote is an escaped quote
                if i + 1 < len(sql) and sql[i + 1] == quote:
                    current.append(sql[i + 1])
                    i += 1
                else:
                    quote = None
        elif sql.startswith("--", i):
            end = sql.find("\n", i)
            end = len(sql) if end == -1 else end
            current.append(sql[i:end])
            i = end
            continue
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            end = len(sql) if end == -1 else end + 2
            current.append(sql[i:end])
            i = end
            continue
        elif ch in ("'", '"', "`"):
            quote = ch
            has_code = True
            current.append(ch)
        elif ch == ";":
            if has_code:
                statements.append("".join(current).strip())
            current = []
            has_code = False
        else:
            current.append(ch)
            if not ch.isspace():
                has_code = True
        i += 1
    if has_code:
        statements.append("".join(current).strip())
    return statements


def _execute_script(conn: Connection, sql: str) -> None:
    for statement in split_statements(sql):
        query, params = fix_query(statement)
        conn.execute(text(query), params)


def create_database(url: URL) -> None:
    """Create the target database when it does not exist yet."""
    backend = url.get_backend_name()
    if backend == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return

    name = url.database
    if not name:
        raise MigrationError("Database name is not defined in URL")

    if backend == "mysql":
        server = create_engine(url.set(database=None))
        try:
            with server.begin() as conn:
                conn.execute(text(f"CREATE DATABASE IF NOT EXISTS `{name}`"))
        finally:
            server.dispose()
    elif backend == "postgresql":
        server = create_engine(url.set(database="postgres"), isolation_level="AUTOCOMMIT")
        try:
            with server.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": name}
                ).scalar()
                if not exists:
                    quoted = name.replace('"', '""')
                    conn.execute(text(f'CREATE DATABASE "{quoted}"'))
        finally:
            server.dispose()
    else:
        raise MigrationError(f"Unsupported database backend: {backend}")


class MigrationRunner:
    """Applies and rolls back migrations from one directory."""

    def __init__(self, engine: Engine, directory: Path | str):
        self.engine = engine
        self.directory = Path(directory)

    def _ensure_schema_table(self, conn: Connection) -> None:
        conn.execute(text(
            f"CREATE TABLE IF NOT EXISTS {SCHEMA_TABLE} (version varchar(128) primary key)"
        ))

    def applied_versions(self) -> Set[str]:
        with self.engine.begin() as conn:
            self._ensure_schema_table(conn)
            rows = conn.execute(text(f"SELECT version FROM {SCHEMA_TABLE}")).all()
        return {str(r[0]) for r in rows}

    def status(self) -> List[Tuple[Migration, bool]]:
        applied = self.applied_versions()
        return [(m, m.version in applied) for m in find_migrations(self.directory)]

    def pending(self) -> List[Migration]:
        return [m for m, applied in self.status() if not applied]

    def _autocommit(self) -> Connection:
        return self.engine.connect().execution_options(isolation_level="AUTOCOMMIT")

    def _run(self, migration: Migration, sql: str, use_tx: bool, record) -> None:
        try:
            if not use_tx:
                with self._autocommit() as conn:
                    _execute_script(conn, sql)
                    record(conn)
            else:
                with self.engine.begin() as conn:
                    _execute_script(conn, sql)
                    record(conn)
        except MigrationError:
            raise
        except Exception as e:
            raise MigrationError(f"{migration.filename}: {driver_message(e)}") from e

    def migrate(self) -> List[Migration]:
        """Apply every pending migration in version order.

        Returns:
            The migrations that were applied
        """
        applied = []
        for migration in self.pending():
            logger.info("Applying: %s", migration.filename)
            self._run(
                migration,
                migration.up,
                migration.up_transaction,
                lambda conn, v=migration.version: conn.execute(
                    text(f"INSERT INTO {SCHEMA_TABLE} (version) VALUES (:version)"), {"version": v}
                ),
            )
            applied.append(migration)
        return applied

    def rollback(self) -> Optional[Migration]:
        """Roll back the most recently applied migration.

        Returns:
            The rolled back migration, or None when nothing is applied

        Raises:
            MigrationError: If the applied version has no file
        """
        applied = self.applied_versions()
        if not applied:
            return None
        latest = max(applied, key=int)
        by_version = {m.version: m for m in find_migrations(self.directory)}
        migration = by_version.get(latest)
        if migration is None:
            raise MigrationError(f"Can't find migration file: {latest}")

        logger.info("Rolling back: %s", migration.filename)
        self._run(
            migration,
            migration.down,
            migration.down_transaction,
            lambda conn: conn.execute(
                text(f"DELETE FROM {SCHEMA_TABLE} WHERE version = :version"), {"version": latest}
            ),
        )
        return migration


def create_and_migrate(url: URL, directory: Path | str) -> List[Migration]:
    """Create the database if needed, then apply pending migrations."""
    create_database(url)
    engine = new_engine(url)
    try:
        return MigrationRunner(engine, directory).migrate()
    finally:
        engine.dispose()
