"""sqlhelper library.

One interface over MySQL, PostgreSQL and SQLite: connection handling,
transactions, record-based CRUD statements, migrations and SQL debug logging.
Switch engines by changing the connection URL.
"""

# Connection utilities
from .db import (
    DATABASE_URL,
    MIGRATIONS_DIR,
    parse_url,
    sqlalchemy_url,
    open_db,
    connect,
    get_engine,
    close_engine,
    lifespan,
)

# Exceptions
from .db_utils import (
    DatabaseError,
    NotFoundError,
    ValidationError,
    UrlError,
    MigrationError,
)

# Decorators
from .db_utils import db_error

# SQL builders
from .db_utils import (
    fix_query,
    insert_row_sql,
    update_row_sql,
    query_row_by_id_sql,
    row_exists_sql,
    delete_row_by_id_sql,
    scans,
    format_log,
    log_query,
)

# Handles
from .engine import (
    DBMethods,
    MySQL,
    PostgreSQL,
    SQLite,
    Tx,
    new_engine,
    Row,
    Rows,
    Prepared,
    Statement,
    ExecResult,
)

# Migrations
from .migrate import Migration, MigrationRunner, create_and_migrate

__all__ = [
    # Connection
    "DATABASE_URL",
    "MIGRATIONS_DIR",
    "parse_url",
    "sqlalchemy_url",
    "open_db",
    "connect",
    "get_engine",
    "close_engine",
    "lifespan",
    # Exceptions
    "DatabaseError",
    "NotFoundError",
    "ValidationError",
    "UrlError",
    "MigrationError",
    # Decorators
    "db_error",
    # SQL builders
    "fix_query",
    "insert_row_sql",
    "update_row_sql",
    "query_row_by_id_sql",
    "row_exists_sql",
    "delete_row_by_id_sql",
    "scans",
    "format_log",
    "log_query",
    # Handles
    "DBMethods",
    "MySQL",
    "PostgreSQL",
    "SQLite",
    "Tx",
    "new_engine",
    "Row",
    "Rows",
    "Prepared",
    "Statement",
    "ExecResult",
    # Migrations
    "Migration",
    "MigrationRunner",
    "create_and_migrate",
]
