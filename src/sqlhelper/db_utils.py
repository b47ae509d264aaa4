"""Database utility functions for sqlhelper.

This module provides the error hierarchy, the record-to-SQL builders and the
SQL debug log format. Nothing here touches a connection, so everything can be
used (and tested) without a database.
"""
from typing import Any, Dict, List, Optional, Sequence, Tuple
import functools
import logging
import re
import time

from sqlmodel import SQLModel

logger = logging.getLogger(__name__)

_SQL_PARAM = re.compile(r"\$(\d+)")
_BARE_BIND = re.compile(r"(?<![:\w\\]):(?=\w)")
_LOG_SPACES_ALL = re.compile(r"\s+")
_LOG_SPACES_END = re.compile(r"\s+;$")


class DatabaseError(Exception):
    """Base exception for database operations."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(DatabaseError):
    """Raised when a requested row is not found."""
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class ValidationError(DatabaseError):
    """Raised when a record or query argument is invalid."""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class UrlError(DatabaseError):
    """Raised when a connection URL is malformed or unsupported."""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class MigrationError(DatabaseError):
    """Raised when a migration cannot be loaded or applied."""


def driver_message(exc: BaseException) -> str:
    """Return the driver's own error text, without SQLAlchemy's decoration."""
    orig = getattr(exc, "orig", None)
    if orig is not None:
        return str(orig)
    return str(exc)


def db_error(func):
    """Decorator to wrap database errors."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(driver_message(e)) from e
    return wrapper


def current_unix_timestamp() -> int:
    return int(time.time())


def _model_class(record: Any) -> type:
    cls = record if isinstance(record, type) else type(record)
    if not issubclass(cls, SQLModel):
        raise ValidationError(f"{cls.__name__} is not a SQLModel class")
    return cls


def table_name(record: Any) -> str:
    """Return the table a record maps to.

    Args:
        record: Model class or instance

    Returns:
        Value of the class attribute ``__tablename__``

    Raises:
        ValidationError: If the record does not name a table
    """
    cls = _model_class(record)
    table = getattr(cls, "__tablename__", None)
    if not isinstance(table, str) or not table:
        raise ValidationError(f"Table name not defined on {cls.__name__}")
    return table


def record_fields(record: Any) -> List[str]:
    """All model fields in declaration order."""
    return list(_model_class(record).model_fields)


def record_columns(record: Any) -> List[str]:
    """Model fields that map to columns (fields declared with exclude=True are skipped)."""
    fields = _model_class(record).model_fields
    return [name for name, info in fields.items() if not info.exclude]


def fix_query(query: str, args: Sequence[Any] = ()) -> Tuple[str, Dict[str, Any]]:
    """Translate a ``$N`` query into a SQLAlchemy text query.

    Each ``$N`` becomes the bind ``:pN`` so the dialect renders its own
    paramstyle. Placeholders may appear in any order and more than once.
    Other ``:name`` sequences are escaped so they reach the driver verbatim.

    Args:
        query: SQL with ``$1``, ``$2``... placeholders
        args: Positional arguments for the placeholders

    Returns:
        Tuple of (rewritten query, bind parameter dict)

    Raises:
        ValidationError: If placeholders and arguments don't line up
    """
    positions = {int(n) for n in _SQL_PARAM.findall(query)}
    expected = set(range(1, len(args) + 1))
    if positions - expected:
        raise ValidationError(f"Query expects {max(positions)} arguments, got {len(args)}")
    missing = sorted(expected - positions)
    if missing:
        names = ", ".join(f"${n}" for n in missing)
        raise ValidationError(f"Query has no placeholder for argument {names}")

    escaped = _BARE_BIND.sub(r"\\:", query)
    fixed = _SQL_PARAM.sub(lambda m: f":p{m.group(1)}", escaped)
    params = {f"p{i}": value for i, value in enumerate(args, start=1)}
    return fixed, params


def insert_row_sql(record: Any) -> Tuple[str, List[Any]]:
    """Build an INSERT statement from a record instance.

    The ``id`` column is left to the database. ``created_at`` and
    ``updated_at`` are stamped with the current unix timestamp.

    Args:
        record: Model instance

    Returns:
        Tuple of (SQL with ``$N`` placeholders, arguments)
    """
    table = table_name(record)
    now = current_unix_timestamp()
    fields = []
    values = []
    args = []
    for name in record_columns(record):
        if name == "id":
            continue
        fields.append(name)
        values.append(f"${len(values) + 1}")
        if name in ("created_at", "updated_at"):
            args.append(now)
        else:
            args.append(getattr(record, name))
    if not fields:
        raise ValidationError(f"No columns to insert on {type(record).__name__}")
    sql = f"INSERT INTO {table} ({', '.join(fields)}) VALUES ({', '.join(values)})"
    return sql, args


def update_row_sql(record: Any, *only: str) -> Tuple[str, List[Any]]:
    """Build an UPDATE ... WHERE id statement from a record instance.

    Args:
        record: Model instance, its ``id`` selects the row
        only: Optional column names to restrict the SET list to

    Returns:
        Tuple of (SQL with ``$N`` placeholders, arguments); the id is the
        last argument

    Raises:
        ValidationError: On unknown ``only`` names or an empty SET list
    """
    table = table_name(record)
    columns = record_columns(record)
    if "id" not in columns:
        raise ValidationError(f"Field 'id' not found on {type(record).__name__}")

    unknown = [name for name in only if name not in columns]
    if unknown:
        raise ValidationError(f"Field '{unknown[0]}' not found on {type(record).__name__}")

    now = current_unix_timestamp()
    sets = []
    args = []
    for name in columns:
        if name in ("id", "created_at"):
            continue
        if only and name not in only:
            continue
        sets.append(f"{name} = ${len(sets) + 1}")
        args.append(now if name == "updated_at" else getattr(record, name))
    if not sets:
        raise ValidationError(f"No columns to update on {type(record).__name__}")

    args.append(getattr(record, "id"))
    sql = f"UPDATE {table} SET {', '.join(sets)} WHERE id = ${len(args)}"
    return sql, args


def query_row_by_id_sql(record: Any) -> str:
    columns = record_columns(record)
    return f"SELECT {', '.join(columns)} FROM {table_name(record)} WHERE id = $1 LIMIT 1"


def row_exists_sql(record: Any) -> str:
    return f"SELECT 1 FROM {table_name(record)} WHERE id = $1 LIMIT 1"


def delete_row_by_id_sql(record: Any) -> str:
    return f"DELETE FROM {table_name(record)} WHERE id = $1"


def scans(record: Any, values: Sequence[Any], names: Optional[Sequence[str]] = None) -> Any:
    """Copy a result row into a record.

    Args:
        record: Model class (a new instance is built) or instance (updated in place)
        values: Column values of one result row
        names: Field names for the values; defaults to every model field in order

    Returns:
        The populated record

    Raises:
        ValidationError: If the number of values doesn't match the fields
    """
    fields = list(names) if names is not None else record_fields(record)
    if len(fields) != len(values):
        cls = _model_class(record)
        raise ValidationError(
            f"Expected {len(values)} fields on {cls.__name__}, got {len(fields)}"
        )
    data = dict(zip(fields, values))
    if isinstance(record, type):
        return record.model_validate(data)
    for key, value in data.items():
        setattr(record, key, value)
    return record


def format_log(
    fname: str,
    start: float,
    error: Optional[BaseException],
    tx: bool,
    query: str,
    *args: Any
) -> str:
    """Format one SQL debug line.

    Example: ``[SQL] [TX] [func Exec] select 1 ([100]) (nil) 0.000 ms``

    Args:
        fname: Name of the calling operation, may be empty
        start: ``time.perf_counter()`` value taken before the call
        error: Exception raised by the call, if any
        tx: Whether the call ran inside a transaction
        query: SQL text, may be empty
        args: Query arguments

    Returns:
        The formatted line
    """
    values = ["[SQL]"]
    if tx:
        values.append("[TX]")
    if fname:
        values.append(f"[func {fname}]")
    if query:
        query = _LOG_SPACES_ALL.sub(" ", query).strip(" ")
        values.append(_LOG_SPACES_END.sub(";", query))
    values.append(f"({list(args)})" if args else "(empty)")
    values.append(f"({driver_message(error)})" if error is not None else "(nil)")
    values.append(f"{(time.perf_counter() - start) * 1000:.3f} ms")
    return " ".join(values)


def log_query(
    fname: str,
    start: float,
    error: Optional[BaseException],
    tx: bool,
    query: str,
    *args: Any
) -> str:
    """Log a SQL debug line and return it."""
    message = format_log(fname, start, error, tx, query, *args)
    logger.log(logging.ERROR if error is not None else logging.INFO, message)
    return message
