"""Engine and transaction handles.

``DBMethods`` wraps a SQLAlchemy engine, ``Tx`` wraps one connection with an
open transaction. Both share the same query and record surface through
``QueryMethods``; only the connection handling differs.
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Optional, Tuple
import time

from sqlalchemy import Connection, Engine, create_engine, event, text

from .db_utils import (
    NotFoundError,
    ValidationError,
    current_unix_timestamp,
    db_error,
    delete_row_by_id_sql,
    fix_query,
    insert_row_sql,
    log_query,
    query_row_by_id_sql,
    record_columns,
    row_exists_sql,
    scans,
    update_row_sql,
)


def _sqlite_connect(dbapi_conn, connection_record) -> None:
    # stop pysqlite from opening transactions on its own
    dbapi_conn.isolation_level = None


def _sqlite_begin(conn: Connection) -> None:
    if conn.get_execution_options().get("isolation_level") != "AUTOCOMMIT":
        conn.exec_driver_sql("BEGIN")


def new_engine(url: Any, **options: Any) -> Engine:
    """Create a SQLAlchemy engine for a connection URL.

    SQLite engines emit their own ``BEGIN`` when a transaction starts, so
    reads and DDL inside it are covered by commit and rollback like on the
    other backends.
    """
    engine = create_engine(url, **options)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_connect)
        event.listen(engine, "begin", _sqlite_begin)
    return engine


@dataclass
class Prepared:
    """A query and its arguments, built ahead of execution."""
    query: str
    args: Tuple[Any, ...] = field(default_factory=tuple)


@dataclass
class ExecResult:
    last_insert_id: Optional[int]
    rows_affected: int


class Row:
    """First row of a query, or nothing."""

    def __init__(self, row: Optional[Tuple[Any, ...]], columns: List[str]):
        self._row = row
        self._columns = columns

    def __bool__(self) -> bool:
        return self._row is not None

    def columns(self) -> List[str]:
        return list(self._columns)

    def scan(self) -> Tuple[Any, ...]:
        """Return the row values.

        Raises:
            NotFoundError: If the query returned no rows
        """
        if self._row is None:
            raise NotFoundError("No rows in result set")
        return tuple(self._row)

    def scans(self, record: Any) -> Any:
        """Copy the row into a record, positionally over its fields."""
        return scans(record, self.scan())


class Rows:
    """Result rows of a query.

    Iterating advances the current row, which ``scan`` and ``scans`` read.
    """

    def __init__(self, rows: List[Tuple[Any, ...]], columns: List[str]):
        self._rows = iter(rows)
        self._columns = columns
        self._current: Optional[Tuple[Any, ...]] = None
        self._closed = False

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        return self

    def __next__(self) -> Tuple[Any, ...]:
        if self._closed:
            raise StopIteration
        try:
            self._current = tuple(next(self._rows))
        except StopIteration:
            self.close()
            raise
        return self._current

    def __enter__(self) -> "Rows":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def columns(self) -> List[str]:
        return list(self._columns)

    def close(self) -> None:
        self._closed = True
        self._current = None

    def scan(self) -> Tuple[Any, ...]:
        if self._current is None:
            raise ValidationError("Scan called without a current row")
        return self._current

    def scans(self, record: Any) -> Any:
        return scans(record, self.scan())


class Statement:
    """A query bound to a handle, executed with fresh arguments on each call."""

    def __init__(self, owner: "QueryMethods", sql: str):
        self.owner = owner
        self.sql = sql

    def exec(self, *args: Any) -> ExecResult:
        return self.owner.exec(self.sql, *args)

    def query(self, *args: Any) -> Rows:
        return self.owner.query(self.sql, *args)

    def query_row(self, *args: Any) -> Row:
        return self.owner.query_row(self.sql, *args)


class QueryMethods:
    """Query and record operations shared by engines and transactions."""

    debug: bool = False
    driver: str = ""
    in_tx: bool = False

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        raise NotImplementedError

    def _log(self, fname: str, start: float, error: Optional[BaseException], query: str, *args: Any) -> None:
        if self.debug:
            log_query(fname, start, error, self.in_tx, query, *args)

    @db_error
    def _run(self, fname: str, query: str, args: Tuple[Any, ...], fetch: bool):
        start = time.perf_counter()
        try:
            sql, params = fix_query(query, args)
            with self._connection() as conn:
                result = conn.execute(text(sql), params)
                if fetch:
                    columns = list(result.keys())
                    outcome = ([tuple(r) for r in result.all()], columns)
                else:
                    outcome = ExecResult(
                        last_insert_id=result.lastrowid,
                        rows_affected=result.rowcount,
                    )
        except Exception as e:
            self._log(fname, start, e, query, *args)
            raise
        self._log(fname, start, None, query, *args)
        return outcome

    def current_unix_timestamp(self) -> int:
        return current_unix_timestamp()

    def prepare_sql(self, query: str, *args: Any) -> Prepared:
        return Prepared(query, args)

    def prepare(self, query: str) -> Statement:
        """Validate a query once and bind it to this handle.

        Raises:
            ValidationError: If the query text is empty
        """
        start = time.perf_counter()
        if not query.strip():
            error = ValidationError("Empty query")
            self._log("Prepare", start, error, query)
            raise error
        self._log("Prepare", start, None, query)
        return Statement(self, query)

    def exec(self, query: str, *args: Any) -> ExecResult:
        """Execute a statement that returns no rows.

        Args:
            query: SQL with ``$N`` placeholders
            args: Placeholder values

        Returns:
            ExecResult with the last insert id and affected row count
        """
        return self._run("Exec", query, args, fetch=False)

    def exec_prepared(self, prep: Prepared) -> ExecResult:
        return self.exec(prep.query, *prep.args)

    def query(self, query: str, *args: Any) -> Rows:
        rows, columns = self._run("Query", query, args, fetch=True)
        return Rows(rows, columns)

    def query_prepared(self, prep: Prepared) -> Rows:
        return self.query(prep.query, *prep.args)

    def query_row(self, query: str, *args: Any) -> Row:
        rows, columns = self._run("QueryRow", query, args, fetch=True)
        return Row(rows[0] if rows else None, columns)

    def query_row_prepared(self, prep: Prepared) -> Row:
        return self.query_row(prep.query, *prep.args)

    def each(self, query: str, callback: Optional[Callable[[Rows], Any]], *args: Any) -> None:
        """Run a query and call ``callback(rows)`` once per result row.

        An exception raised by the callback stops the iteration and
        propagates to the caller.

        Raises:
            ValidationError: If no callback is given
        """
        if callback is None:
            raise ValidationError("callback is not set")
        with self.query(query, *args) as rows:
            for _ in rows:
                callback(rows)

    def each_prepared(self, prep: Prepared, callback: Optional[Callable[[Rows], Any]]) -> None:
        self.each(prep.query, callback, *prep.args)

    def insert_row(self, record: Any) -> ExecResult:
        query, args = insert_row_sql(record)
        return self.exec(query, *args)

    def update_row(self, record: Any) -> ExecResult:
        query, args = update_row_sql(record)
        return self.exec(query, *args)

    def update_row_only(self, record: Any, *only: str) -> ExecResult:
        query, args = update_row_sql(record, *only)
        return self.exec(query, *args)

    def delete_row_by_id(self, id: int, record: Any) -> ExecResult:
        return self.exec(delete_row_by_id_sql(record), id)

    def query_row_by_id(self, id: int, record: Any) -> Any:
        """Load a row by id into a record.

        Args:
            id: Primary key value
            record: Model class or instance to fill

        Returns:
            The populated record

        Raises:
            NotFoundError: If no row has this id
        """
        row = self.query_row(query_row_by_id_sql(record), id)
        if not row:
            raise NotFoundError(f"{getattr(record, '__name__', type(record).__name__)} {id} not found")
        return scans(record, row.scan(), names=record_columns(record))

    def row_exists(self, id: int, record: Any) -> bool:
        row = self.query_row(row_exists_sql(record), id)
        return bool(row) and row.scan()[0] == 1


class Tx(QueryMethods):
    """An open transaction on a dedicated connection.

    Use it directly (``commit`` / ``rollback``) or as a context manager,
    which commits on a clean exit and rolls back on an exception.
    """

    in_tx = True

    def __init__(self, conn: Connection, debug: bool = False, driver: str = ""):
        self._conn = conn
        self._trans = conn.begin()
        self.debug = debug
        self.driver = driver
        self._start = time.perf_counter()

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        if not self._trans.is_active:
            raise ValidationError("Transaction has already been committed or rolled back")
        yield self._conn

    def _finish(self, fname: str, action: Callable[[], None]) -> None:
        error = None
        try:
            action()
        except Exception as e:
            error = e
            raise
        finally:
            self._conn.close()
            self._log(fname, self._start, error, "")

    @db_error
    def commit(self) -> None:
        self._finish("Commit", self._trans.commit)

    @db_error
    def rollback(self) -> None:
        self._finish("Rollback", self._trans.rollback)

    def __enter__(self) -> "Tx":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._trans.is_active:
            return
        if exc_type is None:
            self.commit()
        else:
            self.rollback()


class DBMethods(QueryMethods):
    """Unified handle over a SQLAlchemy engine.

    Every call outside a transaction runs on a pooled connection and is
    committed when it returns.
    """

    def __init__(self, engine: Engine, debug: bool = False, driver: str = ""):
        self.engine = engine
        self.debug = debug
        self.driver = driver

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        with self.engine.begin() as conn:
            yield conn

    @db_error
    def begin(self) -> Tx:
        start = time.perf_counter()
        error = None
        try:
            return Tx(self.engine.connect(), debug=self.debug, driver=self.driver)
        except Exception as e:
            error = e
            raise
        finally:
            if self.debug:
                log_query("Begin", start, error, True, "")

    @db_error
    def close(self) -> None:
        start = time.perf_counter()
        self.engine.dispose()
        self._log("Close", start, None, "")

    @db_error
    def ping(self) -> None:
        start = time.perf_counter()
        error = None
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            error = e
            raise
        finally:
            self._log("Ping", start, error, "")

    def transaction(self, queries: Optional[Callable[[Tx], Any]]) -> Any:
        """Run ``queries(tx)`` inside a transaction.

        Commits when ``queries`` returns and rolls back when it raises. The
        original exception is re-raised; if the rollback itself fails, that
        failure is attached as its cause.

        Args:
            queries: Callable receiving the Tx

        Returns:
            Whatever ``queries`` returns

        Raises:
            ValidationError: If ``queries`` is None
        """
        if queries is None:
            raise ValidationError("queries is not set for transaction")
        tx = self.begin()
        try:
            result = queries(tx)
        except Exception as e:
            try:
                tx.rollback()
            except Exception as rollback_error:
                raise e from rollback_error
            raise
        tx.commit()
        return result


class MySQL(DBMethods):
    pass


class PostgreSQL(DBMethods):
    pass


class SQLite(DBMethods):
    pass
