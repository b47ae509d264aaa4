"""Tests for SQL builders, placeholder rewriting, scanning and log format."""

import logging
import re
import time

import pytest

from sqlhelper.db_utils import (
    DatabaseError,
    NotFoundError,
    ValidationError,
    db_error,
    delete_row_by_id_sql,
    fix_query,
    format_log,
    insert_row_sql,
    log_query,
    query_row_by_id_sql,
    record_columns,
    record_fields,
    row_exists_sql,
    scans,
    table_name,
    update_row_sql,
)

from conftest import Post, User


class Plain:
    id = 1


class TestErrors:
    def test_status_codes(self):
        assert DatabaseError("boom").status_code == 500
        assert NotFoundError("missing").status_code == 404
        assert ValidationError("bad").status_code == 400

    def test_db_error_wraps_driver_errors(self):
        @db_error
        def fails():
            raise RuntimeError("driver exploded")

        with pytest.raises(DatabaseError, match="driver exploded") as exc:
            fails()
        assert isinstance(exc.value.__cause__, RuntimeError)

    def test_db_error_keeps_database_errors(self):
        @db_error
        def fails():
            raise NotFoundError("User not found")

        with pytest.raises(NotFoundError):
            fails()


class TestRecordMetadata:
    def test_table_name(self):
        assert table_name(User) == "users"
        assert table_name(User(id=1, name="Alice")) == "users"

    def test_non_model_rejected(self):
        with pytest.raises(ValidationError, match="not a SQLModel class"):
            table_name(Plain())

    def test_excluded_fields_are_not_columns(self):
        assert record_fields(Post) == ["id", "title", "body", "created_at", "updated_at", "preview"]
        assert record_columns(Post) == ["id", "title", "body", "created_at", "updated_at"]


class TestFixQuery:
    def test_replace_param(self):
        sql, params = fix_query("select id, name from users where id=$1", [5])
        assert sql == "select id, name from users where id=:p1"
        assert params == {"p1": 5}

    def test_replace_all_params(self):
        sql, params = fix_query("update users set name=$1 where id=$2", ("John", 5))
        assert sql == "update users set name=:p1 where id=:p2"
        assert params == {"p1": "John", "p2": 5}

    def test_params_out_of_order_and_repeated(self):
        sql, params = fix_query("select $2, $1, $2", ("a", "b"))
        assert sql == "select :p2, :p1, :p2"
        assert params == {"p1": "a", "p2": "b"}

    def test_literal_colons_are_escaped(self):
        sql, _ = fix_query("select '12:30', x::int, :name from t where id=$1", [1])
        assert sql == "select '12:30', x::int, \\:name from t where id=:p1"

    def test_no_params(self):
        assert fix_query("select 1") == ("select 1", {})

    def test_argument_count_mismatch(self):
        with pytest.raises(ValidationError, match="expects 2 arguments, got 1"):
            fix_query("select $1, $2", [1])
        with pytest.raises(ValidationError, match=r"no placeholder for argument \$2"):
            fix_query("select $1", [1, 2])
        with pytest.raises(ValidationError, match=r"no placeholder for argument \$1"):
            fix_query("select 1", [1])

    def test_gapped_placeholders(self):
        with pytest.raises(ValidationError, match=r"no placeholder for argument \$2$"):
            fix_query("select $1, $3", [1, 2, 3])
        with pytest.raises(ValidationError, match="expects 3 arguments, got 2"):
            fix_query("select $1, $3", [1, 2])


class TestStatementBuilders:
    def test_insert_skips_id_and_stamps_times(self, monkeypatch):
        monkeypatch.setattr("sqlhelper.db_utils.current_unix_timestamp", lambda: 1700000000)
        sql, args = insert_row_sql(Post(id=9, title="Hello", body="World", preview="x"))
        assert sql == (
            "INSERT INTO posts (title, body, created_at, updated_at) VALUES ($1, $2, $3, $4)"
        )
        assert args == ["Hello", "World", 1700000000, 1700000000]

    def test_update_all_columns(self, monkeypatch):
        monkeypatch.setattr("sqlhelper.db_utils.current_unix_timestamp", lambda: 1700000000)
        sql, args = update_row_sql(Post(id=3, title="T", body="B", created_at=5, updated_at=5))
        assert sql == "UPDATE posts SET title = $1, body = $2, updated_at = $3 WHERE id = $4"
        assert args == ["T", "B", 1700000000, 3]

    def test_update_only(self):
        sql, args = update_row_sql(User(id=5, name="Alice"), "name")
        assert sql == "UPDATE users SET name = $1 WHERE id = $2"
        assert args == ["Alice", 5]

    def test_update_only_skips_updated_at_unless_named(self):
        sql, _ = update_row_sql(Post(id=1, title="T"), "title")
        assert sql == "UPDATE posts SET title = $1 WHERE id = $2"

    def test_update_only_unknown_field(self):
        with pytest.raises(ValidationError, match="Field 'email' not found on User"):
            update_row_sql(User(id=1), "email")

    def test_update_nothing_to_set(self):
        with pytest.raises(ValidationError, match="No columns to update"):
            update_row_sql(Post(id=1), "created_at")

    def test_select_exists_delete(self):
        assert query_row_by_id_sql(User) == "SELECT id, name FROM users WHERE id = $1 LIMIT 1"
        assert query_row_by_id_sql(Post) == (
            "SELECT id, title, body, created_at, updated_at FROM posts WHERE id = $1 LIMIT 1"
        )
        assert row_exists_sql(User) == "SELECT 1 FROM users WHERE id = $1 LIMIT 1"
        assert delete_row_by_id_sql(User(id=1)) == "DELETE FROM users WHERE id = $1"


class TestScans:
    def test_fills_instance_in_place(self):
        user = User()
        result = scans(user, (5, "John"))
        assert result is user
        assert (user.id, user.name) == (5, "John")

    def test_builds_instance_from_class(self):
        user = scans(User, (2, "Bob"))
        assert isinstance(user, User)
        assert (user.id, user.name) == (2, "Bob")

    def test_by_name(self):
        post = scans(Post, (1, "T"), names=["id", "title"])
        assert post.title == "T"
        assert post.body == ""

    def test_count_mismatch(self):
        with pytest.raises(ValidationError, match="Expected 3 fields on User, got 2"):
            scans(User(), (1, "a", "b"))


_MS = re.compile(r" (\d+\.\d{3}) ms$")


class TestLogFormat:
    def test_one_second(self):
        line = format_log("Exec", time.perf_counter() - 1, None, False, "")
        assert line.startswith("[SQL] [func Exec] (empty) (nil) ")
        assert 1000 <= float(_MS.search(line).group(1)) < 2000

    def test_with_func_name(self):
        line = format_log("Exec", time.perf_counter(), None, False, "")
        assert _MS.sub("", line) == "[SQL] [func Exec] (empty) (nil)"

    def test_with_sql_query(self):
        line = format_log("Exec", time.perf_counter(), None, False, "select * from users")
        assert _MS.sub("", line) == "[SQL] [func Exec] select * from users (empty) (nil)"

    def test_whitespace_collapsed(self):
        query = """
            select *
              from users
            where id = 1 ;"""
        line = format_log("", time.perf_counter(), None, False, query)
        assert _MS.sub("", line) == "[SQL] select * from users where id = 1; (empty) (nil)"

    def test_with_error_message(self):
        line = format_log("Exec", time.perf_counter(), Exception("Exec error"), False, "select * from users")
        assert _MS.sub("", line) == "[SQL] [func Exec] select * from users (empty) (Exec error)"

    def test_with_transaction_flag(self):
        line = format_log("Exec", time.perf_counter(), Exception("Exec error"), True, "select * from users")
        assert _MS.sub("", line) == "[SQL] [TX] [func Exec] select * from users (empty) (Exec error)"

    def test_with_query_arguments(self):
        line = format_log(
            "Exec", time.perf_counter(), Exception("Exec error"), True, "select * from users where id=$1", 100
        )
        assert _MS.sub("", line) == (
            "[SQL] [TX] [func Exec] select * from users where id=$1 ([100]) (Exec error)"
        )

    def test_log_query_levels(self, caplog):
        caplog.set_level(logging.INFO, logger="sqlhelper")
        log_query("Exec", time.perf_counter(), None, False, "select 1")
        log_query("Exec", time.perf_counter(), Exception("boom"), False, "select 1")
        assert [r.levelno for r in caplog.records] == [logging.INFO, logging.ERROR]
        assert caplog.records[1].getMessage().startswith("[SQL] [func Exec] select 1 (empty) (boom)")
