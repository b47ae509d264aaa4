"""Shared fixtures: SQLite databases migrated from db/migrations."""

from pathlib import Path

import pytest
from sqlmodel import Field, SQLModel

from sqlhelper import connect

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "db" / "migrations"


class User(SQLModel):
    __tablename__ = "users"

    id: int = 0
    name: str = ""


class Post(SQLModel):
    __tablename__ = "posts"

    id: int = 0
    title: str = ""
    body: str = ""
    created_at: int = 0
    updated_at: int = 0
    preview: str = Field(default="", exclude=True)


POSTS_TABLE = """
CREATE TABLE posts (
    id integer NOT NULL PRIMARY KEY AUTOINCREMENT,
    title varchar(255) NOT NULL,
    body text NOT NULL,
    created_at integer NOT NULL,
    updated_at integer NOT NULL
)
"""


@pytest.fixture
def migrations_dir() -> Path:
    return MIGRATIONS_DIR


@pytest.fixture
def db_url(tmp_path) -> str:
    """URL of a fresh SQLite file."""
    return f"sqlite://{tmp_path / 'test.sqlite'}"


@pytest.fixture
def db(db_url, migrations_dir):
    """Migrated SQLite handle with users (Alice, Bob) and an empty posts table."""
    handle = connect(db_url, str(migrations_dir))
    handle.exec(POSTS_TABLE)
    yield handle
    handle.close()
