"""Command line for applying and inspecting migrations.

Usage: ``sqlhelper migrate|rollback|status|ping [--url URL] [--migrations-dir DIR]``.
Any failure prints ``Error: <message>`` and exits with code 1.
"""
import typer

from . import db
from .db_utils import driver_message
from .migrate import MigrationRunner, create_and_migrate

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)

UrlOption = typer.Option(None, "--url", "-u", help="Connection URL (default: $DATABASE_URL)")
DirOption = typer.Option(None, "--migrations-dir", "-d", help="Migrations directory (default: $DBMATE_MIGRATIONS_DIR)")


def _runner(url: str | None, migrations_dir: str | None) -> MigrationRunner:
    engine = db.open_db(url or db.DATABASE_URL, skip_migration=True)
    return MigrationRunner(engine, migrations_dir or db.MIGRATIONS_DIR)


def _fail(e: Exception) -> None:
    typer.echo(f"Error: {driver_message(e)}", err=True)
    raise typer.Exit(code=1)


@app.command()
def migrate(url: str = UrlOption, migrations_dir: str = DirOption):
    """Create the database if needed and apply pending migrations."""
    try:
        target = db.sqlalchemy_url(db.parse_url(url or db.DATABASE_URL))
        applied = create_and_migrate(target, migrations_dir or db.MIGRATIONS_DIR)
    except Exception as e:
        _fail(e)
    for m in applied:
        typer.echo(f"Applied: {m.filename}")
    if not applied:
        typer.echo("Nothing to migrate")


@app.command()
def rollback(url: str = UrlOption, migrations_dir: str = DirOption):
    """Roll back the most recent migration."""
    try:
        runner = _runner(url, migrations_dir)
        try:
            migration = runner.rollback()
        finally:
            runner.engine.dispose()
    except Exception as e:
        _fail(e)
    if migration is None:
        typer.echo("Nothing to roll back")
    else:
        typer.echo(f"Rolled back: {migration.filename}")


@app.command()
def status(url: str = UrlOption, migrations_dir: str = DirOption):
    """List migrations and whether they are applied."""
    try:
        runner = _runner(url, migrations_dir)
        try:
            rows = runner.status()
        finally:
            runner.engine.dispose()
    except Exception as e:
        _fail(e)
    for migration, applied in rows:
        typer.echo(f"[{'X' if applied else ' '}] {migration.filename}")
    pending = sum(1 for _, applied in rows if not applied)
    typer.echo(f"\nApplied: {len(rows) - pending}")
    typer.echo(f"Pending: {pending}")


@app.command()
def ping(url: str = UrlOption):
    """Check that the database answers."""
    try:
        handle = db.connect(url or db.DATABASE_URL, skip_migration=True)
        try:
            handle.ping()
        finally:
            handle.close()
    except Exception as e:
        _fail(e)
    typer.echo("OK")


def main():
    app()


if __name__ == "__main__":
    main()
