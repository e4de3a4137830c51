"""Session database CLI commands."""

from __future__ import annotations

from pathlib import Path

import click

DB_PATH_HELP = "SQLite file (default: $SAMLSP_DB_PATH or ~/.samlsp/samlsp.db)."


@click.group()
def db() -> None:
    """Manage the database behind storage backend 'sql'."""


@db.command("init")
@click.option("--db-path", type=click.Path(dir_okay=False, path_type=Path), help=DB_PATH_HELP)  # type: ignore[type-var]
@click.option("--force", is_flag=True, help="Delete an existing database and start empty.")
def db_init(db_path: Path | None, force: bool) -> None:
    """Create the database file and its tables."""
    from samlsp.storage import Database, get_database_path

    path = db_path or get_database_path()
    if path.exists():
        if not force:
            raise click.ClickException(f"{path} already exists; pass --force to recreate it")
        path.unlink()
        click.echo(f"Deleted {path}")

    database = Database(db_path=path)
    try:
        database.init_db()
        database.verify_connection()
    finally:
        database.close()
    click.echo(f"Created session database at {path}")


@db.command("verify")
@click.option(
    "--db-path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),  # type: ignore[type-var]
    help=DB_PATH_HELP,
)
def db_verify(db_path: Path | None) -> None:
    """Check that the database opens and answers a query."""
    from samlsp.storage import Database, DatabaseError

    database = Database(db_path=db_path)
    try:
        database.verify_connection()
    except DatabaseError as e:
        raise click.ClickException(str(e)) from None
    finally:
        database.close()
    click.echo(f"{database.path}: connection verified")
