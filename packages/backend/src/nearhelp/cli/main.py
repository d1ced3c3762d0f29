"""NearHelp CLI: run the realtime service and prepare a local database.

Usage:
    nearhelp serve                  # uvicorn nearhelp.main:app
    nearhelp serve --reload         # with auto-reload (development)
    nearhelp init-db                # create tables without Alembic
    nearhelp token <user-id>        # mint a development access token
"""

from __future__ import annotations

import asyncio
import sys

import click

from nearhelp.config import settings


@click.group()
def cli() -> None:
    """NearHelp realtime chat and notification service."""


@cli.command()
@click.option("--host", default=None, help="Bind address (default: NEARHELP_HOST).")
@click.option("--port", default=None, type=int, help="Port (default: NEARHELP_PORT).")
@click.option("--reload", is_flag=True, help="Reload on code changes.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Run the API and WebSocket server."""
    import uvicorn

    uvicorn.run(
        "nearhelp.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@cli.command("init-db")
@click.option("--drop", is_flag=True, help="Drop existing tables first.")
def init_db(drop: bool) -> None:
    """Create every table directly from the ORM models."""
    from nearhelp.db.engine import engine
    from nearhelp.db.models import Base

    async def _create() -> None:
        async with engine.begin() as conn:
            if drop:
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    try:
        asyncio.run(_create())
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)
    click.secho(f"Tables ready ({len(Base.metadata.tables)}).", fg="green")


@cli.command()
@click.argument("user_id")
@click.option("--minutes", default=60, show_default=True, help="Token lifetime.")
def token(user_id: str, minutes: int) -> None:
    """Print an access token for USER_ID (development only)."""
    if settings.environment != "development":
        click.secho("Error: tokens are only minted in development", fg="red", err=True)
        sys.exit(1)
    from nearhelp.auth.jwt import create_access_token

    click.echo(create_access_token(user_id, expires_minutes=minutes))


if __name__ == "__main__":
    cli()
