#!/usr/bin/env python3
"""
Database Migration Runner.

Applies pending SQL migrations from src/readyroom_notifier/database/migrations/
and records them in the schema_migrations table. Safe to run multiple times.

Usage:
    python scripts/run_migrations.py
    python scripts/run_migrations.py --list
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

import asyncpg
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from readyroom_notifier.database.init import (
    MIGRATIONS_DIR,
    create_schema_migrations_table,
    get_applied_migrations,
    get_pending_migrations,
    run_migrations,
)

load_dotenv()
console = Console()


async def list_migrations() -> None:
    """Print every migration file and whether it has been applied."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL environment variable is not set")

    conn = await asyncpg.connect(database_url, timeout=10)
    try:
        await create_schema_migrations_table(conn)
        applied = await get_applied_migrations(conn)
    finally:
        await conn.close()

    pending = {version for version, _ in get_pending_migrations(applied)}
    table = Table(title=str(MIGRATIONS_DIR))
    table.add_column("Version", style="cyan")
    table.add_column("File")
    table.add_column("Status")
    for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
        version = path.stem.split("_")[0]
        status = "[yellow]pending[/yellow]" if version in pending else "[green]applied[/green]"
        table.add_row(version, path.name, status)
    console.print(table)


async def main() -> None:
    """Main entry point for standalone execution."""
    parser = argparse.ArgumentParser(description="Apply readyroom-notifier database migrations")
    parser.add_argument("--list", action="store_true", help="Show migration status without applying")
    args = parser.parse_args()

    logging.basicConfig(level="INFO", format="%(message)s", handlers=[RichHandler(console=console, show_path=False)])
    console.print(
        Panel(
            "[bold blue]Database Migration Runner[/bold blue]",
            width=console.width
        )
    )

    try:
        if args.list:
            await list_migrations()
            sys.exit(0)
        applied_count = await run_migrations()
        console.print(
            f"\n[bold green]Success![/bold green] Applied {applied_count} migration(s)"
        )
        sys.exit(0)
    except RuntimeError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[bold red]Unexpected error:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
