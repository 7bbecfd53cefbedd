#!/usr/bin/env python3
"""
Readyroom Notifier Daemon.
Long-running service that publishes scheduled events, sends reminders and
keeps published event posts counting down. Any number of instances can run
against the same database; advisory locks keep them from doing the same work.
"""
import argparse
import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from readyroom_notifier import __version__
from readyroom_notifier.core.config import NotifierConfig
from readyroom_notifier.core.errors import ConfigurationError
from readyroom_notifier.database.init import close_pool, get_pool, run_migrations
from readyroom_notifier.database.store import EventStore
from readyroom_notifier.messaging.base import MessagingClient
from readyroom_notifier.recipients.resolver import RecipientResolver
from readyroom_notifier.scheduling.countdown import CountdownUpdater
from readyroom_notifier.scheduling.orchestrator import ProcessorOrchestrator
from readyroom_notifier.scheduling.peer_jobs import ConcludedEventsJob, MissionStatusJob
from readyroom_notifier.scheduling.publication_processor import PublicationProcessor
from readyroom_notifier.scheduling.reminder_processor import ReminderProcessor

console = Console()
logger = logging.getLogger(__name__)

STATUS_INTERVAL_SECONDS = 60 * 5  # Print the status table every 5 minutes


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # telethon is chatty at INFO
    logging.getLogger("telethon").setLevel(logging.WARNING)


class NotifierDaemon:
    """Main daemon that wires the store, messenger and processors together."""

    def __init__(self, config: NotifierConfig, countdown_enabled: Optional[bool] = None):
        self.config = config
        self.countdown_enabled = config.countdown_enabled if countdown_enabled is None else countdown_enabled
        self.store: Optional[EventStore] = None
        self.messenger: Optional[MessagingClient] = None
        self.countdown: Optional[CountdownUpdater] = None
        self.orchestrator: Optional[ProcessorOrchestrator] = None
        self.running = False
        self.started_at: Optional[datetime] = None

    async def initialize(self) -> None:
        """Initialize all components."""
        console.print(f"[bold blue]Initializing Readyroom Notifier {__version__} ({self.config.instance_id})...[/bold blue]")

        try:
            applied = await run_migrations(self.config.database_url)
        except RuntimeError as e:
            console.print(f"[red bold]Database initialization failed: {e}[/red bold]")
            raise
        pool = await get_pool(
            self.config.database_url,
            min_size=self.config.db_pool_min_size,
            max_size=self.config.db_pool_max_size,
        )
        self.store = EventStore(pool, acquire_timeout=self.config.db_acquire_timeout_seconds)
        console.print(f"  [green]✓[/green] Database ready ({applied} migration(s) applied)")

        if self.config.telegram is None:
            raise ConfigurationError("TELEGRAM_API_ID and TELEGRAM_API_HASH must be set")
        # Imported here so the telethon session is only touched when the daemon runs
        from readyroom_notifier.messaging.telegram import TelegramMessagingClient
        self.messenger = await TelegramMessagingClient.from_config(self.config.telegram)
        console.print("  [green]✓[/green] Connected to Telegram")

        default_tz = await self.store.get_default_timezone() or self.config.default_timezone
        resolver = RecipientResolver(self.store)

        if self.countdown_enabled:
            self.countdown = CountdownUpdater(
                self.store,
                self.messenger,
                resolver=resolver,
                default_timezone=default_tz,
            )

        jobs = {
            "publications": PublicationProcessor(
                self.store,
                self.messenger,
                countdown=self.countdown,
                instance_id=self.config.instance_id,
                default_timezone=default_tz,
            ),
            "reminders": ReminderProcessor(
                self.store,
                self.messenger,
                resolver=resolver,
                instance_id=self.config.instance_id,
                default_timezone=default_tz,
            ),
            "concluded_events": ConcludedEventsJob(self.store),
            "mission_status": MissionStatusJob(self.store),
        }
        self.orchestrator = ProcessorOrchestrator(
            jobs,
            tick_interval_seconds=self.config.tick_interval_seconds,
            instance_id=self.config.instance_id,
            console=console,
        )
        console.print(f"  [green]✓[/green] {len(jobs)} jobs registered (default timezone {default_tz})")

    def _create_status_table(self) -> Table:
        table = Table(title="Notifier Status")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Instance", self.config.instance_id)
        if self.started_at:
            uptime = datetime.now(timezone.utc) - self.started_at
            table.add_row("Uptime", str(uptime).split(".")[0])

        if self.orchestrator:
            health = self.orchestrator.health_check()
            table.add_row("Ticks", str(health["ticks"]))
            for name, stats in health["jobs"].items():
                table.add_row(
                    name,
                    f"{stats['processed']} processed, {stats['errors']} errors, {stats['failures']} failed runs",
                )
        if self.countdown:
            table.add_row("Countdown timers", str(len(self.countdown)))
            table.add_row("Countdown updates", str(self.countdown.stats["updates"]))
        return table

    async def run_once(self) -> None:
        """Run every job once and print the results."""
        results = await self.orchestrator.run_once()
        for name, result in results.items():
            if result is None:
                console.print(f"[red]{name}: failed[/red]")
            else:
                console.print(
                    f"{name}: {result.processed} processed, {result.skipped} skipped, {len(result.errors)} errors"
                )
                for error in result.errors:
                    console.print(f"  [yellow]{error.kind}[/yellow] {error.row_id}: {error.message}")

    async def run(self) -> None:
        """Run the daemon until ``running`` is cleared."""
        self.running = True
        self.started_at = datetime.now(timezone.utc)

        console.print(Panel.fit(
            "[bold green]Readyroom Notifier Started[/bold green]\n"
            "Press Ctrl+C to stop",
            title="Status"
        ))

        try:
            if self.countdown:
                count = await self.countdown.start()
                console.print(f"[green]Countdown updater tracking {count} message(s)[/green]")
            await self.orchestrator.start()

            last_status = datetime.now(timezone.utc)
            while self.running:
                if (datetime.now(timezone.utc) - last_status).total_seconds() >= STATUS_INTERVAL_SECONDS:
                    console.print(self._create_status_table())
                    last_status = datetime.now(timezone.utc)
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            console.print("\n[yellow]Shutdown requested...[/yellow]")
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Gracefully shutdown the daemon."""
        self.running = False
        console.print("[yellow]Shutting down...[/yellow]")

        if self.orchestrator:
            await self.orchestrator.stop()
        if self.countdown:
            await self.countdown.stop()
            console.print("[green]Countdown updater stopped[/green]")

        try:
            await close_pool()
            console.print("[green]Database connections closed[/green]")
        except Exception as e:
            console.print(f"[yellow]Warning: Error closing database pool: {e}[/yellow]")

        if self.messenger:
            await self.messenger.close()
            console.print("[green]Disconnected from Telegram[/green]")

        if self.orchestrator:
            console.print(self._create_status_table())


async def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Readyroom Notifier Daemon")
    parser.add_argument("--once", action="store_true", help="Run every job once and exit")
    parser.add_argument("--no-countdown", action="store_true", help="Do not edit posts with countdown updates")
    parser.add_argument("--migrate", action="store_true", help="Apply pending migrations and exit")
    args = parser.parse_args(argv)

    config = NotifierConfig.from_env()
    setup_logging(config.log_level)

    if args.migrate:
        count = await run_migrations(config.database_url)
        console.print(f"[green]Applied {count} migration(s)[/green]")
        return

    daemon = NotifierDaemon(config, countdown_enabled=False if (args.no_countdown or args.once) else None)

    if args.once:
        try:
            await daemon.initialize()
            await daemon.run_once()
        finally:
            await daemon.shutdown()
        return

    loop = asyncio.get_running_loop()

    def signal_handler():
        daemon.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await daemon.initialize()
        await daemon.run()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        console.print(f"[red bold]Fatal error: {e}[/red bold]")
        raise


def cli() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except ConfigurationError as e:
        console.print(f"[red bold]Configuration error: {e}[/red bold]")
        raise SystemExit(2)


if __name__ == "__main__":
    cli()
