"""
Processor Orchestrator - runs every processor on a fixed tick.

All jobs run once immediately on start and then every
``tick_interval_seconds``. Each job of each tick runs in its own task:

- a failing job is logged and never affects the other jobs
- a tick does not wait for the previous one, so slow I/O can make ticks
  overlap; the processors' locks and fresh checks make that safe

Usage:
    orchestrator = ProcessorOrchestrator(
        {"publications": publication_processor, "reminders": reminder_processor},
        tick_interval_seconds=60,
    )
    await orchestrator.start()
    # ... runs in background ...
    await orchestrator.stop()
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from rich.console import Console

from readyroom_notifier.core.models import ProcessorResult

logger = logging.getLogger(__name__)


class Job(Protocol):
    async def run(self) -> ProcessorResult: ...


class ProcessorOrchestrator:
    """
    Fixed-rate runner for the notifier jobs.

    Attributes:
        jobs: Jobs keyed by display name, run in insertion order.
        tick_interval_seconds: Seconds between ticks.
        instance_id: Worker id shown in status output.
        console: Rich console for operator output.
        stats: Per-job run, failure and error counters.
    """

    def __init__(
        self,
        jobs: dict[str, Job],
        tick_interval_seconds: float = 60,
        instance_id: str = "local",
        console: Optional[Console] = None,
    ):
        self.jobs = jobs
        self.tick_interval_seconds = tick_interval_seconds
        self.instance_id = instance_id
        self.console = console or Console()
        self._running = False
        self._tick_task: Optional[asyncio.Task] = None
        self._in_flight: set[asyncio.Task] = set()
        self.stats = {
            "ticks": 0,
            "started_at": None,
            "jobs": {
                name: {"runs": 0, "failures": 0, "processed": 0, "errors": 0, "last_run": None}
                for name in jobs
            },
        }

    async def start(self) -> None:
        """Run every job now and schedule the fixed tick. No-op if already running."""
        if self._running:
            self.console.print("[yellow]Processor orchestrator already running[/yellow]")
            return

        self._running = True
        self.stats["started_at"] = datetime.now(timezone.utc)
        self._launch_tick()
        self._tick_task = asyncio.create_task(self._tick_loop())
        self.console.print(
            f"[green]Processor orchestrator started on {self.instance_id} "
            f"({len(self.jobs)} jobs every {self.tick_interval_seconds}s)[/green]"
        )

    async def stop(self) -> None:
        """Stop ticking and let job runs already in flight finish."""
        if not self._running:
            return
        self._running = False

        if self._tick_task and not self._tick_task.done():
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
        self._tick_task = None

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        self.console.print("[green]Processor orchestrator stopped[/green]")

    async def run_once(self) -> dict[str, Optional[ProcessorResult]]:
        """Run one tick and wait for every job. A failed job maps to None."""
        self.stats["ticks"] += 1
        names = list(self.jobs)
        results = await asyncio.gather(*(self._run_job(name) for name in names))
        return dict(zip(names, results))

    def _launch_tick(self) -> None:
        self.stats["ticks"] += 1
        for name in self.jobs:
            task = asyncio.create_task(self._run_job(name))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.tick_interval_seconds)
            except asyncio.CancelledError:
                break
            if self._running:
                self._launch_tick()

    async def _run_job(self, name: str) -> Optional[ProcessorResult]:
        job_stats = self.stats["jobs"][name]
        job_stats["runs"] += 1
        job_stats["last_run"] = datetime.now(timezone.utc)
        try:
            result = await self.jobs[name].run()
        except Exception as e:
            job_stats["failures"] += 1
            logger.exception("[%s] Job %s failed", self.instance_id, name)
            self.console.print(f"[red]Job {name} failed: {e}[/red]")
            return None

        job_stats["processed"] += result.processed
        job_stats["errors"] += len(result.errors)
        if result.processed or result.errors:
            color = "yellow" if result.errors else "cyan"
            self.console.print(
                f"[{color}]{name}: {result.processed} processed, "
                f"{result.skipped} skipped, {len(result.errors)} errors[/{color}]"
            )
        return result

    def health_check(self) -> dict:
        """
        Get orchestrator health status.

        Returns:
            Dictionary with running state, uptime, tick count, in-flight job
            runs and per-job counters.
        """
        uptime = None
        if self.stats["started_at"]:
            uptime = (datetime.now(timezone.utc) - self.stats["started_at"]).total_seconds()

        return {
            "running": self._running,
            "instance_id": self.instance_id,
            "uptime_seconds": uptime,
            "ticks": self.stats["ticks"],
            "in_flight": len(self._in_flight),
            "jobs": {name: dict(stats) for name, stats in self.stats["jobs"].items()},
            "config": {"tick_interval_seconds": self.tick_interval_seconds},
        }

    @property
    def is_running(self) -> bool:
        return self._running
