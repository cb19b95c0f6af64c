#!/usr/bin/env python3
"""
Ingestion scheduler.

Runs an ingestion cycle immediately on start and then again every fixed
interval (600 seconds by default), forever.

Ticks are measured on the event loop clock and each cycle runs as its own
task, so a cycle that overruns the interval does not delay the next tick and
two cycles can run at the same time. Overlaps are logged, not prevented.
Setting SCHEDULER_WAIT_FOR_COMPLETION=true instead waits for each cycle to
finish and then sleeps a full interval, which changes the observed timing.
"""

import asyncio
from typing import Optional, Set

from config import config, get_logger
from telemetry import init_telemetry, get_tracer, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")

init_telemetry("feed-ingest-scheduler")
_tracer = get_tracer("scheduler")


class IngestionScheduler:
    """Repeat the ingestion cycle on a fixed interval."""

    def __init__(self, interval_seconds: Optional[float] = None, wait_for_completion: Optional[bool] = None):
        """Initialize scheduler.

        Args:
            interval_seconds: Seconds between cycle starts (default: FETCH_INTERVAL_SECONDS)
            wait_for_completion: Measure the interval from the end of the previous
                cycle instead of using fixed ticks (default: SCHEDULER_WAIT_FOR_COMPLETION)
        """
        self.interval = float(interval_seconds if interval_seconds is not None else config.FETCH_INTERVAL_SECONDS)
        if self.interval <= 0:
            raise ValueError(f"Interval must be positive, got {self.interval}")
        self.wait_for_completion = (
            config.SCHEDULER_WAIT_FOR_COMPLETION if wait_for_completion is None else wait_for_completion
        )
        self.cycles_started = 0
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @trace_span(
        "scheduler.cycle",
        tracer_name="scheduler",
        attr_from_args=lambda self, orchestrator, number: {"scheduler.cycle": number},
    )
    async def _run_cycle(self, orchestrator, number: int):
        """Run one cycle, logging instead of raising so the loop keeps going."""
        logger.info(f"Starting ingestion cycle #{number}")
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            run = await orchestrator.run_ingestion_cycle()
        except Exception as e:
            logger.error(f"Ingestion cycle #{number} failed after {format_duration(loop.time() - started)}: {e}")
            return None
        logger.info(f"Ingestion cycle #{number} completed in {format_duration(loop.time() - started)}")
        return run

    def _launch(self, orchestrator) -> asyncio.Task:
        self.cycles_started += 1
        if self._in_flight:
            logger.warning(
                f"Starting cycle #{self.cycles_started} while {len(self._in_flight)} previous cycle(s) still running"
            )
        task = asyncio.create_task(self._run_cycle(orchestrator, self.cycles_started))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def run_forever(self, orchestrator, max_cycles: Optional[int] = None) -> None:
        """Run cycles until cancelled (or until max_cycles have been started and finished).

        Args:
            orchestrator: Object exposing ``run_ingestion_cycle()``
            max_cycles: Optional bound on the number of cycles, for one-off runs and tests
        """
        mode = "after completion" if self.wait_for_completion else "fixed interval"
        logger.info(f"Scheduler started: every {format_duration(self.interval)} ({mode})")

        try:
            if self.wait_for_completion:
                await self._run_sequential(orchestrator, max_cycles)
            else:
                await self._run_fixed(orchestrator, max_cycles)
            if self._in_flight:
                await asyncio.gather(*list(self._in_flight))
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled - shutting down")
            pending = list(self._in_flight)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise

    def next_tick_after(self, previous_tick: float, now: float) -> float:
        """Return the first tick after previous_tick that is not in the past.

        Ticks missed while the loop was stalled are skipped rather than
        fired back to back.
        """
        next_tick = previous_tick + self.interval
        if next_tick >= now:
            return next_tick
        missed = int((now - next_tick) // self.interval) + 1
        logger.warning(f"Scheduler fell behind, skipping {missed} missed tick(s)")
        return next_tick + missed * self.interval

    async def _run_fixed(self, orchestrator, max_cycles: Optional[int]) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            self._launch(orchestrator)
            if max_cycles is not None and self.cycles_started >= max_cycles:
                return
            next_tick = self.next_tick_after(next_tick, loop.time())
            delay = next_tick - loop.time()
            logger.debug(f"Sleeping {delay:.1f}s until next cycle")
            await asyncio.sleep(max(0.0, delay))

    async def _run_sequential(self, orchestrator, max_cycles: Optional[int]) -> None:
        while True:
            await self._launch(orchestrator)
            if max_cycles is not None and self.cycles_started >= max_cycles:
                return
            logger.debug(f"Sleeping {self.interval:.1f}s until next cycle")
            await asyncio.sleep(self.interval)


def create_scheduler(interval_seconds: Optional[float] = None, wait_for_completion: Optional[bool] = None) -> IngestionScheduler:
    """Create an IngestionScheduler from configuration."""
    return IngestionScheduler(interval_seconds, wait_for_completion)
