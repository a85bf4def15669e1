"""
Collection scheduler

Fires a collection run at a fixed interval. At most one run is in flight at a
time: a tick that arrives while the previous run is still going is skipped and
counted, never queued. Errors raised by a scheduled run are logged and the
schedule keeps going.

States:
    IDLE     waiting for the next tick
    RUNNING  a run is in flight
    STOPPED  stop() was called; the timer will not fire again
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from market_snapshot_service.metrics import scheduler_skipped_ticks_total

logger = structlog.get_logger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class CollectionScheduler:
    """Interval scheduler with a single-flight guard"""

    def __init__(
        self,
        run_fn: Callable[..., Awaitable[Any]],
        interval: float,
        run_immediately: bool = False,
        name: str = "collection",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.run_fn = run_fn
        self.interval = interval
        self.run_immediately = run_immediately
        self.name = name

        self.state = SchedulerState.IDLE
        self._stop_event = asyncio.Event()
        self._timer_task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None

        self.stats = {
            "started_at": None,
            "runs_started": 0,
            "runs_completed": 0,
            "runs_failed": 0,
            "skipped_ticks": 0,
            "last_run_at": None,
            "last_run": None,
            "last_error": None,
        }

    @property
    def is_running(self) -> bool:
        """True while a run is in flight."""
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        """Start the timer. A stopped scheduler cannot be restarted."""
        if self.state is SchedulerState.STOPPED:
            raise RuntimeError(f"Scheduler '{self.name}' has been stopped")
        if self._timer_task is not None and not self._timer_task.done():
            logger.warning("Scheduler already started", scheduler=self.name)
            return

        self.stats["started_at"] = datetime.now(timezone.utc).isoformat()
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(
            "Scheduler started",
            scheduler=self.name,
            interval=f"{self.interval}s",
            run_immediately=self.run_immediately
        )

    async def stop(self, wait: bool = False) -> None:
        """
        Stop the timer

        The in-flight run, if any, is not interrupted. With wait=True this
        returns only after it has finished.
        """
        self.state = SchedulerState.STOPPED
        self._stop_event.set()

        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if wait and self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)

        logger.info("Scheduler stopped", scheduler=self.name, run_in_flight=self.is_running)

    async def trigger(self, **kwargs) -> Any:
        """
        Run one cycle now, subject to the single-flight guard

        Returns the run's result, or None if a run was already in flight.
        Unlike scheduled ticks, errors from a triggered run propagate.
        """
        task = self._launch(propagate=True, **kwargs)
        if task is None:
            return None
        return await task

    async def _timer_loop(self) -> None:
        if self.run_immediately:
            self._launch()

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                self._launch()

    def _launch(self, propagate: bool = False, **kwargs) -> Optional[asyncio.Task]:
        if self.is_running:
            self.stats["skipped_ticks"] += 1
            scheduler_skipped_ticks_total.labels(scheduler=self.name).inc()
            logger.warning(
                "Previous run still in progress, skipping tick",
                scheduler=self.name,
                skipped_ticks=self.stats["skipped_ticks"]
            )
            return None

        self._current = asyncio.create_task(self._run(propagate, **kwargs))
        return self._current

    async def _run(self, propagate: bool, **kwargs) -> Any:
        if self.state is not SchedulerState.STOPPED:
            self.state = SchedulerState.RUNNING
        self.stats["runs_started"] += 1
        self.stats["last_run_at"] = datetime.now(timezone.utc).isoformat()

        try:
            result = await self.run_fn(**kwargs)
            self.stats["runs_completed"] += 1
            summary = getattr(result, "summary", None)
            self.stats["last_run"] = summary() if callable(summary) else result
            return result

        except Exception as e:
            self.stats["runs_failed"] += 1
            self.stats["last_error"] = str(e)
            logger.error(
                "Scheduled run failed",
                scheduler=self.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True
            )
            if propagate:
                raise
            return None

        finally:
            if self.state is not SchedulerState.STOPPED:
                self.state = SchedulerState.IDLE

    def get_status(self) -> Dict[str, Any]:
        """Scheduler state and statistics"""
        return {
            "name": self.name,
            "state": self.state.value,
            "interval_seconds": self.interval,
            "run_in_flight": self.is_running,
            **self.stats,
        }
