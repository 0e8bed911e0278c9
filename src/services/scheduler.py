"""
Background scheduling of periodic engine actions

Each task runs in its own asyncio loop, so a slow task never delays another.
A failing run is logged and the loop keeps going.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class PeriodicTask:
    """A coroutine function run on a fixed interval"""
    name: str
    interval: timedelta
    callback: Callable[[], Awaitable[Any]]
    initial_delay: Optional[timedelta] = None
    run_count: int = 0
    failure_count: int = 0
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def interval_seconds(self) -> float:
        return self.interval.total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "running": self.task is not None and not self.task.done()
        }


class BackgroundScheduler:
    """Runs registered PeriodicTasks until stopped"""

    def __init__(self):
        self._tasks: Dict[str, PeriodicTask] = {}
        self.is_running = False

    def add_task(
        self,
        name: str,
        interval: timedelta,
        callback: Callable[[], Awaitable[Any]],
        initial_delay: Optional[timedelta] = None
    ) -> PeriodicTask:
        """Register a task; starts immediately if the scheduler is running"""
        if interval.total_seconds() <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        if name in self._tasks:
            raise ValueError(f"Task {name} already registered")

        periodic = PeriodicTask(name=name, interval=interval, callback=callback,
                                initial_delay=initial_delay)
        self._tasks[name] = periodic
        if self.is_running:
            periodic.task = asyncio.create_task(self._run_loop(periodic))
        return periodic

    def get_task(self, name: str) -> Optional[PeriodicTask]:
        return self._tasks.get(name)

    async def start(self) -> None:
        """Start every registered task"""
        if self.is_running:
            return

        self.is_running = True
        for periodic in self._tasks.values():
            periodic.task = asyncio.create_task(self._run_loop(periodic))
        logger.info(f"Background scheduler started with {len(self._tasks)} tasks")

    async def stop(self) -> None:
        """Cancel every task and wait for it to finish"""
        if not self.is_running:
            return

        self.is_running = False
        for periodic in self._tasks.values():
            if periodic.task:
                periodic.task.cancel()
                try:
                    await periodic.task
                except asyncio.CancelledError:
                    pass
                periodic.task = None
        logger.info("Background scheduler stopped")

    async def run_once(self, name: str) -> None:
        """Run one task immediately, outside its loop"""
        periodic = self._tasks.get(name)
        if periodic is None:
            raise KeyError(f"Unknown task {name}")
        await self._execute(periodic)

    async def _run_loop(self, periodic: PeriodicTask) -> None:
        delay = periodic.initial_delay if periodic.initial_delay is not None else periodic.interval
        await asyncio.sleep(delay.total_seconds())

        while self.is_running:
            await self._execute(periodic)
            await asyncio.sleep(periodic.interval_seconds)

    async def _execute(self, periodic: PeriodicTask) -> None:
        try:
            await periodic.callback()
            periodic.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            periodic.failure_count += 1
            periodic.last_error = str(e)
            logger.error(f"Scheduled task {periodic.name} failed: {e}")
        finally:
            periodic.run_count += 1
            periodic.last_run = datetime.utcnow()

    def get_status(self) -> List[Dict[str, Any]]:
        return [periodic.to_dict() for periodic in self._tasks.values()]
