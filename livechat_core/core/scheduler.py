"""
Periodic Task Runner
====================

Interval scheduling for the engine's background sweeps (queue timeouts,
expired agent states). One asyncio task per job sleeps for its interval,
runs the job, logs any failure and tries again on the next tick, so a
large queue is handled by a single bounded sweep instead of a timer per
entry.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

TaskHandler = Callable[[], Awaitable[Any]]


@dataclass
class TaskMetrics:
    """Run counters for a periodic task"""

    runs: int = 0
    failures: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


@dataclass
class PeriodicTask:
    """A coroutine executed on a fixed interval"""

    name: str
    handler: TaskHandler
    interval_seconds: float
    metrics: TaskMetrics = field(default_factory=TaskMetrics)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)
    _running: bool = field(default=False, repr=False)

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> Any:
        """Run the handler once; failures are logged, never raised"""
        self.metrics.runs += 1
        self.metrics.last_run_at = datetime.utcnow()
        try:
            result = await self.handler()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.metrics.failures += 1
            self.metrics.last_error = str(e)
            logger.error("periodic_task_failed", task=self.name, error=str(e))
            return None

        self.metrics.last_result = result
        return result

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("periodic_task_started", task=self.name, interval=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("periodic_task_stopped", task=self.name)

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break


class PeriodicTaskRunner:
    """
    Owns a set of periodic tasks and their lifecycle.

    Usage:
        runner = PeriodicTaskRunner()
        runner.add("queue_timeouts", queue.sweep_timeouts, interval_seconds=60)
        await runner.start()
        ...
        await runner.stop()
    """

    def __init__(self):
        self._tasks: Dict[str, PeriodicTask] = {}
        self._running = False

    def add(
        self,
        name: str,
        handler: TaskHandler,
        interval_seconds: float,
    ) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"Periodic task {name} already registered")

        task = PeriodicTask(name=name, handler=handler, interval_seconds=interval_seconds)
        self._tasks[name] = task
        if self._running:
            task.start()
        return task

    def get(self, name: str) -> Optional[PeriodicTask]:
        return self._tasks.get(name)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        for task in self._tasks.values():
            task.start()

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks.values():
            await task.stop()

    async def run_all_once(self) -> Dict[str, Any]:
        """Run every task once, in registration order"""
        results = {}
        for name, task in self._tasks.items():
            results[name] = await task.run_once()
        return results

    def get_status(self) -> Dict[str, Any]:
        tasks: List[Dict[str, Any]] = []
        for task in self._tasks.values():
            tasks.append({
                "name": task.name,
                "interval_seconds": task.interval_seconds,
                "running": task.is_running,
                "metrics": task.metrics.to_dict(),
            })
        return {"running": self._running, "tasks": tasks}
