"""
scheduler.py -- Fixed-period tick driver for the trading engine.

Single-flight: when a timer fires while the previous tick of the same task is
still awaiting the gateway, the new tick is skipped and counted.  Ticks are
never queued and never run concurrently against the same engine state.

Modes:
  coupled   -- one timer runs ingest then decision back to back
  decoupled -- ingest and decision on independent timers
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import notifier

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[object]],
        *,
        max_consecutive_errors: int = 5,
        notify: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = float(interval)
        self.tick = tick
        self.max_consecutive_errors = int(max_consecutive_errors)
        self.notify = notify

        self.fired = 0
        self.completed = 0
        self.skipped = 0
        self.errors = 0
        self.consecutive_errors = 0
        self._inflight: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def fire(self) -> bool:
        """Start one tick unless the previous one is still running."""
        if self.busy:
            self.skipped += 1
            logger.debug("%s tick skipped: previous tick still in flight (%d skipped)", self.name, self.skipped)
            return False
        self.fired += 1
        self._inflight = asyncio.get_running_loop().create_task(self._run_once(), name=f"tick-{self.name}")
        return True

    async def _run_once(self) -> None:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.errors += 1
            self.consecutive_errors += 1
            logger.exception("%s tick failed (%d in a row)", self.name, self.consecutive_errors)
            if self.consecutive_errors == self.max_consecutive_errors:
                msg = f"{self.name} tick failed {self.consecutive_errors} times in a row"
                logger.error(msg)
                if self.notify:
                    await asyncio.to_thread(notifier.notify_error, msg)
            return
        self.completed += 1
        self.consecutive_errors = 0

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        logger.info("%s task running every %.2fs", self.name, self.interval)
        while not self._stop.is_set():
            self.fire()
            next_at += self.interval
            delay = next_at - loop.time()
            if delay < 0:
                # Fell behind; resume the cadence from now instead of bursting.
                next_at = loop.time()
                delay = 0.0
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        if self._inflight is not None:
            await asyncio.gather(self._inflight, return_exceptions=True)
        logger.info("%s task stopped", self.name)

    def stop(self) -> None:
        self._stop.set()

    def stats(self) -> dict:
        return {
            "interval_sec": self.interval,
            "fired": self.fired,
            "completed": self.completed,
            "skipped": self.skipped,
            "errors": self.errors,
            "consecutive_errors": self.consecutive_errors,
            "busy": self.busy,
        }


class Scheduler:
    def __init__(
        self,
        engine,
        *,
        ingest_interval: float = 0.5,
        decision_interval: float = 0.5,
        decoupled: bool = False,
        max_consecutive_errors: int = 5,
        notify: bool = True,
    ) -> None:
        self.engine = engine
        self.decoupled = bool(decoupled)
        opts = {"max_consecutive_errors": max_consecutive_errors, "notify": notify}
        if self.decoupled:
            self.tasks = [
                PeriodicTask("ingest", ingest_interval, engine.ingest_tick, **opts),
                PeriodicTask("decision", decision_interval, engine.decision_tick, **opts),
            ]
        else:
            self.tasks = [PeriodicTask("trade", ingest_interval, self.coupled_tick, **opts)]

    async def coupled_tick(self) -> None:
        await self.engine.ingest_tick()
        await self.engine.decision_tick()

    async def run(self) -> None:
        await asyncio.gather(*(task.run() for task in self.tasks))

    def stop(self) -> None:
        for task in self.tasks:
            task.stop()

    def status_payload(self) -> dict:
        return {
            "mode": "decoupled" if self.decoupled else "coupled",
            "tasks": {task.name: task.stats() for task in self.tasks},
        }
