"""Fixed-interval poll loop that survives failing ticks.

The next due time is computed when a tick completes, whatever its outcome,
so a slow tick stretches the period instead of stacking concurrent ticks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickOutcome:
    ok: bool
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "detail": self.detail,
        }


class PollScheduler:
    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        interval: float = 15.0,
        precision: float = 1.0,
        stall_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.interval = interval
        self.precision = precision
        self.stall_timeout = stall_timeout
        self._callback = callback
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.tick_count = 0
        self.last_outcome: TickOutcome | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"poll-{self.name}")
        logger.info(f"Poll loop '{self.name}' started (every {self.interval}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Poll loop '{self.name}' stopped after {self.tick_count} ticks")

    async def _run(self) -> None:
        next_due = self._clock()
        while True:
            remaining = next_due - self._clock()
            if remaining > 0:
                await asyncio.sleep(min(self.precision, remaining))
                continue
            try:
                await self._tick()
            finally:
                next_due = self._clock() + self.interval

    async def _tick(self) -> None:
        started = datetime.now(timezone.utc)
        try:
            if self.stall_timeout:
                result = await asyncio.wait_for(self._callback(), self.stall_timeout)
            else:
                result = await self._callback()
        except asyncio.TimeoutError:
            error = f"tick stalled for more than {self.stall_timeout}s"
            logger.error(f"Poll loop '{self.name}': {error}")
            outcome = TickOutcome(False, error, started, datetime.now(timezone.utc))
        except Exception as e:
            logger.exception(f"Poll loop '{self.name}' tick failed")
            outcome = TickOutcome(
                False, f"{type(e).__name__}: {e}", started, datetime.now(timezone.utc)
            )
        else:
            summary = getattr(result, "summary", None)
            outcome = TickOutcome(
                True,
                None,
                started,
                datetime.now(timezone.utc),
                detail=summary() if callable(summary) else None,
            )
        self.tick_count += 1
        self.last_outcome = outcome
