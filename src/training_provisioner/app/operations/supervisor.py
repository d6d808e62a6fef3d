"""Supervisor for periodic reconciliation loops.

Every loop runs as its own asyncio task on a fixed interval. An exception
escaping a tick counts as a crash: the supervisor logs it, waits an
exponentially growing backoff and runs the loop again. Loops keep no
unsaved state between ticks, so restarting one is always safe. After
``max_restarts`` consecutive crashes the loop is given up on; a clean tick
resets the count.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence

from ..observability.logging import bind_loop
from ..observability.metrics import LOOP_RESTARTS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESTARTS = 5
DEFAULT_BASE_BACKOFF_SECONDS = 10.0
DEFAULT_MAX_BACKOFF_SECONDS = 300.0


@dataclass(frozen=True, slots=True)
class PeriodicLoop:
    name: str
    tick: Callable[[], Awaitable[Any]]
    interval_seconds: float


@dataclass(slots=True)
class LoopState:
    """Health of one supervised loop, exposed on /health."""

    name: str
    running: bool = False
    abandoned: bool = False
    consecutive_failures: int = 0
    restarts: int = 0
    last_error: str | None = None
    last_tick_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            'running': self.running,
            'abandoned': self.abandoned,
            'consecutive_failures': self.consecutive_failures,
            'restarts': self.restarts,
            'last_error': self.last_error,
            'last_tick_at': self.last_tick_at.isoformat() if self.last_tick_at else None,
        }


class LoopSupervisor:
    def __init__(
        self,
        loops: Sequence[PeriodicLoop],
        *,
        max_restarts: int = DEFAULT_MAX_RESTARTS,
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        names = [loop.name for loop in loops]
        if len(set(names)) != len(names):
            raise ValueError(f'loop names must be unique: {names}')
        self._loops = tuple(loops)
        self._max_restarts = max_restarts
        self._base_backoff = base_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._sleep = sleep
        self._tasks: list[asyncio.Task[None]] = []
        self.states = {loop.name: LoopState(name=loop.name) for loop in self._loops}

    @property
    def loop_names(self) -> tuple[str, ...]:
        return tuple(loop.name for loop in self._loops)

    def backoff_delay(self, failures: int) -> float:
        """Delay before restarting after ``failures`` consecutive crashes."""
        return min(self._base_backoff * (2 ** max(failures - 1, 0)), self._max_backoff)

    async def run_loop(self, loop: PeriodicLoop) -> None:
        """Run ``loop`` until cancelled or abandoned."""
        state = self.states[loop.name]
        bind_loop(loop.name)
        state.running = True
        try:
            while True:
                try:
                    await loop.tick()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    state.consecutive_failures += 1
                    state.last_error = f'{type(e).__name__}: {e}'
                    if state.consecutive_failures > self._max_restarts:
                        state.abandoned = True
                        logger.error(
                            'Loop crashed %d times in a row, giving up',
                            state.consecutive_failures,
                            extra={'loop': loop.name},
                            exc_info=True,
                        )
                        return

                    delay = self.backoff_delay(state.consecutive_failures)
                    state.restarts += 1
                    LOOP_RESTARTS_TOTAL.labels(loop=loop.name).inc()
                    logger.error(
                        'Loop crashed, restarting in %.0fs (%d/%d)',
                        delay,
                        state.consecutive_failures,
                        self._max_restarts,
                        extra={'loop': loop.name},
                        exc_info=True,
                    )
                    await self._sleep(delay)
                    continue

                state.consecutive_failures = 0
                state.last_tick_at = datetime.now(timezone.utc)
                await self._sleep(loop.interval_seconds)
        finally:
            state.running = False

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError('supervisor already started')
        for loop in self._loops:
            logger.info(
                'Starting loop (interval=%ss)', loop.interval_seconds, extra={'loop': loop.name},
            )
            self._tasks.append(asyncio.create_task(self.run_loop(loop), name=loop.name))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info('All loops stopped')

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: state.as_dict() for name, state in self.states.items()}
