"""Loop supervisor tests.

Validates:
  - crashing ticks are restarted with exponential backoff, capped
  - a loop is abandoned after too many consecutive crashes
  - a clean tick resets the consecutive-failure count
  - cancellation propagates and is never counted as a crash
  - start()/stop() run and cancel every loop task
  - loop names must be unique
"""

from __future__ import annotations

import asyncio

import pytest

from training_provisioner.app.operations.supervisor import LoopSupervisor, PeriodicLoop


class _Sleeps:
    """Fake sleep recording delays; cancels after ``limit`` calls."""

    def __init__(self, limit: int | None = None) -> None:
        self.delays: list[float] = []
        self._limit = limit

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._limit is not None and len(self.delays) >= self._limit:
            raise asyncio.CancelledError


class TestBackoff:
    def test_doubles_and_caps(self):
        supervisor = LoopSupervisor([])
        assert supervisor.backoff_delay(1) == 10
        assert supervisor.backoff_delay(2) == 20
        assert supervisor.backoff_delay(5) == 160
        assert supervisor.backoff_delay(6) == 300
        assert supervisor.backoff_delay(20) == 300

    def test_duplicate_names_rejected(self):
        async def tick() -> None:
            return None

        with pytest.raises(ValueError, match='unique'):
            LoopSupervisor([PeriodicLoop('a', tick, 1), PeriodicLoop('a', tick, 1)])


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_abandons_after_max_restarts(self):
        calls = 0

        async def tick() -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError('boom')

        sleeps = _Sleeps()
        supervisor = LoopSupervisor([PeriodicLoop('gc', tick, 10)], max_restarts=5, sleep=sleeps)

        await supervisor.run_loop(supervisor._loops[0])

        state = supervisor.states['gc']
        assert calls == 6
        assert sleeps.delays == [10, 20, 40, 80, 160]
        assert state.abandoned is True
        assert state.running is False
        assert state.restarts == 5
        assert state.last_error == 'RuntimeError: boom'

    @pytest.mark.asyncio
    async def test_clean_tick_resets_failures(self):
        outcomes = [RuntimeError('a'), RuntimeError('b'), None]

        async def tick() -> None:
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome

        sleeps = _Sleeps(limit=3)
        supervisor = LoopSupervisor([PeriodicLoop('intake', tick, 5)], sleep=sleeps)

        with pytest.raises(asyncio.CancelledError):
            await supervisor.run_loop(supervisor._loops[0])

        state = supervisor.states['intake']
        assert sleeps.delays == [10, 20, 5]
        assert state.consecutive_failures == 0
        assert state.restarts == 2
        assert state.last_tick_at is not None
        assert state.abandoned is False

    @pytest.mark.asyncio
    async def test_cancelled_tick_is_not_a_crash(self):
        async def tick() -> None:
            raise asyncio.CancelledError

        supervisor = LoopSupervisor([PeriodicLoop('bridge', tick, 5)], sleep=_Sleeps())

        with pytest.raises(asyncio.CancelledError):
            await supervisor.run_loop(supervisor._loops[0])

        assert supervisor.states['bridge'].consecutive_failures == 0


class TestStartStop:
    @pytest.mark.asyncio
    async def test_runs_and_stops_loops(self):
        ticks = {'a': 0, 'b': 0}

        def make_tick(name: str):
            async def tick() -> None:
                ticks[name] += 1
            return tick

        supervisor = LoopSupervisor([
            PeriodicLoop('a', make_tick('a'), 0.01),
            PeriodicLoop('b', make_tick('b'), 0.01),
        ])
        supervisor.start()
        await asyncio.sleep(0.05)
        await supervisor.stop()

        assert ticks['a'] >= 1
        assert ticks['b'] >= 1
        snapshot = supervisor.snapshot()
        assert snapshot['a']['running'] is False
        assert snapshot['b']['abandoned'] is False

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self):
        async def tick() -> None:
            return None

        supervisor = LoopSupervisor([PeriodicLoop('a', tick, 1)])
        supervisor.start()
        try:
            with pytest.raises(RuntimeError):
                supervisor.start()
        finally:
            await supervisor.stop()
