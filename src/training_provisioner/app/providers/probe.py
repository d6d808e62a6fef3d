"""TCP liveness probe against a machine's administrative port."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .policy import ADMIN_PORT, BackendTiming

logger = logging.getLogger(__name__)


class TcpLivenessProbe:
    """Opens (and immediately closes) a TCP connection to ``address:port``.

    Up to ``attempts`` connections are tried, sleeping ``interval_seconds``
    between failed attempts. Any connection error or timeout counts as a
    failed attempt; the probe itself never raises.
    """

    def __init__(
        self,
        *,
        port: int = ADMIN_PORT,
        connect_timeout_seconds: float = 5.0,
        attempts: int = 1,
        interval_seconds: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError('attempts must be >= 1')
        self._port = port
        self._connect_timeout = connect_timeout_seconds
        self._attempts = attempts
        self._interval = interval_seconds
        self._sleep = sleep

    @classmethod
    def for_timing(cls, timing: BackendTiming, **kwargs) -> TcpLivenessProbe:
        return cls(
            connect_timeout_seconds=timing.probe_connect_timeout_seconds,
            attempts=timing.probe_attempts,
            interval_seconds=timing.probe_interval_seconds,
            **kwargs,
        )

    async def check(self, address: str) -> bool:
        if not address:
            return False
        for attempt in range(self._attempts):
            if attempt and self._interval:
                await self._sleep(self._interval)
            if await self._connect_once(address):
                return True
            logger.debug(
                'Probe %s:%d failed (attempt %d/%d)',
                address,
                self._port,
                attempt + 1,
                self._attempts,
            )
        return False

    async def _connect_once(self, address: str) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(address, self._port),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
