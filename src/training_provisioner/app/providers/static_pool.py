"""Static pool provider and per-tick pool usage.

The pool is a fixed, ordered list of pre-built machine addresses. Machines
are never created or destroyed, only handed out and taken back. Which
handles are in use is not stored anywhere: it is recomputed every tick from
the listed requests.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import AbstractSet, Iterable, Sequence

from ..protocols import LivenessProbe
from ..provisioning.request import BACKEND_STATIC, ProvisioningRequest
from ..provisioning.state_machine import DEFAULT_TRACKING_TTL_SECONDS, LIVE_STATES
from .base import (
    STATUS_ABSENT,
    STATUS_LIVE,
    STATUS_PENDING,
    Acquisition,
    LivenessReport,
)
from .policy import STATIC_TIMING
from .probe import TcpLivenessProbe

logger = logging.getLogger(__name__)

DEFAULT_STATIC_POOL = ('192.168.2.37', '192.168.2.38')


def used_handles(
    requests: Iterable[ProvisioningRequest],
    *,
    now: datetime,
    tracking_ttl_seconds: float = DEFAULT_TRACKING_TTL_SECONDS,
) -> frozenset[str]:
    """Static handles held by some request at ``now``.

    Live requests always hold their handle. A failed request keeps holding
    its handle until ``failed_at + tracking_ttl_seconds`` so a possibly
    broken machine is not recycled straight away.
    """
    held: set[str] = set()
    for request in requests:
        if request.backend_type != BACKEND_STATIC or not request.resource_handle:
            continue
        if request.state in LIVE_STATES:
            held.add(request.resource_handle)
        elif request.state == 'failed':
            if request.failed_at is None:
                held.add(request.resource_handle)
            elif (now - request.failed_at).total_seconds() <= tracking_ttl_seconds:
                held.add(request.resource_handle)
    return frozenset(held)


class StaticPoolProvider:
    """First-fit allocation over a fixed handle list."""

    backend_type = BACKEND_STATIC

    def __init__(
        self,
        handles: Sequence[str] = DEFAULT_STATIC_POOL,
        *,
        probe: LivenessProbe | None = None,
    ) -> None:
        seen: set[str] = set()
        ordered: list[str] = []
        for handle in handles:
            if handle and handle not in seen:
                seen.add(handle)
                ordered.append(handle)
        self._handles = tuple(ordered)
        self._probe = probe or TcpLivenessProbe.for_timing(STATIC_TIMING)

    @property
    def handles(self) -> tuple[str, ...]:
        return self._handles

    def free_handles(self, used: AbstractSet[str]) -> tuple[str, ...]:
        return tuple(h for h in self._handles if h not in used)

    async def acquire(
        self,
        request: ProvisioningRequest,
        used_handles: AbstractSet[str],
    ) -> Acquisition | None:
        for handle in self.free_handles(used_handles):
            if await self._probe.check(handle):
                return Acquisition(handle=handle, address=handle)
            logger.info(
                'Static handle unreachable, skipping',
                extra={'request_id': request.id, 'handle': handle},
            )
        return None

    async def probe_liveness(self, request: ProvisioningRequest) -> LivenessReport:
        handle = request.resource_handle
        if handle not in self._handles:
            return LivenessReport(STATUS_ABSENT, detail='handle not in static pool')
        if await self._probe.check(handle):
            return LivenessReport(STATUS_LIVE, address=handle)
        return LivenessReport(STATUS_PENDING, address=handle)

    async def release(self, request: ProvisioningRequest) -> None:
        # Nothing to destroy: clearing the handle on the request frees the slot.
        logger.info(
            'Static handle returned to pool',
            extra={'request_id': request.id, 'handle': request.resource_handle},
        )
