"""Pure decision functions for the request reconciler.

Nothing here performs I/O: inputs are a request snapshot, the backend
timing policy, a provider status and ``now``.
"""

from __future__ import annotations

from datetime import datetime

from ..providers.base import STATUS_FAILED, STATUS_LIVE
from ..providers.policy import BackendTiming
from ..provisioning.request import BACKEND_ELASTIC, BACKEND_STATIC, ProvisioningRequest

WAIT = 'wait'
PROVISION = 'provision'
RELEASE = 'release'


def allocation_order(request: ProvisioningRequest) -> tuple[str, ...]:
    """Backends to try, in order, for an unallocated request."""
    order: list[str] = []
    if request.prefer_static:
        order.append(BACKEND_STATIC)
    if request.elastic_fallback_enabled:
        order.append(BACKEND_ELASTIC)
    return tuple(order)


def allocation_age_seconds(request: ProvisioningRequest, now: datetime) -> float:
    if request.allocated_at is None:
        return 0.0
    return (now - request.allocated_at).total_seconds()


def in_boot_wait(request: ProvisioningRequest, timing: BackendTiming, now: datetime) -> bool:
    return not request.provisioned and allocation_age_seconds(request, now) < timing.boot_wait_seconds


def decide_allocated(
    request: ProvisioningRequest,
    *,
    status: str,
    timing: BackendTiming,
    now: datetime,
) -> str:
    """What to do with an allocated request past its boot wait.

    A live machine moves on to provisioning. A permanently failed backend
    is released at once. Anything else waits until the unreachable grace
    (measured from allocation) is exceeded, then is released.
    """
    if status == STATUS_LIVE:
        return PROVISION
    if status == STATUS_FAILED:
        return RELEASE
    if allocation_age_seconds(request, now) <= timing.unreachable_grace_seconds:
        return WAIT
    return RELEASE
