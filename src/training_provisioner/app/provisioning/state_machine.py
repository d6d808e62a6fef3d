"""Provisioning request state machine and hard-timeout handling.

Implements the request lifecycle:
  requested -> allocated -> provisioning -> ready

Plus the release loop and terminal failures:
  allocated -> released -> allocated (re-allocation)
  requested | released | allocated | provisioning -> failed

``ready`` and ``failed`` have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from types import MappingProxyType

from .request import BACKEND_NONE, BACKEND_TYPES, ProvisioningRequest

RESOURCE_EXHAUSTED_CODE = 'RESOURCE_EXHAUSTED'
ALLOCATION_TIMEOUT_CODE = 'ALLOCATION_TIMEOUT'
PROVISIONING_FAILED_CODE = 'PROVISIONING_FAILED'

DEFAULT_ALLOCATION_TIMEOUT_SECONDS = 3600
DEFAULT_TRACKING_TTL_SECONDS = 86400

REQUEST_STATES = (
    'requested',
    'allocated',
    'provisioning',
    'ready',
    'failed',
    'released',
)

TERMINAL_STATES = frozenset({'ready', 'failed'})
LIVE_STATES = frozenset({'allocated', 'provisioning', 'ready'})
UNALLOCATED_STATES = frozenset({'requested', 'released'})
EXPIRABLE_STATES = frozenset({'allocated', 'provisioning'})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        'requested': frozenset({'allocated', 'failed'}),
        'released': frozenset({'allocated', 'failed'}),
        'allocated': frozenset({'provisioning', 'released', 'failed'}),
        'provisioning': frozenset({'ready', 'failed'}),
        'ready': frozenset(),
        'failed': frozenset(),
    }
)


class InvalidStateTransition(ValueError):
    """Raised for invalid request state transitions."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state!r} -> {to_state!r}'
        )


def allocate(
    request: ProvisioningRequest,
    *,
    backend_type: str,
    handle: str,
    now: datetime,
    address: str = '',
) -> ProvisioningRequest:
    """Bind a backend handle to an unallocated request."""
    _require_aware_datetime(now)
    if backend_type not in BACKEND_TYPES or backend_type == BACKEND_NONE:
        raise ValueError(f'unknown backend type: {backend_type!r}')
    if not handle:
        raise ValueError('handle is required')
    _check(request, 'allocated')
    return replace(
        request,
        state='allocated',
        backend_type=backend_type,
        resource_handle=handle,
        address=address,
        allocated_at=now,
        last_error_code=None,
        last_error_detail=None,
    )


def begin_provisioning(
    request: ProvisioningRequest,
    *,
    address: str,
    now: datetime,
) -> ProvisioningRequest:
    _require_aware_datetime(now)
    _check(request, 'provisioning')
    return replace(request, state='provisioning', address=address or request.address)


def mark_ready(
    request: ProvisioningRequest,
    *,
    now: datetime,
) -> ProvisioningRequest:
    _require_aware_datetime(now)
    _check(request, 'ready')
    return replace(request, state='ready', provisioned=True, ready_at=now)


def mark_failed(
    request: ProvisioningRequest,
    *,
    now: datetime,
    error_code: str,
    error_detail: str,
) -> ProvisioningRequest:
    """Move a non-terminal request to ``failed``.

    The resource handle is kept on purpose: a failed machine stays counted
    as used until the tracking TTL passes.
    """
    _require_aware_datetime(now)
    _check(request, 'failed')
    return replace(
        request,
        state='failed',
        failed_at=now,
        last_error_code=error_code,
        last_error_detail=error_detail,
    )


def release(
    request: ProvisioningRequest,
    *,
    now: datetime,
) -> ProvisioningRequest:
    """Drop the handle so the request is allocated afresh next tick."""
    _require_aware_datetime(now)
    _check(request, 'released')
    return replace(
        request,
        state='released',
        backend_type=BACKEND_NONE,
        resource_handle='',
        address='',
        allocated_at=None,
    )


def apply_allocation_timeout(
    request: ProvisioningRequest,
    *,
    now: datetime,
    timeout_seconds: int = DEFAULT_ALLOCATION_TIMEOUT_SECONDS,
) -> ProvisioningRequest:
    """Fail an allocated-but-unprovisioned request past the hard timeout.

    Returns the request unchanged when it is not eligible or still within
    the window (the boundary itself is not expired).
    """
    _require_aware_datetime(now)
    if request.state not in EXPIRABLE_STATES or request.provisioned:
        return request
    if request.allocated_at is None:
        return request

    elapsed_seconds = (now - request.allocated_at).total_seconds()
    if elapsed_seconds <= timeout_seconds:
        return request

    return mark_failed(
        request,
        now=now,
        error_code=ALLOCATION_TIMEOUT_CODE,
        error_detail=(
            f'not provisioned within allocation timeout '
            f'({int(elapsed_seconds)}s > {timeout_seconds}s)'
        ),
    )


def _check(request: ProvisioningRequest, to_state: str) -> None:
    allowed = ALLOWED_TRANSITIONS.get(request.state, frozenset())
    if to_state not in allowed:
        raise InvalidStateTransition(request.state, to_state)


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('now must be timezone-aware')
