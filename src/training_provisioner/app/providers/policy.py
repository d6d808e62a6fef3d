"""Backend timing policy.

Boot-wait, unreachable grace and probe parameters depend only on the
backend type a request was allocated on, never on the request itself or on
the shape of its address.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from ..provisioning.request import BACKEND_ELASTIC, BACKEND_STATIC

ADMIN_PORT = 22


@dataclass(frozen=True, slots=True)
class BackendTiming:
    """Timing knobs for one backend type (all values in seconds)."""

    boot_wait_seconds: float
    unreachable_grace_seconds: float
    probe_attempts: int
    probe_connect_timeout_seconds: float
    probe_interval_seconds: float
    ready_timeout_seconds: float


STATIC_TIMING = BackendTiming(
    boot_wait_seconds=30,
    unreachable_grace_seconds=30,
    probe_attempts=1,
    probe_connect_timeout_seconds=5,
    probe_interval_seconds=0,
    ready_timeout_seconds=120,
)

# Cold cloud instances take minutes to boot and bring up sshd.
ELASTIC_TIMING = BackendTiming(
    boot_wait_seconds=120,
    unreachable_grace_seconds=600,
    probe_attempts=3,
    probe_connect_timeout_seconds=15,
    probe_interval_seconds=10,
    ready_timeout_seconds=300,
)

BACKEND_TIMINGS: Mapping[str, BackendTiming] = MappingProxyType(
    {
        BACKEND_STATIC: STATIC_TIMING,
        BACKEND_ELASTIC: ELASTIC_TIMING,
    }
)


def timing_for(backend_type: str) -> BackendTiming:
    """Return the timing policy for ``backend_type``.

    Raises:
        ValueError: For ``none`` or an unknown backend type.
    """
    try:
        return BACKEND_TIMINGS[backend_type]
    except KeyError:
        raise ValueError(f'no timing policy for backend type {backend_type!r}') from None


DEFAULT_SSH_USERNAMES: Mapping[str, str] = MappingProxyType(
    {
        BACKEND_STATIC: 'kube',
        BACKEND_ELASTIC: 'ubuntu',
    }
)
