"""Backend-agnostic provider results.

Providers report one of four statuses; the reconciler never needs anything
more specific than this.
"""

from __future__ import annotations

from dataclasses import dataclass

STATUS_ABSENT = 'absent'
STATUS_PENDING = 'pending'
STATUS_LIVE = 'live'
STATUS_FAILED = 'failed'

BACKEND_STATUSES = frozenset({STATUS_ABSENT, STATUS_PENDING, STATUS_LIVE, STATUS_FAILED})


@dataclass(frozen=True, slots=True)
class Acquisition:
    """A handle granted to a request, plus its network address if known yet."""

    handle: str
    address: str = ''


@dataclass(frozen=True, slots=True)
class LivenessReport:
    status: str
    address: str = ''
    detail: str = ''

    def __post_init__(self) -> None:
        if self.status not in BACKEND_STATUSES:
            raise ValueError(f'unknown backend status: {self.status!r}')
