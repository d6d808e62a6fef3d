"""Allocation expiry detection and tracking-marker TTL.

Scans allocated/provisioning requests for those that never got provisioned
within the hard allocation timeout and computes their ``failed`` snapshot
via the state machine's ``apply_allocation_timeout()``. The detector is
pure: callers decide whether and how to persist the result.

Usage::

    detector = AllocationExpiryDetector()
    report = detector.sweep(requests, now=datetime.now(UTC))
    # report.expired contains (before, after) pairs to write
    # report.healthy contains requests still within the window
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from ..provisioning.request import ProvisioningRequest
from ..provisioning.state_machine import (
    DEFAULT_ALLOCATION_TIMEOUT_SECONDS,
    DEFAULT_TRACKING_TTL_SECONDS,
    EXPIRABLE_STATES,
    apply_allocation_timeout,
)
from ..reconciler.tracking import ProcessedMarkers

TRACKED_TERMINAL_STATES = frozenset({'failed', 'released'})


@dataclass(frozen=True, slots=True)
class ExpiredRequest:
    """A single expired request with its before/after snapshot."""

    before: ProvisioningRequest
    after: ProvisioningRequest
    elapsed_seconds: float


@dataclass(frozen=True, slots=True)
class ExpiryReport:
    """Result of an allocation-expiry sweep.

    Attributes:
        expired: Requests past the allocation timeout, transitioned to failed.
        healthy: Allocated/provisioning requests still within the window.
        skipped: Requests not eligible (unallocated, terminal, provisioned).
        sweep_ts: Timestamp of the sweep.
    """

    expired: tuple[ExpiredRequest, ...]
    healthy: tuple[ProvisioningRequest, ...]
    skipped: tuple[ProvisioningRequest, ...]
    sweep_ts: datetime

    @property
    def expired_count(self) -> int:
        return len(self.expired)

    @property
    def healthy_count(self) -> int:
        return len(self.healthy)

    @property
    def total_scanned(self) -> int:
        return len(self.expired) + len(self.healthy) + len(self.skipped)


class AllocationExpiryDetector:
    """Detects allocations that never reached provisioned.

    Args:
        timeout_seconds: Hard allocation timeout. Defaults to one hour.
    """

    def __init__(self, timeout_seconds: int = DEFAULT_ALLOCATION_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds

    @property
    def timeout_seconds(self) -> int:
        return self._timeout_seconds

    def sweep(
        self,
        requests: Sequence[ProvisioningRequest],
        *,
        now: datetime,
    ) -> ExpiryReport:
        expired: list[ExpiredRequest] = []
        healthy: list[ProvisioningRequest] = []
        skipped: list[ProvisioningRequest] = []

        for request in requests:
            if request.state not in EXPIRABLE_STATES or request.provisioned:
                skipped.append(request)
                continue
            if request.allocated_at is None:
                skipped.append(request)
                continue

            result = apply_allocation_timeout(
                request, now=now, timeout_seconds=self._timeout_seconds,
            )
            if result is request:
                healthy.append(request)
            else:
                expired.append(ExpiredRequest(
                    before=request,
                    after=result,
                    elapsed_seconds=(now - request.allocated_at).total_seconds(),
                ))

        return ExpiryReport(
            expired=tuple(expired),
            healthy=tuple(healthy),
            skipped=tuple(skipped),
            sweep_ts=now,
        )

    def detect_only(
        self,
        requests: Sequence[ProvisioningRequest],
        *,
        now: datetime,
    ) -> list[ProvisioningRequest]:
        """Return only expired requests, without the failed snapshots."""
        report = self.sweep(requests, now=now)
        return [entry.before for entry in report.expired]


def expire_tracking(
    markers: ProcessedMarkers,
    requests: Iterable[ProvisioningRequest],
    *,
    now: datetime,
    ttl_seconds: float = DEFAULT_TRACKING_TTL_SECONDS,
) -> list[str]:
    """Drop markers of failed/released requests older than the tracking TTL.

    Age is taken from ``failed_at`` when set, else from when the marker was
    recorded. The requests themselves are untouched.
    """
    dropped: list[str] = []
    for request in requests:
        if request.state not in TRACKED_TERMINAL_STATES or request.id not in markers:
            continue
        since = request.failed_at or markers.marked_at(request.id)
        if since is None:
            continue
        if (now - since).total_seconds() > ttl_seconds:
            markers.discard(request.id)
            dropped.append(request.id)
    return dropped
