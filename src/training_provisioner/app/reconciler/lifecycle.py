"""Request lifecycle reconciler.

Each ``reconcile_once()`` tick lists every provisioning request, rebuilds
its caches (static pool usage, processed markers) from that list, and
advances each request of its intake path by at most one step:

  requested/released -> allocated   (static first-fit, else elastic, else failed)
  allocated          -> provisioning (after boot wait, once the probe passes)
  allocated          -> released    (unreachable past the backend's grace)
  provisioning       -> ready       (readiness gate + configuration run)
  provisioning       -> failed      (configuration run failed)
  allocated/provisioning -> failed  (hard allocation timeout)

State, handle and timestamps are only written through the store's status
path. A tick holds no state between runs besides caches that are rebuilt
from the store, so a crashed tick can simply be run again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from ..observability.metrics import (
    REQUEST_TRANSITIONS_TOTAL,
    REQUESTS_BY_STATE,
    STATIC_POOL_IN_USE,
    STORE_ERRORS_TOTAL,
)
from ..operations.expiry import expire_tracking
from ..protocols import BackendProvider, ConfigResolver, Provisioner, RecordStore
from ..providers.policy import BACKEND_TIMINGS, DEFAULT_SSH_USERNAMES, timing_for
from ..providers.static_pool import used_handles
from ..provisioning.errors import ProvisioningError, ReadinessTimeout
from ..provisioning.request import BACKEND_ELASTIC, BACKEND_STATIC, ProvisioningRequest
from ..provisioning.state_machine import (
    DEFAULT_ALLOCATION_TIMEOUT_SECONDS,
    DEFAULT_TRACKING_TTL_SECONDS,
    EXPIRABLE_STATES,
    PROVISIONING_FAILED_CODE,
    REQUEST_STATES,
    RESOURCE_EXHAUSTED_CODE,
    UNALLOCATED_STATES,
    allocate,
    apply_allocation_timeout,
    begin_provisioning,
    mark_failed,
    mark_ready,
    release,
)
from ..provisioning.writes import write_transition
from ..store.errors import StoreError
from ..store.kinds import PROVISIONING_REQUESTS
from .decisions import PROVISION, RELEASE, allocation_order, decide_allocated, in_boot_wait
from .tracking import ProcessedMarkers

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class Transition:
    request_id: str
    from_state: str
    to_state: str


@dataclass(slots=True)
class TickReport:
    """What one reconcile tick did."""

    tick_ts: datetime
    listed: int = 0
    transitions: list[Transition] = field(default_factory=list)
    waiting: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    store_unavailable: bool = False

    @property
    def transition_count(self) -> int:
        return len(self.transitions)

    def transitioned_to(self, state: str) -> list[str]:
        return [t.request_id for t in self.transitions if t.to_state == state]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _creation_order(pair: tuple[dict[str, Any], ProvisioningRequest]) -> tuple[datetime, str]:
    request = pair[1]
    return (request.created_at or _EPOCH, request.id)


class RequestReconciler:
    """Drives requests of one intake path through their lifecycle.

    Args:
        store: Declarative record store.
        providers: Backend providers; keyed by their ``backend_type``.
        provisioner: Readiness gate and configuration runner.
        config_resolver: Picks the configuration bundle per session.
        source: Only requests with this intake source are advanced
            (``None`` advances all). Pool usage always covers all sources.
        name: Loop name used in logs and metrics.
    """

    def __init__(
        self,
        store: RecordStore,
        providers: Iterable[BackendProvider],
        provisioner: Provisioner,
        config_resolver: ConfigResolver,
        *,
        source: str | None = None,
        name: str | None = None,
        allocation_timeout_seconds: int = DEFAULT_ALLOCATION_TIMEOUT_SECONDS,
        tracking_ttl_seconds: float = DEFAULT_TRACKING_TTL_SECONDS,
        ssh_usernames: Mapping[str, str] = DEFAULT_SSH_USERNAMES,
    ) -> None:
        self._store = store
        self._providers = {p.backend_type: p for p in providers}
        self._provisioner = provisioner
        self._config_resolver = config_resolver
        self._source = source
        self._allocation_timeout = allocation_timeout_seconds
        self._tracking_ttl = tracking_ttl_seconds
        self._ssh_usernames = ssh_usernames
        self.name = name or f'{source or "all"}-reconciler'
        self.markers = ProcessedMarkers()

    async def reconcile_once(self, *, now: datetime | None = None) -> TickReport:
        now = now or _now()
        report = TickReport(tick_ts=now)

        try:
            records = await self._store.list(PROVISIONING_REQUESTS)
        except StoreError:
            logger.warning(
                'Listing provisioning requests failed, retrying next tick',
                extra={'loop': self.name},
                exc_info=True,
            )
            STORE_ERRORS_TOTAL.labels(loop=self.name).inc()
            report.store_unavailable = True
            return report

        requests = [ProvisioningRequest.from_record(r) for r in records]
        report.listed = len(requests)

        self.markers.prune_missing({r.id for r in requests})
        expire_tracking(self.markers, requests, now=now, ttl_seconds=self._tracking_ttl)

        used = set(used_handles(requests, now=now, tracking_ttl_seconds=self._tracking_ttl))
        self._update_gauges(requests, used)

        for record, request in sorted(zip(records, requests), key=_creation_order):
            if self._source is not None and request.source != self._source:
                continue
            try:
                await self._initialise(record, request)
                self.markers.mark(request.id, now)
                await self._step(request, used, now, report)
            except StoreError:
                logger.warning(
                    'Store error while reconciling request, retrying next tick',
                    extra={'loop': self.name, 'request_id': request.id},
                    exc_info=True,
                )
                STORE_ERRORS_TOTAL.labels(loop=self.name).inc()
                report.errors.append(request.id)

        return report

    async def _initialise(self, record: Mapping[str, Any], request: ProvisioningRequest) -> None:
        """Give a fresh record a visible ``requested`` state once."""
        if (record.get('status') or {}).get('state') or request.id in self.markers:
            return
        await self._store.patch_status(PROVISIONING_REQUESTS, request.id, {'state': 'requested'})
        logger.info('Request accepted', extra={'request_id': request.id, 'source': request.source})

    async def _step(
        self,
        request: ProvisioningRequest,
        used: set[str],
        now: datetime,
        report: TickReport,
    ) -> None:
        if request.state in EXPIRABLE_STATES:
            expired = apply_allocation_timeout(
                request, now=now, timeout_seconds=self._allocation_timeout,
            )
            if expired is not request:
                logger.warning(
                    'Allocation timed out before provisioning',
                    extra={'request_id': request.id, 'handle': request.resource_handle},
                )
                await self._write(request, expired, report)
                return
            if request.backend_type not in BACKEND_TIMINGS:
                logger.error(
                    'Allocated request has no usable backend type',
                    extra={'request_id': request.id, 'backend_type': request.backend_type},
                )
                report.errors.append(request.id)
                return

        if request.state in UNALLOCATED_STATES:
            await self._allocate(request, used, now, report)
        elif request.state == 'allocated':
            await self._check_allocated(request, now, report)
        elif request.state == 'provisioning':
            await self._provision(request, now, report)

    async def _allocate(
        self,
        request: ProvisioningRequest,
        used: set[str],
        now: datetime,
        report: TickReport,
    ) -> None:
        elastic_pending = False
        for backend_type in allocation_order(request):
            provider = self._providers.get(backend_type)
            if provider is None:
                continue
            acquisition = await provider.acquire(request, frozenset(used))
            if acquisition is None:
                elastic_pending = elastic_pending or backend_type == BACKEND_ELASTIC
                continue

            updated = allocate(
                request,
                backend_type=backend_type,
                handle=acquisition.handle,
                address=acquisition.address,
                now=now,
            )
            if not await self._write(request, updated, report):
                return
            if backend_type == BACKEND_STATIC:
                used.add(acquisition.handle)
            return

        if elastic_pending:
            report.waiting.append(request.id)
            return

        failed = mark_failed(
            request,
            now=now,
            error_code=RESOURCE_EXHAUSTED_CODE,
            error_detail='no static handle available and elastic fallback disabled',
        )
        await self._write(request, failed, report)

    async def _check_allocated(
        self,
        request: ProvisioningRequest,
        now: datetime,
        report: TickReport,
    ) -> None:
        provider = self._providers.get(request.backend_type)
        if provider is None:
            logger.error(
                'No provider configured for backend type',
                extra={'request_id': request.id, 'backend_type': request.backend_type},
            )
            report.errors.append(request.id)
            return

        timing = timing_for(request.backend_type)
        if in_boot_wait(request, timing, now):
            report.waiting.append(request.id)
            return

        liveness = await provider.probe_liveness(request)
        action = decide_allocated(request, status=liveness.status, timing=timing, now=now)

        if action == PROVISION:
            provisioning = begin_provisioning(request, address=liveness.address, now=now)
            if await self._write(request, provisioning, report):
                await self._provision(provisioning, now, report)
        elif action == RELEASE:
            logger.warning(
                'Releasing unreachable allocation',
                extra={
                    'request_id': request.id,
                    'handle': request.resource_handle,
                    'backend_status': liveness.status,
                },
            )
            await provider.release(request)
            await self._write(request, release(request, now=now), report)
        else:
            report.waiting.append(request.id)

    async def _provision(
        self,
        request: ProvisioningRequest,
        now: datetime,
        report: TickReport,
    ) -> None:
        timing = timing_for(request.backend_type)
        address = request.address or request.resource_handle

        try:
            await self._provisioner.wait_for_ready(address, timing.ready_timeout_seconds)
        except ReadinessTimeout as e:
            logger.warning(
                'Machine not ready for configuration, retrying next tick',
                extra={'request_id': request.id, 'address': address, 'error': str(e)},
            )
            report.waiting.append(request.id)
            return

        bundle = await self._config_resolver.resolve(request.session_key)
        try:
            await self._provisioner.run_configuration(
                address,
                request.session_key,
                request.workload_spec,
                bundle,
                ssh_username=self._ssh_usernames.get(request.backend_type, 'root'),
            )
        except ProvisioningError as e:
            logger.error(
                'Configuration failed',
                extra={'request_id': request.id, 'address': address, 'job': e.job},
            )
            failed = mark_failed(
                request,
                now=now,
                error_code=PROVISIONING_FAILED_CODE,
                error_detail=str(e),
            )
            await self._write(request, failed, report)
            return

        await self._write(request, mark_ready(request, now=now), report)

    async def _write(
        self,
        before: ProvisioningRequest,
        after: ProvisioningRequest,
        report: TickReport,
    ) -> bool:
        """Persist a transition; False if the stored request moved on meanwhile."""
        if not await write_transition(self._store, before, after):
            return False
        REQUEST_TRANSITIONS_TOTAL.labels(
            from_state=before.state, to_state=after.state, source=after.source,
        ).inc()
        report.transitions.append(Transition(after.id, before.state, after.state))
        logger.info(
            'Request %s -> %s',
            before.state,
            after.state,
            extra={
                'request_id': after.id,
                'backend_type': after.backend_type,
                'handle': after.resource_handle,
            },
        )
        return True

    def _update_gauges(self, requests: list[ProvisioningRequest], used: set[str]) -> None:
        counts = {state: 0 for state in REQUEST_STATES}
        for request in requests:
            counts[request.state] = counts.get(request.state, 0) + 1
        for state, count in counts.items():
            REQUESTS_BY_STATE.labels(state=state).set(count)
        STATIC_POOL_IN_USE.set(len(used))
