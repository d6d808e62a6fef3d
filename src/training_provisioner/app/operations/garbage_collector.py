"""Garbage collection loop.

Three independent sweeps per tick:

1. allocation expiry: allocated/provisioning requests never provisioned
   within the hard timeout are written as ``failed`` (no release);
2. elastic instance TTL: managed instances stuck failed/terminated or
   pending are deleted, whatever the owning request's state;
3. orphaned platform requests: requests whose session record is gone and
   that are older than the orphan age are deleted, releasing their elastic
   instance first. Managed instances whose request no longer exists are
   deleted by the instance sweep.

Expiry writes go through ``write_transition`` so a request the reconciler
finished meanwhile is left alone. Static handles are never freed here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..observability.metrics import GC_DELETIONS_TOTAL, STORE_ERRORS_TOTAL
from ..protocols import RecordStore
from ..providers.elastic import (
    INSTANCE_FAILED_TTL_SECONDS,
    INSTANCE_PENDING_TTL_SECONDS,
    ElasticProvider,
)
from ..provisioning.request import BACKEND_ELASTIC, SOURCE_PLATFORM, ProvisioningRequest
from ..provisioning.writes import write_transition
from ..store.errors import StoreError
from ..store.kinds import PLATFORM_SESSIONS, PROVISIONING_REQUESTS
from .expiry import AllocationExpiryDetector

logger = logging.getLogger(__name__)

DEFAULT_ORPHAN_AGE_SECONDS = 3600


@dataclass(slots=True)
class CollectionReport:
    tick_ts: datetime
    expired: list[str] = field(default_factory=list)
    deleted_instances: list[str] = field(default_factory=list)
    deleted_orphans: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total_actions(self) -> int:
        return len(self.expired) + len(self.deleted_instances) + len(self.deleted_orphans)


class GarbageCollector:
    """Applies expiry policies against the store.

    Args:
        store: Declarative record store.
        elastic: Elastic provider whose instances are swept, if any.
        detector: Allocation-expiry detector (carries the hard timeout).
        orphan_age_seconds: Minimum age before an orphaned platform
            request is deleted. ``None`` disables orphan cleanup.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        elastic: ElasticProvider | None = None,
        detector: AllocationExpiryDetector | None = None,
        orphan_age_seconds: float | None = DEFAULT_ORPHAN_AGE_SECONDS,
        instance_failed_ttl_seconds: float = INSTANCE_FAILED_TTL_SECONDS,
        instance_pending_ttl_seconds: float = INSTANCE_PENDING_TTL_SECONDS,
        name: str = 'garbage-collector',
    ) -> None:
        self._store = store
        self._elastic = elastic
        self._detector = detector or AllocationExpiryDetector()
        self._orphan_age = orphan_age_seconds
        self._instance_failed_ttl = instance_failed_ttl_seconds
        self._instance_pending_ttl = instance_pending_ttl_seconds
        self.name = name

    async def collect_once(self, *, now: datetime | None = None) -> CollectionReport:
        now = now or datetime.now(timezone.utc)
        report = CollectionReport(tick_ts=now)

        try:
            records = await self._store.list(PROVISIONING_REQUESTS)
        except StoreError:
            self._store_failed('requests', report)
            records = None

        live_request_ids: set[str] | None = None
        if records is not None:
            requests = [ProvisioningRequest.from_record(r) for r in records]
            live_request_ids = {r.id for r in requests}
            await self._expire_allocations(requests, now, report)
            if self._orphan_age is not None:
                await self._delete_orphans(requests, now, report)
                live_request_ids.difference_update(report.deleted_orphans)

        if self._elastic is not None:
            try:
                report.deleted_instances = await self._elastic.collect_expired(
                    now=now,
                    failed_ttl_seconds=self._instance_failed_ttl,
                    pending_ttl_seconds=self._instance_pending_ttl,
                    live_request_ids=live_request_ids,
                )
            except StoreError:
                self._store_failed('instances', report)
            GC_DELETIONS_TOTAL.labels(kind='instance').inc(len(report.deleted_instances))

        if report.total_actions:
            logger.info(
                'Garbage collection tick',
                extra={
                    'expired': len(report.expired),
                    'deleted_instances': len(report.deleted_instances),
                    'deleted_orphans': len(report.deleted_orphans),
                },
            )
        return report

    async def _expire_allocations(
        self,
        requests: list[ProvisioningRequest],
        now: datetime,
        report: CollectionReport,
    ) -> None:
        sweep = self._detector.sweep(requests, now=now)
        for entry in sweep.expired:
            try:
                written = await write_transition(self._store, entry.before, entry.after)
            except StoreError:
                self._store_failed(entry.after.id, report)
                continue
            if not written:
                continue
            report.expired.append(entry.after.id)
            GC_DELETIONS_TOTAL.labels(kind='allocation_timeout').inc()
            logger.warning(
                'Allocation expired, request failed',
                extra={
                    'request_id': entry.after.id,
                    'handle': entry.before.resource_handle,
                    'elapsed_seconds': int(entry.elapsed_seconds),
                },
            )

    async def _delete_orphans(
        self,
        requests: list[ProvisioningRequest],
        now: datetime,
        report: CollectionReport,
    ) -> None:
        candidates = [
            r for r in requests
            if r.source == SOURCE_PLATFORM
            and r.created_at is not None
            and (now - r.created_at).total_seconds() > self._orphan_age
        ]
        if not candidates:
            return

        try:
            sessions = await self._store.list(PLATFORM_SESSIONS)
        except StoreError:
            self._store_failed('sessions', report)
            return
        live_sessions = {(s.get('metadata') or {}).get('name') for s in sessions}

        for request in candidates:
            if request.session_key in live_sessions:
                continue
            try:
                await self._release_instance(request)
                deleted = await self._store.delete(PROVISIONING_REQUESTS, request.id)
            except StoreError:
                self._store_failed(request.id, report)
                continue
            if deleted:
                report.deleted_orphans.append(request.id)
                GC_DELETIONS_TOTAL.labels(kind='orphan_request').inc()
                logger.info(
                    'Deleted request of vanished session',
                    extra={'request_id': request.id, 'session_id': request.session_key},
                )

    async def _release_instance(self, request: ProvisioningRequest) -> None:
        if (
            self._elastic is not None
            and request.backend_type == BACKEND_ELASTIC
            and request.resource_handle
        ):
            await self._elastic.release(request)

    def _store_failed(self, what: str, report: CollectionReport) -> None:
        logger.warning(
            'Garbage collection store error, retrying next tick',
            extra={'loop': self.name, 'target': what},
            exc_info=True,
        )
        STORE_ERRORS_TOTAL.labels(loop=self.name).inc()
        report.errors.append(what)
