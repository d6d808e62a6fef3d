"""Elastic provider: one cloud instance record per request.

Instances are declarative ``Instance`` records reconciled by the cluster's
cloud controller, which reports ``status.atProvider.instanceState`` and
``status.atProvider.publicIp``. Creation is idempotent: the record name is
derived from the request, so a second ``acquire`` reads the existing record
instead of creating a duplicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AbstractSet, Any, Mapping

from ..protocols import LivenessProbe, RecordStore
from ..provisioning.request import BACKEND_ELASTIC, ProvisioningRequest, parse_timestamp
from ..store.errors import StoreConflictError
from ..store.kinds import ELASTIC_INSTANCES
from .base import (
    STATUS_ABSENT,
    STATUS_FAILED,
    STATUS_LIVE,
    STATUS_PENDING,
    Acquisition,
    LivenessReport,
)
from .policy import ELASTIC_TIMING
from .probe import TcpLivenessProbe

logger = logging.getLogger(__name__)

INSTANCE_FAILED_TTL_SECONDS = 300
INSTANCE_PENDING_TTL_SECONDS = 600
INSTANCE_ORPHAN_GRACE_SECONDS = 300

MANAGED_BY_LABEL = 'training.provisioner/managed-by'
MANAGED_BY_VALUE = 'training-provisioner'
REQUEST_LABEL = 'training.provisioner/request'

RUNNING_STATE = 'running'
FAILED_INSTANCE_STATES = frozenset({'terminated', 'shutting-down', 'stopped'})


@dataclass(frozen=True, slots=True)
class InstanceTemplate:
    """Cloud-side parameters for every instance this provider creates."""

    region: str = 'us-east-1'
    ami: str = ''
    instance_type: str = 't3.micro'
    subnet_id: str = ''
    security_group_ids: tuple[str, ...] = ()
    key_name: str = ''
    provider_config: str = 'default'


def instance_name(request: ProvisioningRequest) -> str:
    return f'training-{request.session_key}'


def classify_instance(record: Mapping[str, Any]) -> tuple[str, str]:
    """Return ``(status, public_ip)`` for an instance record.

    ``live`` here only means running with an address; the caller still has
    to probe the address before treating the machine as reachable.
    """
    at_provider = (record.get('status') or {}).get('atProvider') or {}
    state = (at_provider.get('instanceState') or '').lower()
    public_ip = at_provider.get('publicIp') or ''

    if state in FAILED_INSTANCE_STATES:
        return STATUS_FAILED, public_ip
    if state == RUNNING_STATE and public_ip:
        return STATUS_LIVE, public_ip
    return STATUS_PENDING, public_ip


class ElasticProvider:
    """Creates, inspects and deletes per-request cloud instances."""

    backend_type = BACKEND_ELASTIC

    def __init__(
        self,
        store: RecordStore,
        template: InstanceTemplate | None = None,
        *,
        probe: LivenessProbe | None = None,
    ) -> None:
        self._store = store
        self._template = template or InstanceTemplate()
        self._probe = probe or TcpLivenessProbe.for_timing(ELASTIC_TIMING)

    def build_manifest(self, request: ProvisioningRequest) -> dict[str, Any]:
        t = self._template
        name = instance_name(request)
        return {
            'metadata': {
                'name': name,
                'labels': {
                    MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                    REQUEST_LABEL: request.id,
                },
            },
            'spec': {
                'forProvider': {
                    'ami': t.ami,
                    'instanceType': t.instance_type,
                    'region': t.region,
                    'subnetId': t.subnet_id,
                    'vpcSecurityGroupIds': list(t.security_group_ids),
                    'keyName': t.key_name,
                    'associatePublicIpAddress': True,
                    'tags': {
                        'Name': f'hobbyfarm-{request.session_key}',
                        'Session': request.session_key,
                    },
                },
                'providerConfigRef': {'name': t.provider_config},
            },
        }

    async def acquire(
        self,
        request: ProvisioningRequest,
        used_handles: AbstractSet[str],
    ) -> Acquisition | None:
        """Get or create the request's instance.

        Returns ``None`` when a previous instance for this request is in a
        failed state: it is deleted now and recreated on a later tick.
        """
        name = instance_name(request)
        record = await self._store.get(ELASTIC_INSTANCES, name)
        if record is None:
            try:
                record = await self._store.create(ELASTIC_INSTANCES, self.build_manifest(request))
                logger.info(
                    'Created elastic instance',
                    extra={'request_id': request.id, 'instance': name},
                )
            except StoreConflictError:
                record = await self._store.get(ELASTIC_INSTANCES, name) or {}

        status, public_ip = classify_instance(record)
        if status == STATUS_FAILED:
            logger.warning(
                'Existing elastic instance is failed, deleting before retry',
                extra={'request_id': request.id, 'instance': name},
            )
            await self._store.delete(ELASTIC_INSTANCES, name)
            return None
        return Acquisition(handle=name, address=public_ip)

    async def probe_liveness(self, request: ProvisioningRequest) -> LivenessReport:
        record = await self._store.get(ELASTIC_INSTANCES, request.resource_handle)
        if record is None:
            return LivenessReport(STATUS_ABSENT, detail='instance record missing')

        status, public_ip = classify_instance(record)
        if status != STATUS_LIVE:
            return LivenessReport(status, address=public_ip)
        if await self._probe.check(public_ip):
            return LivenessReport(STATUS_LIVE, address=public_ip)
        return LivenessReport(STATUS_PENDING, address=public_ip, detail='running but unreachable')

    async def release(self, request: ProvisioningRequest) -> None:
        if not request.resource_handle:
            return
        deleted = await self._store.delete(ELASTIC_INSTANCES, request.resource_handle)
        logger.info(
            'Released elastic instance',
            extra={
                'request_id': request.id,
                'instance': request.resource_handle,
                'deleted': deleted,
            },
        )

    async def collect_expired(
        self,
        *,
        now: datetime | None = None,
        failed_ttl_seconds: float = INSTANCE_FAILED_TTL_SECONDS,
        pending_ttl_seconds: float = INSTANCE_PENDING_TTL_SECONDS,
        live_request_ids: AbstractSet[str] | None = None,
        orphan_grace_seconds: float = INSTANCE_ORPHAN_GRACE_SECONDS,
    ) -> list[str]:
        """Delete managed instances stuck failed or pending past their TTL.

        Age is measured from the record's creation timestamp, independent of
        the owning request's state. When ``live_request_ids`` is given, an
        instance whose request label names none of them is deleted as well
        once it is older than ``orphan_grace_seconds``, whatever its state.
        Returns the deleted instance names.
        """
        now = now or datetime.now(timezone.utc)
        records = await self._store.list(
            ELASTIC_INSTANCES, labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        )

        deleted: list[str] = []
        for record in records:
            metadata = record.get('metadata') or {}
            name = metadata.get('name')
            created_at = parse_timestamp(metadata.get('creationTimestamp'))
            if not name or created_at is None:
                continue

            age = (now - created_at).total_seconds()
            status, _ = classify_instance(record)
            owner = (metadata.get('labels') or {}).get(REQUEST_LABEL)
            if (
                live_request_ids is not None
                and owner not in live_request_ids
                and age > orphan_grace_seconds
            ):
                reason = 'orphaned'
            elif status == STATUS_FAILED and age > failed_ttl_seconds:
                reason = 'failed'
            elif status == STATUS_PENDING and age > pending_ttl_seconds:
                reason = 'stuck pending'
            else:
                continue

            if await self._store.delete(ELASTIC_INSTANCES, name):
                deleted.append(name)
                logger.info(
                    'Deleted expired elastic instance',
                    extra={'instance': name, 'reason': reason, 'age_seconds': int(age)},
                )
        return deleted
