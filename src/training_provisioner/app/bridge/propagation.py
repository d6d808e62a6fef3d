"""Cross-system propagation bridge.

When a platform-path request reaches ``ready``, the platform's own
``VirtualMachine`` record for that student must learn the machine's address
and SSH credentials. The bridge does this exactly once per (request, handle)
pair: the ``PropagationLedger`` records each successful projection, and a
pair found in the ledger is skipped without looking at the target record at
all, even if someone reverted it in the meantime. Projected records are
labelled with the request id, which lets a restarted bridge rebuild its
ledger from the platform records.

Target records are matched by requester, a ``readyforprovisioning`` status
and no public IP yet. Credentials are written through the main record path;
addresses through the status path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from ..observability.metrics import PROPAGATIONS_TOTAL, STORE_ERRORS_TOTAL
from ..protocols import RecordStore
from ..providers.policy import DEFAULT_SSH_USERNAMES
from ..provisioning.request import SOURCE_PLATFORM, ProvisioningRequest
from ..store.errors import StoreError
from ..store.kinds import PLATFORM_VIRTUAL_MACHINES, PROVISIONING_REQUESTS
from .ledger import LedgerKey, PropagationLedger

logger = logging.getLogger(__name__)

READY_FOR_PROVISIONING = 'readyforprovisioning'
PROJECTED_STATUS = 'ready'
PROJECTED_REQUEST_LABEL = 'training.provisioner/request'
DEFAULT_SSH_SECRET_NAME = 'hobbyfarm-vm-ssh-key'


class PropagationTargetNotFound(LookupError):
    """No platform machine record is waiting for this request's machine."""

    def __init__(self, request_id: str, requester: str) -> None:
        self.request_id = request_id
        self.requester = requester
        super().__init__(
            f'no {READY_FOR_PROVISIONING} machine record for user {requester!r} '
            f'(request {request_id!r})'
        )


@dataclass(frozen=True, slots=True)
class CredentialPolicy:
    """SSH credentials injected into platform machine records."""

    secret_name: str = DEFAULT_SSH_SECRET_NAME
    ssh_usernames: Mapping[str, str] = field(default_factory=lambda: DEFAULT_SSH_USERNAMES)

    def username_for(self, backend_type: str) -> str:
        return self.ssh_usernames.get(backend_type, 'root')


@dataclass(slots=True)
class PropagationReport:
    tick_ts: datetime
    projected: list[LedgerKey] = field(default_factory=list)
    skipped: list[LedgerKey] = field(default_factory=list)
    missing_target: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    pruned: list[LedgerKey] = field(default_factory=list)
    store_unavailable: bool = False


def find_target(
    machines: Iterable[Mapping[str, Any]],
    requester: str,
) -> Mapping[str, Any] | None:
    """First machine record of ``requester`` still waiting for an address."""
    for machine in machines:
        spec = machine.get('spec') or {}
        status = machine.get('status') or {}
        if spec.get('user') != requester:
            continue
        if status.get('status') != READY_FOR_PROVISIONING:
            continue
        if status.get('public_ip'):
            continue
        return machine
    return None


def already_projected(
    machines: Iterable[Mapping[str, Any]],
    requests: Iterable[ProvisioningRequest],
) -> list[LedgerKey]:
    """(request, handle) pairs the platform records show as projected.

    A machine record carrying a request id label and a public IP was
    projected by this bridge; without the IP only the main-path write
    landed and the projection is redone. Unlabelled records are recognised
    by a ``ready`` status whose public IP and user match the request.
    """
    by_id = {r.id: r for r in requests}
    found: set[LedgerKey] = set()
    for machine in machines:
        labels = (machine.get('metadata') or {}).get('labels') or {}
        spec = machine.get('spec') or {}
        status = machine.get('status') or {}

        if PROJECTED_REQUEST_LABEL in labels:
            request = by_id.get(labels[PROJECTED_REQUEST_LABEL])
            if request is not None and status.get('public_ip'):
                found.add((request.id, request.resource_handle))
            continue

        if status.get('status') != PROJECTED_STATUS or not status.get('public_ip'):
            continue
        for request in by_id.values():
            if request.address == status['public_ip'] and request.requester == spec.get('user'):
                found.add((request.id, request.resource_handle))
    return sorted(found)


class PropagationBridge:
    """Projects ready platform requests onto platform machine records.

    The ledger is seeded from the platform's machine records the first time
    a tick has work to do, so a restarted bridge does not project a request
    a second time onto a newer machine record.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        ledger: PropagationLedger | None = None,
        credentials: CredentialPolicy | None = None,
        name: str = 'propagation-bridge',
    ) -> None:
        self._store = store
        self.ledger = ledger if ledger is not None else PropagationLedger()
        self._credentials = credentials or CredentialPolicy()
        self._seeded = False
        self.name = name

    async def propagate_once(self, *, now: datetime | None = None) -> PropagationReport:
        report = PropagationReport(tick_ts=now or datetime.now(timezone.utc))

        try:
            records = await self._store.list(PROVISIONING_REQUESTS)
        except StoreError:
            self._store_failed('Listing provisioning requests failed', report)
            return report

        requests = [ProvisioningRequest.from_record(r) for r in records]
        report.pruned = self.ledger.prune({r.id for r in requests})

        eligible = [r for r in requests if self._eligible(r)]
        if not any((r.id, r.resource_handle) not in self.ledger for r in eligible):
            report.skipped = [(r.id, r.resource_handle) for r in eligible]
            return report

        try:
            machines = await self._store.list(PLATFORM_VIRTUAL_MACHINES)
        except StoreError:
            self._store_failed('Listing platform machines failed', report)
            return report

        if not self._seeded:
            seeded = already_projected(machines, eligible)
            for key in seeded:
                self.ledger.record(*key)
            self._seeded = True
            if seeded:
                logger.info(
                    'Seeded propagation ledger from platform records',
                    extra={'loop': self.name, 'entries': len(seeded)},
                )

        pending: list[ProvisioningRequest] = []
        for request in eligible:
            key = (request.id, request.resource_handle)
            if key in self.ledger:
                report.skipped.append(key)
            else:
                pending.append(request)

        claimed: set[str] = set()
        for request in pending:
            key = (request.id, request.resource_handle)
            try:
                target_name = await self._project(request, machines, claimed)
            except PropagationTargetNotFound as e:
                logger.warning(
                    'Propagation target not found, retrying next tick',
                    extra={'request_id': request.id, 'requester': e.requester},
                )
                PROPAGATIONS_TOTAL.labels(outcome='target_missing').inc()
                report.missing_target.append(request.id)
                continue
            except StoreError:
                logger.warning(
                    'Propagation write failed, retrying next tick',
                    extra={'request_id': request.id},
                    exc_info=True,
                )
                STORE_ERRORS_TOTAL.labels(loop=self.name).inc()
                PROPAGATIONS_TOTAL.labels(outcome='error').inc()
                report.errors.append(request.id)
                continue

            claimed.add(target_name)
            self.ledger.record(*key)
            report.projected.append(key)
            PROPAGATIONS_TOTAL.labels(outcome='projected').inc()
            logger.info(
                'Projected machine onto platform record',
                extra={
                    'request_id': request.id,
                    'handle': request.resource_handle,
                    'machine': target_name,
                },
            )

        return report

    @staticmethod
    def _eligible(request: ProvisioningRequest) -> bool:
        return (
            request.state == 'ready'
            and request.source == SOURCE_PLATFORM
            and bool(request.resource_handle)
            and bool(request.address)
        )

    async def _project(
        self,
        request: ProvisioningRequest,
        machines: list[dict[str, Any]],
        claimed: set[str],
    ) -> str:
        unclaimed = (m for m in machines if (m.get('metadata') or {}).get('name') not in claimed)
        target = find_target(unclaimed, request.requester)
        if target is None:
            raise PropagationTargetNotFound(request.id, request.requester)

        name = target['metadata']['name']
        address = request.address

        await self._store.patch(
            PLATFORM_VIRTUAL_MACHINES,
            name,
            {
                'metadata': {
                    'labels': {
                        'ready': 'true',
                        'vm-type': request.backend_type,
                        PROJECTED_REQUEST_LABEL: request.id,
                    },
                },
                'spec': {
                    'secret_name': self._credentials.secret_name,
                    'ssh_username': self._credentials.username_for(request.backend_type),
                },
            },
        )
        await self._store.patch_status(
            PLATFORM_VIRTUAL_MACHINES,
            name,
            {
                'status': 'ready',
                'public_ip': address,
                'private_ip': address,
                'hostname': address,
            },
        )
        return name

    def _store_failed(self, message: str, report: PropagationReport) -> None:
        logger.warning(f'{message}, retrying next tick', extra={'loop': self.name}, exc_info=True)
        STORE_ERRORS_TOTAL.labels(loop=self.name).inc()
        report.store_unavailable = True
