"""Guarded status writes for provisioning requests.

Both the reconciler and the garbage collector compute a new status from a
snapshot taken when the requests were listed. By the time one of them
writes, the other may already have moved the request on. A write only goes
through if the stored state still matches the snapshot it was computed from,
and the patch carries the record's ``resourceVersion`` so a change landing
between the read and the write is rejected by the store with a conflict.
"""

from __future__ import annotations

import logging

from ..protocols import RecordStore
from ..store.kinds import PROVISIONING_REQUESTS
from .request import ProvisioningRequest

logger = logging.getLogger(__name__)


async def write_transition(
    store: RecordStore,
    before: ProvisioningRequest,
    after: ProvisioningRequest,
) -> bool:
    """Write ``after``'s status if the stored request is still in ``before.state``.

    Returns False when the request is gone or has moved to another state.
    A concurrent write between the read and the patch raises
    ``StoreConflictError``; the caller retries on its next tick.
    """
    current = await store.get(PROVISIONING_REQUESTS, before.id)
    if current is None:
        logger.info('Request vanished before status write', extra={'request_id': before.id})
        return False

    stored = ProvisioningRequest.from_record(current)
    if stored.state != before.state:
        logger.info(
            'Request changed since listing, status write skipped',
            extra={
                'request_id': before.id,
                'expected_state': before.state,
                'stored_state': stored.state,
                'wanted_state': after.state,
            },
        )
        return False

    await store.patch_status(
        PROVISIONING_REQUESTS,
        after.id,
        after.status_fields(),
        resource_version=(current.get('metadata') or {}).get('resourceVersion'),
    )
    return True
