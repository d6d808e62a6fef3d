"""ProvisioningRequest snapshot and its mapping onto store records.

A request record carries intake data in ``spec`` (written by intake, never by
the reconciler) and lifecycle data in ``status`` (written only through the
store's status path). This module is the only place that knows the wire
field names.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

SOURCE_LABEL = 'training.provisioner/source'
SOURCE_PLATFORM = 'platform'
SOURCE_BROKER = 'broker'

BACKEND_NONE = 'none'
BACKEND_STATIC = 'static'
BACKEND_ELASTIC = 'elastic'
BACKEND_TYPES = frozenset({BACKEND_NONE, BACKEND_STATIC, BACKEND_ELASTIC})

UTC = timezone.utc


@dataclass(frozen=True, slots=True)
class ProvisioningRequest:
    """Immutable view of one provisioning request at the time it was listed."""

    id: str
    requester: str = ''
    workload_spec: str = ''
    session_id: str = ''
    source: str = SOURCE_BROKER
    prefer_static: bool = True
    elastic_fallback_enabled: bool = False
    state: str = 'requested'
    backend_type: str = BACKEND_NONE
    resource_handle: str = ''
    address: str = ''
    provisioned: bool = False
    created_at: datetime | None = None
    allocated_at: datetime | None = None
    ready_at: datetime | None = None
    failed_at: datetime | None = None
    last_error_code: str | None = None
    last_error_detail: str | None = None

    @property
    def session_key(self) -> str:
        """Identifier used to name per-request backend resources."""
        return self.session_id or self.id

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> ProvisioningRequest:
        metadata = record.get('metadata') or {}
        spec = record.get('spec') or {}
        status = record.get('status') or {}
        labels = metadata.get('labels') or {}
        fallback = spec.get('cloudFallback') or {}

        return cls(
            id=metadata.get('name', ''),
            requester=spec.get('user') or '',
            workload_spec=spec.get('scenario') or '',
            session_id=spec.get('session') or '',
            source=labels.get(SOURCE_LABEL) or SOURCE_BROKER,
            prefer_static=bool(spec.get('preferStaticVM', True)),
            elastic_fallback_enabled=bool(fallback.get('enabled', False)),
            state=status.get('state') or 'requested',
            backend_type=status.get('backendType') or BACKEND_NONE,
            resource_handle=status.get('resourceHandle') or '',
            address=status.get('address') or '',
            provisioned=bool(status.get('provisioned', False)),
            created_at=parse_timestamp(metadata.get('creationTimestamp')),
            allocated_at=parse_timestamp(status.get('allocatedAt')),
            ready_at=parse_timestamp(status.get('readyAt')),
            failed_at=parse_timestamp(status.get('failedAt')),
            last_error_code=status.get('lastErrorCode'),
            last_error_detail=status.get('lastErrorDetail'),
        )

    def status_fields(self) -> dict[str, Any]:
        """Full status block as a merge patch (``None`` clears a field)."""
        return {
            'state': self.state,
            'backendType': self.backend_type,
            'resourceHandle': self.resource_handle or None,
            'address': self.address or None,
            'provisioned': self.provisioned,
            'allocatedAt': format_timestamp(self.allocated_at),
            'readyAt': format_timestamp(self.ready_at),
            'failedAt': format_timestamp(self.failed_at),
            'lastErrorCode': self.last_error_code,
            'lastErrorDetail': self.last_error_detail,
        }


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp as written by the API server."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    text = str(value)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).strftime('%Y-%m-%dT%H:%M:%SZ')
