"""Session intake: one provisioning request per platform session.

Polls the platform's ``Session`` records and creates a provisioning request
named after each new session. Requests created here carry the ``platform``
source label, which is what routes them to the platform reconciler and
makes them eligible for propagation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from ..protocols import RecordStore
from ..provisioning.request import SOURCE_LABEL, SOURCE_PLATFORM
from ..reconciler.tracking import ProcessedMarkers
from ..store.errors import StoreConflictError, StoreError
from ..store.kinds import PLATFORM_SESSIONS, PROVISIONING_REQUESTS

logger = logging.getLogger(__name__)

DEFAULT_USER = 'student'
DEFAULT_SCENARIO = 'hybrid-training'


@dataclass(frozen=True, slots=True)
class FallbackPolicy:
    """Elastic fallback settings stamped onto every platform request."""

    enabled: bool = True
    provider: str = 'aws'
    instance_type: str = 't3.micro'
    region: str = 'us-east-1'


@dataclass(slots=True)
class IntakeReport:
    tick_ts: datetime
    created: list[str] = field(default_factory=list)
    already_present: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    store_unavailable: bool = False


def build_request(
    session: Mapping[str, Any],
    *,
    fallback: FallbackPolicy,
) -> dict[str, Any]:
    """Provisioning request record for a platform session."""
    session_name = session['metadata']['name']
    spec = session.get('spec') or {}
    user = spec.get('user') or DEFAULT_USER
    scenario = spec.get('scenario') or DEFAULT_SCENARIO

    return {
        'metadata': {
            'name': session_name,
            'labels': {
                SOURCE_LABEL: SOURCE_PLATFORM,
                'hobbyfarm.io/session': session_name,
                'hobbyfarm.io/user': user,
                'hobbyfarm.io/scenario': scenario,
            },
        },
        'spec': {
            'user': user,
            'session': session_name,
            'scenario': scenario,
            'preferStaticVM': True,
            'cloudFallback': {
                'enabled': fallback.enabled,
                'provider': fallback.provider,
                'instanceType': fallback.instance_type,
                'region': fallback.region,
            },
        },
    }


class SessionIntake:
    def __init__(
        self,
        store: RecordStore,
        *,
        fallback: FallbackPolicy | None = None,
        name: str = 'session-intake',
    ) -> None:
        self._store = store
        self._fallback = fallback or FallbackPolicy()
        self.name = name
        self.markers = ProcessedMarkers()

    async def poll_once(self, *, now: datetime | None = None) -> IntakeReport:
        now = now or datetime.now(timezone.utc)
        report = IntakeReport(tick_ts=now)

        try:
            sessions = await self._store.list(PLATFORM_SESSIONS)
        except StoreError:
            logger.warning(
                'Listing platform sessions failed, retrying next tick',
                extra={'loop': self.name},
                exc_info=True,
            )
            report.store_unavailable = True
            return report

        names = [(s.get('metadata') or {}).get('name') for s in sessions]
        self.markers.prune_missing({n for n in names if n})

        for session, session_name in zip(sessions, names):
            if not session_name or session_name in self.markers:
                continue
            try:
                await self._store.create(
                    PROVISIONING_REQUESTS,
                    build_request(session, fallback=self._fallback),
                )
            except StoreConflictError:
                report.already_present.append(session_name)
            except StoreError:
                logger.warning(
                    'Creating provisioning request failed, retrying next tick',
                    extra={'session_id': session_name},
                    exc_info=True,
                )
                report.errors.append(session_name)
                continue
            else:
                report.created.append(session_name)
                logger.info(
                    'Created provisioning request for session',
                    extra={'session_id': session_name},
                )
            self.markers.mark(session_name, now)

        return report
