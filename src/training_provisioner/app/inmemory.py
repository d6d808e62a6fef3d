"""In-memory implementations for local development and tests.

These are used when ENVIRONMENT=local. They satisfy the protocol interfaces
but keep everything in dicts (no persistence across restarts, no network,
no SSH).
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from .provisioning.config_resolver import DEFAULT_CONFIG_BUNDLE, ConfigBundle
from .provisioning.errors import ProvisioningError, ReadinessTimeout
from .provisioning.request import format_timestamp
from .store.errors import StoreConflictError, StoreNotFoundError, StoreUnavailableError
from .store.kinds import ResourceKind


def merge_patch(target: dict[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Apply a JSON merge patch (RFC 7386) to ``target`` in place."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, Mapping):
            current = target.get(key)
            if not isinstance(current, dict):
                current = {}
            target[key] = merge_patch(current, value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class InMemoryRecordStore:
    """Dict-backed ``RecordStore``.

    Set ``failing`` to a set of operation names (``"list"``, ``"get"``,
    ``"create"``, ``"patch"``, ``"patch_status"``, ``"delete"``) to make
    those calls raise ``StoreUnavailableError``. Every successful write is
    appended to ``writes`` as ``(operation, kind.plural, name, payload)``.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._records: dict[ResourceKind, dict[str, dict[str, Any]]] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._version = 0
        self.failing: set[str] = set()
        self.writes: list[tuple[str, str, str, Any]] = []

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise StoreUnavailableError(status_code=0, message=f"injected {operation} failure")

    def _bucket(self, kind: ResourceKind) -> dict[str, dict[str, Any]]:
        return self._records.setdefault(kind, {})

    def _bump(self, record: dict[str, Any]) -> None:
        self._version += 1
        record.setdefault("metadata", {})["resourceVersion"] = str(self._version)

    def put(self, kind: ResourceKind, record: dict[str, Any]) -> dict[str, Any]:
        """Insert or replace a record as-is (test seeding, no fault injection)."""
        stored = copy.deepcopy(record)
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("creationTimestamp", format_timestamp(self._clock()))
        stored.setdefault("apiVersion", kind.api_version)
        stored.setdefault("kind", kind.kind)
        self._bump(stored)
        self._bucket(kind)[metadata["name"]] = stored
        return copy.deepcopy(stored)

    def peek(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        """Synchronous read for assertions."""
        record = self._bucket(kind).get(name)
        return copy.deepcopy(record) if record is not None else None

    def names(self, kind: ResourceKind) -> list[str]:
        return sorted(self._bucket(kind))

    async def list(
        self,
        kind: ResourceKind,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        self._check("list")
        items = []
        for record in self._bucket(kind).values():
            record_labels = (record.get("metadata") or {}).get("labels") or {}
            if labels and any(record_labels.get(k) != v for k, v in labels.items()):
                continue
            items.append(copy.deepcopy(record))
        return items

    async def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        self._check("get")
        return self.peek(kind, name)

    async def create(self, kind: ResourceKind, record: dict[str, Any]) -> dict[str, Any]:
        self._check("create")
        name = record["metadata"]["name"]
        if name in self._bucket(kind):
            raise StoreConflictError(
                status_code=409,
                message=f'{kind.plural} "{name}" already exists',
                reason="AlreadyExists",
            )
        created = self.put(kind, record)
        self.writes.append(("create", kind.plural, name, copy.deepcopy(record)))
        return created

    async def patch(self, kind: ResourceKind, name: str, patch: dict[str, Any]) -> dict[str, Any]:
        self._check("patch")
        record = self._require(kind, name)
        # Main path never touches status.
        merge_patch(record, {k: v for k, v in patch.items() if k != "status"})
        self._bump(record)
        self.writes.append(("patch", kind.plural, name, copy.deepcopy(patch)))
        return copy.deepcopy(record)

    async def patch_status(
        self,
        kind: ResourceKind,
        name: str,
        status: dict[str, Any],
        *,
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        self._check("patch_status")
        record = self._require(kind, name)
        current = record["metadata"].get("resourceVersion")
        if resource_version is not None and resource_version != current:
            raise StoreConflictError(
                status_code=409,
                message=f'{kind.plural} "{name}" was modified (resourceVersion {current})',
                reason="Conflict",
            )
        merge_patch(record, {"status": status})
        self._bump(record)
        self.writes.append(("patch_status", kind.plural, name, copy.deepcopy(status)))
        return copy.deepcopy(record)

    async def delete(self, kind: ResourceKind, name: str) -> bool:
        self._check("delete")
        removed = self._bucket(kind).pop(name, None)
        if removed is None:
            return False
        self.writes.append(("delete", kind.plural, name, None))
        return True

    def _require(self, kind: ResourceKind, name: str) -> dict[str, Any]:
        record = self._bucket(kind).get(name)
        if record is None:
            raise StoreNotFoundError(
                status_code=404,
                message=f'{kind.plural} "{name}" not found',
                reason="NotFound",
            )
        return record


class StaticLivenessProbe:
    """``LivenessProbe`` answering from a fixed set of reachable addresses."""

    def __init__(self, reachable: Iterable[str] = ()) -> None:
        self.reachable: set[str] = set(reachable)
        self.calls: list[str] = []

    async def check(self, address: str) -> bool:
        self.calls.append(address)
        return address in self.reachable


class InMemoryProvisioner:
    """``Provisioner`` that records calls instead of running SSH jobs."""

    def __init__(self) -> None:
        self.ready_fails = False
        self.configuration_fails = False
        self.ready_checks: list[str] = []
        self.runs: list[dict[str, Any]] = []

    async def wait_for_ready(self, address: str, timeout_seconds: float) -> None:
        self.ready_checks.append(address)
        if self.ready_fails:
            raise ReadinessTimeout(address, timeout_seconds)

    async def run_configuration(
        self,
        address: str,
        session_id: str,
        scenario: str,
        bundle: ConfigBundle,
        *,
        ssh_username: str,
    ) -> None:
        self.runs.append({
            "address": address,
            "session_id": session_id,
            "scenario": scenario,
            "bundle": bundle,
            "ssh_username": ssh_username,
        })
        if self.configuration_fails:
            raise ProvisioningError(
                "configuration job failed",
                job=bundle.jobs[0] if bundle.jobs else "",
                exit_code=2,
            )


class InMemoryConfigResolver:
    def __init__(self, bundle: ConfigBundle = DEFAULT_CONFIG_BUNDLE) -> None:
        self.bundle = bundle
        self.resolved: list[str] = []

    async def resolve(self, session_id: str) -> ConfigBundle:
        self.resolved.append(session_id)
        return self.bundle
