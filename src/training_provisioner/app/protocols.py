"""Store, backend and collaborator protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, Kubernetes/TCP/Ansible for real deployments) must
satisfy. The app factory and the reconciliation loops accept any
implementation that matches them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, AbstractSet, Mapping, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .provisioning.config_resolver import ConfigBundle
    from .provisioning.request import ProvisioningRequest
    from .providers.base import Acquisition, LivenessReport
    from .store.kinds import ResourceKind


@runtime_checkable
class RecordStore(Protocol):
    """List/get/create/patch over typed declarative records.

    ``patch`` is the main write path (spec, labels); ``patch_status`` is the
    status-only path. Both take JSON merge patches where ``None`` removes a
    field. A ``resource_version`` passed to ``patch_status`` is a write
    precondition: a record changed since that version raises
    ``StoreConflictError``.
    """

    async def list(
        self, kind: ResourceKind, *, labels: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]: ...
    async def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None: ...
    async def create(self, kind: ResourceKind, record: dict[str, Any]) -> dict[str, Any]: ...
    async def patch(self, kind: ResourceKind, name: str, patch: dict[str, Any]) -> dict[str, Any]: ...
    async def patch_status(
        self,
        kind: ResourceKind,
        name: str,
        status: dict[str, Any],
        *,
        resource_version: str | None = None,
    ) -> dict[str, Any]: ...
    async def delete(self, kind: ResourceKind, name: str) -> bool: ...


@runtime_checkable
class LivenessProbe(Protocol):
    """Connectivity check against a machine address."""

    async def check(self, address: str) -> bool: ...


@runtime_checkable
class BackendProvider(Protocol):
    """One backend strategy (static pool, elastic cloud, ...)."""

    backend_type: str

    async def acquire(
        self, request: ProvisioningRequest, used_handles: AbstractSet[str],
    ) -> Acquisition | None: ...
    async def probe_liveness(self, request: ProvisioningRequest) -> LivenessReport: ...
    async def release(self, request: ProvisioningRequest) -> None: ...


@runtime_checkable
class Provisioner(Protocol):
    """Readiness gate and remote configuration run."""

    async def wait_for_ready(self, address: str, timeout_seconds: float) -> None: ...
    async def run_configuration(
        self,
        address: str,
        session_id: str,
        scenario: str,
        bundle: ConfigBundle,
        *,
        ssh_username: str,
    ) -> None: ...


@runtime_checkable
class ConfigResolver(Protocol):
    """Maps a session to the configuration bundle applied to its machine."""

    async def resolve(self, session_id: str) -> ConfigBundle: ...
