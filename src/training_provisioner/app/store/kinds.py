"""Typed record kinds addressed through the declarative store."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ResourceKind:
    """Group/version/plural triple plus the namespace records live in.

    ``namespace`` is ``None`` for cluster-scoped kinds.
    """

    group: str
    version: str
    plural: str
    kind: str
    namespace: str | None = None

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def collection_path(self) -> str:
        prefix = f"/apis/{self.group}/{self.version}" if self.group else f"/api/{self.version}"
        if self.namespace:
            return f"{prefix}/namespaces/{self.namespace}/{self.plural}"
        return f"{prefix}/{self.plural}"

    def record_path(self, name: str) -> str:
        return f"{self.collection_path()}/{name}"


PLATFORM_NAMESPACE = "hobbyfarm-system"
REQUEST_NAMESPACE = "default"

PROVISIONING_REQUESTS = ResourceKind(
    group="platform.kratix.io",
    version="v1alpha1",
    plural="vm-provisioning-requests",
    kind="VMProvisioningRequest",
    namespace=REQUEST_NAMESPACE,
)

ELASTIC_INSTANCES = ResourceKind(
    group="ec2.aws.upbound.io",
    version="v1beta1",
    plural="instances",
    kind="Instance",
)

PLATFORM_SESSIONS = ResourceKind(
    group="hobbyfarm.io",
    version="v1",
    plural="sessions",
    kind="Session",
    namespace=PLATFORM_NAMESPACE,
)

PLATFORM_VIRTUAL_MACHINES = ResourceKind(
    group="hobbyfarm.io",
    version="v1",
    plural="virtualmachines",
    kind="VirtualMachine",
    namespace=PLATFORM_NAMESPACE,
)

PLATFORM_SCENARIOS = ResourceKind(
    group="hobbyfarm.io",
    version="v1",
    plural="scenarios",
    kind="Scenario",
    namespace=PLATFORM_NAMESPACE,
)

PLATFORM_COURSES = ResourceKind(
    group="hobbyfarm.io",
    version="v1",
    plural="courses",
    kind="Course",
    namespace=PLATFORM_NAMESPACE,
)
