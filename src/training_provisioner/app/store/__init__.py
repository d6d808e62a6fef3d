"""Declarative record store: record kinds, errors, Kubernetes client."""

from .errors import (
    StoreAuthError,
    StoreConflictError,
    StoreError,
    StoreNotFoundError,
    StoreUnavailableError,
)
from .kinds import (
    ELASTIC_INSTANCES,
    PLATFORM_COURSES,
    PLATFORM_SCENARIOS,
    PLATFORM_SESSIONS,
    PLATFORM_VIRTUAL_MACHINES,
    PROVISIONING_REQUESTS,
    ResourceKind,
)

__all__ = [
    'ELASTIC_INSTANCES',
    'PLATFORM_COURSES',
    'PLATFORM_SCENARIOS',
    'PLATFORM_SESSIONS',
    'PLATFORM_VIRTUAL_MACHINES',
    'PROVISIONING_REQUESTS',
    'ResourceKind',
    'StoreAuthError',
    'StoreConflictError',
    'StoreError',
    'StoreNotFoundError',
    'StoreUnavailableError',
]
