"""Provisioning request model, state machine and configuration collaborators."""

from .request import (
    BACKEND_ELASTIC,
    BACKEND_NONE,
    BACKEND_STATIC,
    SOURCE_BROKER,
    SOURCE_PLATFORM,
    ProvisioningRequest,
)
from .state_machine import (
    ALLOCATION_TIMEOUT_CODE,
    PROVISIONING_FAILED_CODE,
    REQUEST_STATES,
    RESOURCE_EXHAUSTED_CODE,
    InvalidStateTransition,
    allocate,
    apply_allocation_timeout,
    begin_provisioning,
    mark_failed,
    mark_ready,
    release,
)

__all__ = [
    'ALLOCATION_TIMEOUT_CODE',
    'BACKEND_ELASTIC',
    'BACKEND_NONE',
    'BACKEND_STATIC',
    'InvalidStateTransition',
    'PROVISIONING_FAILED_CODE',
    'ProvisioningRequest',
    'REQUEST_STATES',
    'RESOURCE_EXHAUSTED_CODE',
    'SOURCE_BROKER',
    'SOURCE_PLATFORM',
    'allocate',
    'apply_allocation_timeout',
    'begin_provisioning',
    'mark_failed',
    'mark_ready',
    'release',
]
