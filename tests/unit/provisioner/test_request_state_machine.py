"""Provisioning request state-machine tests.

Validates:
  - allocate binds backend type, handle and allocated_at
  - begin_provisioning / mark_ready walk the happy path
  - mark_failed keeps the handle and records the error
  - release clears the allocation and allows re-allocation
  - ready and failed have no outgoing transitions
  - allocation timeout boundary is not expired, one second past is
  - naive datetimes are rejected
  - record round-trip through from_record / status_fields
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from training_provisioner.app.provisioning.request import (
    BACKEND_ELASTIC,
    BACKEND_NONE,
    BACKEND_STATIC,
    SOURCE_BROKER,
    SOURCE_LABEL,
    SOURCE_PLATFORM,
    ProvisioningRequest,
    format_timestamp,
    parse_timestamp,
)
from training_provisioner.app.provisioning.state_machine import (
    ALLOCATION_TIMEOUT_CODE,
    ALLOWED_TRANSITIONS,
    REQUEST_STATES,
    TERMINAL_STATES,
    InvalidStateTransition,
    allocate,
    apply_allocation_timeout,
    begin_provisioning,
    mark_failed,
    mark_ready,
    release,
)


def _t(seconds: int) -> datetime:
    return datetime(2026, 2, 13, 12, 0, 0, tzinfo=UTC) + timedelta(seconds=seconds)


def _allocated(seconds: int = 0) -> ProvisioningRequest:
    return allocate(
        ProvisioningRequest(id='req-1', requester='alice'),
        backend_type=BACKEND_STATIC,
        handle='10.0.0.5',
        address='10.0.0.5',
        now=_t(seconds),
    )


class TestAllocate:
    def test_binds_handle(self):
        req = _allocated()
        assert req.state == 'allocated'
        assert req.backend_type == BACKEND_STATIC
        assert req.resource_handle == '10.0.0.5'
        assert req.allocated_at == _t(0)
        assert req.provisioned is False

    def test_rejects_none_backend(self):
        with pytest.raises(ValueError, match='unknown backend type'):
            allocate(
                ProvisioningRequest(id='req-1'),
                backend_type=BACKEND_NONE,
                handle='x',
                now=_t(0),
            )

    def test_rejects_empty_handle(self):
        with pytest.raises(ValueError, match='handle is required'):
            allocate(
                ProvisioningRequest(id='req-1'),
                backend_type=BACKEND_STATIC,
                handle='',
                now=_t(0),
            )

    def test_rejects_naive_now(self):
        with pytest.raises(ValueError, match='timezone-aware'):
            allocate(
                ProvisioningRequest(id='req-1'),
                backend_type=BACKEND_STATIC,
                handle='h',
                now=datetime(2026, 2, 13, 12, 0, 0),
            )

    def test_allocated_cannot_allocate_again(self):
        with pytest.raises(InvalidStateTransition):
            allocate(_allocated(), backend_type=BACKEND_STATIC, handle='h2', now=_t(1))

    def test_clears_previous_error(self):
        req = ProvisioningRequest(
            id='req-1', state='released', last_error_code='X', last_error_detail='y',
        )
        req = allocate(req, backend_type=BACKEND_ELASTIC, handle='training-req-1', now=_t(0))
        assert req.last_error_code is None
        assert req.last_error_detail is None


class TestHappyPath:
    def test_walks_to_ready(self):
        req = begin_provisioning(_allocated(), address='10.0.0.5', now=_t(40))
        assert req.state == 'provisioning'
        req = mark_ready(req, now=_t(60))
        assert req.state == 'ready'
        assert req.provisioned is True
        assert req.ready_at == _t(60)

    def test_begin_provisioning_keeps_address_when_empty(self):
        req = begin_provisioning(_allocated(), address='', now=_t(40))
        assert req.address == '10.0.0.5'

    def test_ready_is_terminal(self):
        req = mark_ready(begin_provisioning(_allocated(), address='', now=_t(1)), now=_t(2))
        for target in ('allocated', 'provisioning', 'failed', 'released'):
            assert target not in ALLOWED_TRANSITIONS['ready']
        with pytest.raises(InvalidStateTransition):
            mark_failed(req, now=_t(3), error_code='X', error_detail='y')

    def test_every_state_has_transition_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(REQUEST_STATES)

    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert ALLOWED_TRANSITIONS[state] == frozenset()


class TestFailAndRelease:
    def test_failed_keeps_handle(self):
        req = mark_failed(_allocated(), now=_t(5), error_code='E', error_detail='boom')
        assert req.state == 'failed'
        assert req.resource_handle == '10.0.0.5'
        assert req.failed_at == _t(5)
        assert req.last_error_code == 'E'

    def test_failed_is_terminal(self):
        req = mark_failed(_allocated(), now=_t(5), error_code='E', error_detail='boom')
        with pytest.raises(InvalidStateTransition):
            allocate(req, backend_type=BACKEND_STATIC, handle='h', now=_t(6))

    def test_release_clears_allocation(self):
        req = release(_allocated(), now=_t(100))
        assert req.state == 'released'
        assert req.backend_type == BACKEND_NONE
        assert req.resource_handle == ''
        assert req.address == ''
        assert req.allocated_at is None

    def test_released_can_be_allocated_again(self):
        req = release(_allocated(), now=_t(100))
        req = allocate(req, backend_type=BACKEND_STATIC, handle='10.0.0.6', now=_t(110))
        assert req.state == 'allocated'
        assert req.allocated_at == _t(110)

    def test_provisioning_cannot_be_released(self):
        req = begin_provisioning(_allocated(), address='', now=_t(1))
        with pytest.raises(InvalidStateTransition):
            release(req, now=_t(2))


class TestAllocationTimeout:
    def test_boundary_is_not_expired(self):
        req = _allocated(0)
        assert apply_allocation_timeout(req, now=_t(3600), timeout_seconds=3600) is req

    def test_one_second_past_is_expired(self):
        req = apply_allocation_timeout(_allocated(0), now=_t(3601), timeout_seconds=3600)
        assert req.state == 'failed'
        assert req.last_error_code == ALLOCATION_TIMEOUT_CODE
        assert req.failed_at == _t(3601)
        assert req.resource_handle == '10.0.0.5'

    def test_provisioning_state_expires_too(self):
        req = begin_provisioning(_allocated(0), address='', now=_t(10))
        assert apply_allocation_timeout(req, now=_t(4000)).state == 'failed'

    def test_ready_never_expires(self):
        req = mark_ready(begin_provisioning(_allocated(0), address='', now=_t(1)), now=_t(2))
        assert apply_allocation_timeout(req, now=_t(99999)) is req

    def test_unallocated_is_skipped(self):
        req = ProvisioningRequest(id='req-1')
        assert apply_allocation_timeout(req, now=_t(99999)) is req


class TestRecordMapping:
    def test_from_record(self):
        record = {
            'metadata': {
                'name': 'sess-1',
                'creationTimestamp': '2026-02-13T12:00:00Z',
                'labels': {SOURCE_LABEL: SOURCE_PLATFORM},
            },
            'spec': {
                'user': 'alice',
                'session': 'sess-1',
                'scenario': 'k8s-basics',
                'preferStaticVM': True,
                'cloudFallback': {'enabled': True},
            },
            'status': {
                'state': 'allocated',
                'backendType': 'elastic',
                'resourceHandle': 'training-sess-1',
                'allocatedAt': '2026-02-13T12:00:30Z',
            },
        }
        req = ProvisioningRequest.from_record(record)
        assert req.id == 'sess-1'
        assert req.source == SOURCE_PLATFORM
        assert req.requester == 'alice'
        assert req.workload_spec == 'k8s-basics'
        assert req.elastic_fallback_enabled is True
        assert req.state == 'allocated'
        assert req.backend_type == BACKEND_ELASTIC
        assert req.created_at == _t(0)
        assert req.allocated_at == _t(30)

    def test_empty_record_defaults(self):
        req = ProvisioningRequest.from_record({'metadata': {'name': 'r'}})
        assert req.state == 'requested'
        assert req.source == SOURCE_BROKER
        assert req.backend_type == BACKEND_NONE
        assert req.elastic_fallback_enabled is False

    def test_status_fields_clear_released_allocation(self):
        fields = release(_allocated(), now=_t(5)).status_fields()
        assert fields['state'] == 'released'
        assert fields['resourceHandle'] is None
        assert fields['allocatedAt'] is None
        assert fields['backendType'] == BACKEND_NONE

    def test_timestamp_helpers(self):
        assert format_timestamp(_t(0)) == '2026-02-13T12:00:00Z'
        assert parse_timestamp('2026-02-13T12:00:00Z') == _t(0)
        assert parse_timestamp('garbage') is None
        assert parse_timestamp(None) is None
