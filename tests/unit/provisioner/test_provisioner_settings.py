"""Provisioner settings tests."""

from __future__ import annotations

import inspect
from dataclasses import replace

import pytest

from training_provisioner.app.operations.expiry import expire_tracking
from training_provisioner.app.providers.static_pool import used_handles
from training_provisioner.app.provisioning.state_machine import (
    DEFAULT_ALLOCATION_TIMEOUT_SECONDS,
    DEFAULT_TRACKING_TTL_SECONDS,
)
from training_provisioner.app.reconciler.lifecycle import RequestReconciler
from training_provisioner.app.settings import ProvisionerSettings


class TestDefaults:
    def test_local_defaults_are_valid(self):
        settings = ProvisionerSettings()
        assert settings.validate() == []
        assert settings.is_local
        assert settings.runs_platform_path
        assert settings.runs_broker_path
        assert settings.static_pool == ('192.168.2.37', '192.168.2.38')

    def test_timing_defaults_shared_with_loops(self):
        settings = ProvisionerSettings()
        assert settings.allocation_timeout_seconds == DEFAULT_ALLOCATION_TIMEOUT_SECONDS
        assert settings.tracking_ttl_seconds == DEFAULT_TRACKING_TTL_SECONDS
        ttl_defaults = {
            inspect.signature(used_handles).parameters['tracking_ttl_seconds'].default,
            inspect.signature(expire_tracking).parameters['ttl_seconds'].default,
            inspect.signature(RequestReconciler).parameters['tracking_ttl_seconds'].default,
        }
        assert ttl_defaults == {DEFAULT_TRACKING_TTL_SECONDS}

    def test_mode_selects_paths(self):
        platform = ProvisionerSettings(integration_mode='platform')
        broker = ProvisionerSettings(integration_mode='broker')
        assert platform.runs_platform_path and not platform.runs_broker_path
        assert broker.runs_broker_path and not broker.runs_platform_path


class TestValidate:
    def test_unknown_mode(self):
        errors = ProvisionerSettings(integration_mode='direct').validate()
        assert any('integration_mode' in e for e in errors)

    def test_no_capacity(self):
        errors = ProvisionerSettings(static_pool=(), elastic_enabled=False).validate()
        assert errors == ['static_pool is empty and elastic fallback is disabled']

    def test_empty_pool_with_elastic_is_fine(self):
        assert ProvisionerSettings(static_pool=()).validate() == []

    def test_non_positive_timing(self):
        errors = ProvisionerSettings(allocation_timeout_seconds=0).validate()
        assert errors == ['allocation_timeout_seconds must be positive']

    def test_non_local_requires_cluster_access(self):
        errors = ProvisionerSettings(environment='production').validate()
        assert 'production: kube_api_url is required' in errors
        assert 'production: kube_token is required' in errors

        ok = replace(
            ProvisionerSettings(environment='production'),
            kube_api_url='https://kube:6443',
            kube_token='t',
        )
        assert ok.validate() == []


class TestFromEnv:
    def test_empty_env_matches_defaults(self):
        assert ProvisionerSettings.from_env({}) == ProvisionerSettings()

    def test_parses_values(self):
        settings = ProvisionerSettings.from_env({
            'ENVIRONMENT': 'staging',
            'INTEGRATION_MODE': ' Broker ',
            'STATIC_VM_POOL': '10.0.0.1, 10.0.0.2,,',
            'ALLOCATION_TIMEOUT_SECONDS': '900',
            'ELASTIC_ENABLED': 'no',
            'ELASTIC_SECURITY_GROUP_IDS': 'sg-1,sg-2',
            'KUBE_API_URL': 'https://kube:6443',
            'KUBE_TOKEN': 'secret',
            'CONFIG_RULES_FILE': '/etc/rules.yaml',
        })

        assert settings.environment == 'staging'
        assert settings.integration_mode == 'broker'
        assert settings.static_pool == ('10.0.0.1', '10.0.0.2')
        assert settings.allocation_timeout_seconds == 900
        assert settings.elastic_enabled is False
        assert settings.elastic_security_group_ids == ('sg-1', 'sg-2')
        assert settings.elastic_region == 'us-east-1'
        assert settings.config_rules_file == '/etc/rules.yaml'
        assert settings.validate() == []

    def test_bad_integer(self):
        with pytest.raises(ValueError, match='GC_INTERVAL_SECONDS must be an integer'):
            ProvisionerSettings.from_env({'GC_INTERVAL_SECONDS': 'ten'})
