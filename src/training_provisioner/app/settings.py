"""Provisioner configuration settings.

ProvisionerSettings is the single configuration object accepted by
create_app(). It is a plain dataclass (not env-coupled) so tests can inject
config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .provisioning.state_machine import (
    DEFAULT_ALLOCATION_TIMEOUT_SECONDS,
    DEFAULT_TRACKING_TTL_SECONDS,
)

INTEGRATION_MODES = frozenset({"hybrid", "platform", "broker"})

_DEFAULT_POOL = ("192.168.2.37", "192.168.2.38")
_DEFAULT_REGION = "us-east-1"
_DEFAULT_AMI = "ami-0360c520857e3138f"
_DEFAULT_INSTANCE_TYPE = "t3.micro"
_DEFAULT_SSH_SECRET = "hobbyfarm-vm-ssh-key"


def _split_list(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _int(env: dict[str, str], key: str, default: int) -> int:
    raw = env.get(key, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class ProvisionerSettings:
    """Configuration for the provisioner service.

    All fields have sensible defaults for local development. Non-local
    environments must supply the Kubernetes API URL and token.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    integration_mode: str = "hybrid"
    """Which loops run: hybrid (all), platform, or broker."""

    # ── Static pool ────────────────────────────────────────────────
    static_pool: tuple[str, ...] = _DEFAULT_POOL
    """Static machine addresses, in allocation order."""

    # ── Loop timing (seconds) ──────────────────────────────────────
    reconcile_interval_seconds: int = 10
    gc_interval_seconds: int = 10
    allocation_timeout_seconds: int = DEFAULT_ALLOCATION_TIMEOUT_SECONDS
    """Allocated/provisioning requests not provisioned by then fail."""

    tracking_ttl_seconds: int = DEFAULT_TRACKING_TTL_SECONDS
    """How long failed/released requests keep tracking markers and handles."""

    orphan_age_seconds: int = 3600
    """Platform requests whose session is gone are deleted past this age."""

    # ── Kubernetes API ─────────────────────────────────────────────
    kube_api_url: str = ""
    kube_token: str = ""
    """Service-account bearer token. Never log this."""

    kube_ca_file: str = ""

    # ── Elastic fallback ───────────────────────────────────────────
    elastic_enabled: bool = True
    """Stamped onto platform requests as cloudFallback.enabled."""

    elastic_region: str = _DEFAULT_REGION
    elastic_ami: str = _DEFAULT_AMI
    elastic_instance_type: str = _DEFAULT_INSTANCE_TYPE
    elastic_subnet_id: str = ""
    elastic_security_group_ids: tuple[str, ...] = ()
    elastic_key_name: str = ""

    # ── SSH / configuration runs ───────────────────────────────────
    ssh_secret_name: str = _DEFAULT_SSH_SECRET
    static_ssh_username: str = "kube"
    elastic_ssh_username: str = "ubuntu"
    ssh_private_key_file: str = ""
    playbook_dir: str = "playbooks"
    config_rules_file: str = ""
    """Optional YAML keyword rules; built-in rules are used when empty."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def runs_platform_path(self) -> bool:
        return self.integration_mode in ("hybrid", "platform")

    @property
    def runs_broker_path(self) -> bool:
        return self.integration_mode in ("hybrid", "broker")

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.integration_mode not in INTEGRATION_MODES:
            errors.append(
                f"integration_mode must be one of {sorted(INTEGRATION_MODES)}, "
                f"got {self.integration_mode!r}"
            )
        if not self.static_pool and not self.elastic_enabled:
            errors.append("static_pool is empty and elastic fallback is disabled")
        for name in (
            "reconcile_interval_seconds",
            "gc_interval_seconds",
            "allocation_timeout_seconds",
            "tracking_ttl_seconds",
            "orphan_age_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        if not self.is_local:
            if not self.kube_api_url:
                errors.append(f"{self.environment}: kube_api_url is required")
            if not self.kube_token:
                errors.append(f"{self.environment}: kube_token is required")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> ProvisionerSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct ProvisionerSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        pool_raw = env.get("STATIC_VM_POOL", "")
        pool = _split_list(pool_raw) if pool_raw else _DEFAULT_POOL

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            integration_mode=env.get("INTEGRATION_MODE", "hybrid").strip().lower(),
            static_pool=pool,
            reconcile_interval_seconds=_int(env, "RECONCILE_INTERVAL_SECONDS", 10),
            gc_interval_seconds=_int(env, "GC_INTERVAL_SECONDS", 10),
            allocation_timeout_seconds=_int(
                env, "ALLOCATION_TIMEOUT_SECONDS", DEFAULT_ALLOCATION_TIMEOUT_SECONDS,
            ),
            tracking_ttl_seconds=_int(env, "TRACKING_TTL_SECONDS", DEFAULT_TRACKING_TTL_SECONDS),
            orphan_age_seconds=_int(env, "ORPHAN_AGE_SECONDS", 3600),
            kube_api_url=env.get("KUBE_API_URL", ""),
            kube_token=env.get("KUBE_TOKEN", ""),
            kube_ca_file=env.get("KUBE_CA_FILE", ""),
            elastic_enabled=env.get("ELASTIC_ENABLED", "true").strip().lower() in ("1", "true", "yes"),
            elastic_region=env.get("ELASTIC_REGION", _DEFAULT_REGION),
            elastic_ami=env.get("ELASTIC_AMI", _DEFAULT_AMI),
            elastic_instance_type=env.get("ELASTIC_INSTANCE_TYPE", _DEFAULT_INSTANCE_TYPE),
            elastic_subnet_id=env.get("ELASTIC_SUBNET_ID", ""),
            elastic_security_group_ids=_split_list(env.get("ELASTIC_SECURITY_GROUP_IDS", "")),
            elastic_key_name=env.get("ELASTIC_KEY_NAME", ""),
            ssh_secret_name=env.get("SSH_SECRET_NAME", _DEFAULT_SSH_SECRET),
            static_ssh_username=env.get("STATIC_SSH_USERNAME", "kube"),
            elastic_ssh_username=env.get("ELASTIC_SSH_USERNAME", "ubuntu"),
            ssh_private_key_file=env.get("SSH_PRIVATE_KEY_FILE", ""),
            playbook_dir=env.get("PLAYBOOK_DIR", "playbooks"),
            config_rules_file=env.get("CONFIG_RULES_FILE", ""),
        )
