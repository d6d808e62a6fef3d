"""Provisioner FastAPI application factory.

The create_app() factory is the single entry point for building the
provisioner service. It wires the record store and collaborators via
dependency injection, builds the reconciliation loops for the configured
integration mode, and runs them under a LoopSupervisor for the lifetime of
the ASGI app. The HTTP surface is operational only: health, metrics and a
read-only status API.

Usage:
    # Local development (in-memory store, fake SSH)
    from training_provisioner.app import create_app, ProvisionerSettings
    app = create_app(ProvisionerSettings())

    # Cluster deployment
    settings = ProvisionerSettings.from_env()
    app = create_app(settings)

    # Testing (full DI control, loops not started)
    app = create_app(settings, store=store, provisioner=fake, start_loops=False)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from types import MappingProxyType

from fastapi import FastAPI
from fastapi.responses import Response

from .bridge.propagation import CredentialPolicy, PropagationBridge
from .intake.sessions import FallbackPolicy, SessionIntake
from .observability.logging import configure_logging
from .observability.metrics import metrics_text
from .operations.expiry import AllocationExpiryDetector
from .operations.garbage_collector import GarbageCollector
from .operations.supervisor import LoopSupervisor, PeriodicLoop
from .protocols import ConfigResolver, LivenessProbe, Provisioner, RecordStore
from .providers.elastic import ElasticProvider, InstanceTemplate
from .providers.static_pool import StaticPoolProvider
from .provisioning.request import BACKEND_ELASTIC, BACKEND_STATIC, SOURCE_BROKER, SOURCE_PLATFORM
from .reconciler.lifecycle import RequestReconciler
from .settings import ProvisionerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for injected store/collaborator instances.

    Stored on ``app.state.deps`` so route handlers can access them.
    """

    store: RecordStore
    provisioner: Provisioner
    config_resolver: ConfigResolver
    static_pool: StaticPoolProvider
    elastic: ElasticProvider


def _build_inmemory_collaborators(
    settings: ProvisionerSettings,
) -> tuple[RecordStore, Provisioner, ConfigResolver, LivenessProbe]:
    """In-memory store, fake provisioner and an all-reachable static pool."""
    from .inmemory import (
        InMemoryConfigResolver,
        InMemoryProvisioner,
        InMemoryRecordStore,
        StaticLivenessProbe,
    )

    return (
        InMemoryRecordStore(),
        InMemoryProvisioner(),
        InMemoryConfigResolver(),
        StaticLivenessProbe(settings.static_pool),
    )


def _build_cluster_collaborators(
    settings: ProvisionerSettings,
    store: RecordStore | None,
) -> tuple[RecordStore, Provisioner, ConfigResolver]:
    from .provisioning.ansible_runner import AnsibleProvisioner
    from .provisioning.config_resolver import KeywordConfigResolver, load_rules
    from .store.kube_client import KubernetesRecordStore

    if store is None:
        store = KubernetesRecordStore(
            api_url=settings.kube_api_url,
            bearer_token=settings.kube_token,
            ca_file=settings.kube_ca_file or None,
        )
    rules, default = load_rules(settings.config_rules_file or None)
    return (
        store,
        AnsibleProvisioner(
            playbook_dir=settings.playbook_dir,
            private_key_file=settings.ssh_private_key_file or None,
        ),
        KeywordConfigResolver(store, rules=rules, default=default),
    )


def build_loops(
    settings: ProvisionerSettings,
    deps: AppDependencies,
) -> list[PeriodicLoop]:
    """Periodic loops for the configured integration mode.

    The garbage collector always runs; the platform path adds session
    intake, the platform reconciler and the propagation bridge; the broker
    path adds the broker reconciler.
    """
    ssh_usernames = MappingProxyType({
        BACKEND_STATIC: settings.static_ssh_username,
        BACKEND_ELASTIC: settings.elastic_ssh_username,
    })
    providers = (deps.static_pool, deps.elastic)
    interval = settings.reconcile_interval_seconds
    loops: list[PeriodicLoop] = []

    def reconciler(source: str) -> RequestReconciler:
        return RequestReconciler(
            deps.store,
            providers,
            deps.provisioner,
            deps.config_resolver,
            source=source,
            allocation_timeout_seconds=settings.allocation_timeout_seconds,
            tracking_ttl_seconds=settings.tracking_ttl_seconds,
            ssh_usernames=ssh_usernames,
        )

    if settings.runs_platform_path:
        intake = SessionIntake(
            deps.store,
            fallback=FallbackPolicy(
                enabled=settings.elastic_enabled,
                instance_type=settings.elastic_instance_type,
                region=settings.elastic_region,
            ),
        )
        platform = reconciler(SOURCE_PLATFORM)
        bridge = PropagationBridge(
            deps.store,
            credentials=CredentialPolicy(
                secret_name=settings.ssh_secret_name,
                ssh_usernames=ssh_usernames,
            ),
        )
        loops += [
            PeriodicLoop(intake.name, intake.poll_once, interval),
            PeriodicLoop(platform.name, platform.reconcile_once, interval),
            PeriodicLoop(bridge.name, bridge.propagate_once, interval),
        ]

    if settings.runs_broker_path:
        broker = reconciler(SOURCE_BROKER)
        loops.append(PeriodicLoop(broker.name, broker.reconcile_once, interval))

    collector = GarbageCollector(
        deps.store,
        elastic=deps.elastic,
        detector=AllocationExpiryDetector(settings.allocation_timeout_seconds),
        orphan_age_seconds=settings.orphan_age_seconds if settings.runs_platform_path else None,
    )
    loops.append(PeriodicLoop(collector.name, collector.collect_once, settings.gc_interval_seconds))
    return loops


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: ProvisionerSettings | None = None,
    *,
    store: RecordStore | None = None,
    provisioner: Provisioner | None = None,
    config_resolver: ConfigResolver | None = None,
    probe: LivenessProbe | None = None,
    start_loops: bool = True,
) -> FastAPI:
    """Create a configured provisioner FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        store..config_resolver: Collaborator overrides. When None, local
            mode uses InMemory implementations and other environments
            build the Kubernetes store, Ansible runner and keyword config
            resolver from settings.
        probe: Liveness probe shared by both backends. When None, local
            mode treats every static pool address as reachable and other
            environments use TCP probes tuned per backend.
        start_loops: Run the reconciliation loops during the app lifespan.

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = ProvisionerSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Provisioner settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if settings.is_local:
        default_store, default_provisioner, default_resolver, default_probe = (
            _build_inmemory_collaborators(settings)
        )
        store = store or default_store
        provisioner = provisioner or default_provisioner
        config_resolver = config_resolver or default_resolver
        probe = probe or default_probe
    else:
        store, default_provisioner, default_resolver = _build_cluster_collaborators(settings, store)
        provisioner = provisioner or default_provisioner
        config_resolver = config_resolver or default_resolver

    deps = AppDependencies(
        store=store,
        provisioner=provisioner,
        config_resolver=config_resolver,
        static_pool=StaticPoolProvider(settings.static_pool, probe=probe),
        elastic=ElasticProvider(
            store,
            InstanceTemplate(
                region=settings.elastic_region,
                ami=settings.elastic_ami,
                instance_type=settings.elastic_instance_type,
                subnet_id=settings.elastic_subnet_id,
                security_group_ids=settings.elastic_security_group_ids,
                key_name=settings.elastic_key_name,
            ),
            probe=probe,
        ),
    )
    supervisor = LoopSupervisor(build_loops(settings, deps))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info(
            "Provisioner startup (environment=%s, mode=%s, loops=%s)",
            settings.environment,
            settings.integration_mode,
            ",".join(supervisor.loop_names),
        )
        if start_loops:
            supervisor.start()
        try:
            yield
        finally:
            if start_loops:
                await supervisor.stop()
            logger.info("Provisioner shutdown")

    app = FastAPI(
        title="Training VM Provisioner",
        description="Reconciles training VM provisioning requests",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings
    app.state.supervisor = supervisor

    # ── Routes ──────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        loops = supervisor.snapshot()
        degraded = any(state["abandoned"] for state in loops.values())
        return {
            "status": "degraded" if degraded else "ok",
            "environment": settings.environment,
            "integration_mode": settings.integration_mode,
            "static_pool_size": len(deps.static_pool.handles),
            "elastic_enabled": settings.elastic_enabled,
            "loops": loops,
        }

    @app.get("/metrics")
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    from .routes.status import create_status_router
    app.include_router(create_status_router())

    return app


# For uvicorn, use --factory flag:
#   uvicorn training_provisioner.app.main:create_app --factory
# This avoids executing create_app() at import time.
