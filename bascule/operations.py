"""Surface opérateur : deploy, rollback, status, cleanup.

Construit les collaborateurs concrets (kubectl, docker, Prometheus, Slack,
PostgreSQL) à partir des variables d'environnement, un jeu par environnement
cible. Un seul déploiement ou rollback à la fois par environnement (bail).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from bascule.deploy.canary import CanaryAnalyzer, CanaryPolicy
from bascule.deploy.coordinator import DeployOptions, DeployResult, DeploymentCoordinator, capture_state
from bascule.deploy.environments import (
    BACKUP_RETENTION_DAYS,
    DB_PATH,
    LOCK_TTL,
    LOGS_DIR,
    STATE_RETENTION,
    Environment,
    resolve_environment,
    validate_version,
)
from bascule.deploy.errors import PreconditionError, SnapshotNotFound
from bascule.deploy.health import HealthChecker
from bascule.deploy.polling import CancelToken
from bascule.deploy.preflight import CommandTestRunner, require_confirmation
from bascule.deploy.strategies import StrategyName
from bascule.logging.logger import CommandError, build_logger
from bascule.rollback.engine import RollbackEngine, RollbackMode, RollbackResult
from bascule.services.backup import BackupCoordinator, PostgresBackupService
from bascule.services.cluster import ClusterBackend, KubectlBackend
from bascule.services.metrics import DEFAULT_WINDOW, PrometheusMetricsProbe
from bascule.services.notify import LogNotifier, NotificationChannel, SlackNotifier
from bascule.services.registry import DockerRegistry
from bascule.services.secrets import EnvSecretStore, KubernetesSecretStore
from bascule.store.models import BackupRecord, DeploymentState
from bascule.store.sqlite_store import StateStore


class RollbackTarget(str, Enum):
    LATEST = "latest"
    VERSION = "version"
    EMERGENCY = "emergency"
    DATABASE = "database"
    FULL = "full"


@dataclass
class Engine:
    """Collaborateurs câblés pour un environnement."""

    env: Environment
    store: StateStore
    backend: ClusterBackend
    coordinator: DeploymentCoordinator
    rollback: RollbackEngine
    logger: logging.Logger


@dataclass
class RollbackOutcome:
    environment: str
    target: RollbackTarget
    result: Optional[RollbackResult] = None
    database: Optional[BackupRecord] = None
    plan: List[str] = field(default_factory=list)


@dataclass
class EnvironmentStatus:
    environment: Environment
    current: Optional[DeploymentState]
    latest: Optional[DeploymentState]
    degraded: Optional[str]
    lock_owner: Optional[str]
    error: Optional[str] = None


def build_engine(
    environment: "Environment | str",
    store: StateStore,
    log_filename: str = "deploy.log",
    env_vars: Mapping[str, str] | None = None,
) -> Engine:
    env_vars = os.environ if env_vars is None else env_vars
    env = resolve_environment(environment, env_vars) if isinstance(environment, str) else environment
    logger = build_logger(env.name, LOGS_DIR, log_filename=log_filename)

    backend = KubectlBackend(env.namespace, logger=logger, service_port=env.service_port)
    health = HealthChecker(backend, health_path=env.health_path, logger=logger)
    registry = DockerRegistry(env.registry, logger=logger)

    webhook = env_vars.get("BASCULE_SLACK_WEBHOOK_URL")
    notifier: NotificationChannel = SlackNotifier(webhook, logger=logger) if webhook else LogNotifier(logger)

    if env_vars.get("BASCULE_SECRET_SOURCE", "kubernetes") == "env":
        secrets = EnvSecretStore(env_vars)
    else:
        secrets = KubernetesSecretStore(logger=logger)
    backups = BackupCoordinator(PostgresBackupService(secrets, logger=logger), store, logger=logger)

    analyzer = None
    prometheus = env_vars.get("BASCULE_PROMETHEUS_URL")
    if prometheus:
        window = env_vars.get("BASCULE_METRICS_WINDOW", DEFAULT_WINDOW)
        analyzer = CanaryAnalyzer(PrometheusMetricsProbe(prometheus, logger=logger), CanaryPolicy(window=window), logger=logger)

    rollback = RollbackEngine(backend, health, store, notifier, registry=registry, backups=backups, logger=logger)
    coordinator = DeploymentCoordinator(
        backend,
        health,
        store,
        rollback,
        notifier,
        registry,
        backups=backups,
        tests=CommandTestRunner.from_env(env_vars, logger=logger),
        analyzer=analyzer,
        logger=logger,
    )
    return Engine(env=env, store=store, backend=backend, coordinator=coordinator, rollback=rollback, logger=logger)


EngineFactory = Callable[..., Engine]


class Operations:
    def __init__(
        self,
        store: Optional[StateStore] = None,
        factory: EngineFactory = build_engine,
        lock_ttl: float = LOCK_TTL,
        owner: str = "bascule-runner",
    ) -> None:
        self.store = store or StateStore(DB_PATH)
        self.factory = factory
        self.lock_ttl = lock_ttl
        self.owner = owner

    def engine(self, environment: "Environment | str", log_filename: str = "deploy.log") -> Engine:
        return self.factory(environment, self.store, log_filename=log_filename)

    def deploy(
        self,
        environment: str,
        version: str,
        strategy: "StrategyName | str",
        flags: DeployOptions = DeployOptions(),
        cancel: Optional[CancelToken] = None,
    ) -> DeployResult:
        engine = self.engine(environment)
        return engine.coordinator.deploy(engine.env, version, strategy, flags, cancel=cancel)

    def rollback(
        self,
        environment: str,
        target: "RollbackTarget | str" = RollbackTarget.LATEST,
        version: Optional[str] = None,
        confirmed: bool = False,
        dry_run: bool = False,
    ) -> RollbackOutcome:
        kind = RollbackTarget(target)
        engine = self.engine(environment, log_filename="rollback.log")
        env = engine.env
        if kind is RollbackTarget.VERSION or (kind is RollbackTarget.FULL and version):
            version = validate_version(version or "")

        engine.logger.info("🔄 Rollback %s de %s (version cible: %s)", kind.value, env.name, version or "auto")
        if dry_run:
            plan = self._rollback_plan(engine, kind, version)
            for line in plan:
                engine.logger.info(line)
            return RollbackOutcome(environment=env.name, target=kind, plan=plan)

        # Le mode urgence est le chemin d'automatisation : pas de confirmation interactive
        if kind is not RollbackTarget.EMERGENCY:
            require_confirmation(env, confirmed, "Rollback")

        outcome = RollbackOutcome(environment=env.name, target=kind)
        with self.store.hold(env.name, self.owner, self.lock_ttl):
            if kind is RollbackTarget.EMERGENCY:
                outcome.result = engine.rollback.emergency_rollback(env)
            elif kind is RollbackTarget.LATEST:
                outcome.result = engine.rollback.rollback_to_last_state(env, RollbackMode.NORMAL)
            elif kind is RollbackTarget.VERSION:
                outcome.result = engine.rollback.rollback_to_version(env, version, RollbackMode.NORMAL)
            elif kind is RollbackTarget.DATABASE:
                outcome.database = engine.rollback.rollback_database(env)
            else:
                if version:
                    outcome.result = engine.rollback.rollback_to_version(env, version, RollbackMode.NORMAL)
                else:
                    outcome.result = engine.rollback.rollback_to_last_state(env, RollbackMode.NORMAL)
                outcome.database = engine.rollback.rollback_database(env)
        engine.logger.info("🎉 Rollback %s terminé", kind.value)
        return outcome

    def _rollback_plan(self, engine: Engine, kind: RollbackTarget, version: Optional[str]) -> List[str]:
        env = engine.env
        lines = [f"DRY RUN - rollback {kind.value} de {env.name} ({env.namespace})"]
        if kind in (RollbackTarget.DATABASE, RollbackTarget.FULL):
            backup = self.store.latest_backup(env.name)
            lines.append(f"  base: {backup.location_ref if backup else 'aucun backup disponible'}")
            if kind is RollbackTarget.DATABASE:
                return lines

        if version:
            targets = {s: env.image_for(s, version) for s in env.services}
        else:
            state = self.store.latest(env.name)
            if state is None:
                raise SnapshotNotFound(f"Aucun snapshot de rollback pour {env.name}")
            targets = state.images()
            lines.append(f"  snapshot {state.state_id} capturé le {state.captured_at.isoformat()}")

        for service, image in targets.items():
            try:
                current = engine.backend.describe(service).image
            except CommandError:
                current = "?"
            lines.append(f"  {service}: {current} -> {image}")
        return lines

    def status(self, environment: str) -> EnvironmentStatus:
        engine = self.engine(environment)
        env = engine.env
        current: Optional[DeploymentState] = None
        error: Optional[str] = None
        try:
            current = capture_state(engine.backend, env)
        except (CommandError, OSError, ValueError) as exc:
            error = str(exc)
        return EnvironmentStatus(
            environment=env,
            current=current,
            latest=self.store.latest(env.name),
            degraded=self.store.degraded_reason(env.name),
            lock_owner=self.store.lock_owner(env.name),
            error=error,
        )

    def targets(self, environment: str) -> Tuple[List[DeploymentState], List[BackupRecord]]:
        env = resolve_environment(environment)
        return self.store.history(env.name), self.store.backups(env.name)

    def cleanup(
        self,
        environment: str,
        keep: int = STATE_RETENTION,
        max_age_days: int = BACKUP_RETENTION_DAYS,
    ) -> Dict[str, int]:
        """Maintenance : garde les `keep` derniers snapshots, oublie les vieux backups."""

        env = resolve_environment(environment)
        if keep < 1:
            raise PreconditionError("Il faut conserver au moins un snapshot")
        logger = build_logger(env.name, LOGS_DIR, log_filename="deploy.log")
        removed_states = self.store.prune_states(env.name, keep=keep)
        removed_backups = self.store.prune_backups(env.name, max_age_days=max_age_days)
        for record in removed_backups:
            try:
                os.remove(record.location_ref)
            except FileNotFoundError:
                pass
        logger.info(
            "🧹 Nettoyage %s: %s snapshot(s), %s backup(s) retiré(s)",
            env.name,
            removed_states,
            len(removed_backups),
        )
        return {"states": removed_states, "backups": len(removed_backups)}
