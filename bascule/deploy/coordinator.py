"""Orchestration d'un déploiement multi-services.

Déroulé d'un appel à `DeploymentCoordinator.deploy` :
- validation (environnement, version, images, stratégie, confirmation)
- dry-run : renvoie le plan, sans aucune écriture
- verrou de l'environnement (bail SQLite)
- tests pré-déploiement (sauf `skip_tests`), contournables par `force`
- backup de la base (sauf `skip_backup`), fatal en cas d'échec
- snapshot de l'état courant : cible de rollback, persisté avant toute mutation
- exécution de la stratégie puis health check complet
- en cas d'échec : rollback automatique vers le snapshot (sauf `force`)
"""
from __future__ import annotations

import getpass
import logging
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from bascule.deploy.canary import CanaryAnalyzer
from bascule.deploy.environments import LOCK_TTL, Environment, resolve_environment
from bascule.deploy.errors import (
    Cancelled,
    DeployError,
    DeployFailed,
    HealthCheckFailed,
    Outcome,
    PreconditionError,
    PreflightFailed,
    RollbackFailed,
    StrategyFailed,
)
from bascule.deploy.health import HealthChecker
from bascule.deploy.polling import CancelToken
from bascule.deploy.preflight import PreDeployTests, require_confirmation, validate_images
from bascule.deploy.strategies import StrategyName, StrategySettings, build_strategy
from bascule.logging.logger import CommandError
from bascule.rollback.engine import RollbackEngine, RollbackMode
from bascule.services.backup import BackupCoordinator
from bascule.services.cluster import ClusterBackend
from bascule.services.notify import NotificationChannel, Severity
from bascule.services.registry import ImageRegistry
from bascule.store.models import DeploymentState, utc_now
from bascule.store.sqlite_store import StateStore


@dataclass(frozen=True)
class DeployOptions:
    skip_tests: bool = False
    skip_backup: bool = False
    dry_run: bool = False
    force: bool = False
    # Confirmation explicite (ou drapeau d'automatisation) pour la production
    confirmed: bool = False


class AttemptStatus(str, Enum):
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


@dataclass
class RolloutAttempt:
    environment: str
    target_version: str
    strategy: StrategyName
    started_at: datetime = field(default_factory=utc_now)
    status: AttemptStatus = AttemptStatus.RUNNING
    state_id: Optional[int] = None
    backup_id: Optional[int] = None
    finished_at: Optional[datetime] = None
    message: str = ""

    def finish(self, status: AttemptStatus, message: str = "") -> None:
        self.status = status
        self.message = message
        self.finished_at = utc_now()


@dataclass(frozen=True)
class DeployPlan:
    environment: str
    namespace: str
    version: str
    strategy: StrategyName
    services: Tuple[str, ...]
    current_images: Dict[str, str]
    target_images: Dict[str, str]
    run_tests: bool
    take_backup: bool

    def describe(self) -> List[str]:
        lines = [
            f"Déploiement {self.version} sur {self.environment} ({self.namespace}) en {self.strategy.value}",
            f"Tests pré-déploiement: {'oui' if self.run_tests else 'non'}, backup: {'oui' if self.take_backup else 'non'}",
        ]
        for service in self.services:
            lines.append(f"  {service}: {self.current_images.get(service, '?')} -> {self.target_images[service]}")
        return lines


@dataclass
class DeployResult:
    attempt: RolloutAttempt
    plan: Optional[DeployPlan] = None
    duration: float = 0.0

    @property
    def state_id(self) -> Optional[int]:
        return self.attempt.state_id

    @property
    def dry_run(self) -> bool:
        return self.plan is not None


def capture_state(backend: ClusterBackend, env: Environment) -> DeploymentState:
    return DeploymentState(
        environment=env.name,
        services=tuple(backend.describe(service) for service in env.services),
    )


class DeploymentCoordinator:
    def __init__(
        self,
        backend: ClusterBackend,
        health: HealthChecker,
        store: StateStore,
        rollback: RollbackEngine,
        notifier: NotificationChannel,
        registry: ImageRegistry,
        backups: Optional[BackupCoordinator] = None,
        tests: Optional[PreDeployTests] = None,
        analyzer: Optional[CanaryAnalyzer] = None,
        settings: StrategySettings = StrategySettings(),
        logger: Optional[logging.Logger] = None,
        lock_ttl: float = LOCK_TTL,
        owner: Optional[str] = None,
    ) -> None:
        self.backend = backend
        self.health = health
        self.store = store
        self.rollback = rollback
        self.notifier = notifier
        self.registry = registry
        self.backups = backups
        self.tests = tests
        self.analyzer = analyzer
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.lock_ttl = lock_ttl
        self.owner = owner or f"{getpass.getuser()}@{socket.gethostname()}"

    def deploy(
        self,
        env: "Environment | str",
        version: str,
        strategy: "StrategyName | str" = StrategyName.BLUE_GREEN,
        opts: DeployOptions = DeployOptions(),
        cancel: Optional[CancelToken] = None,
    ) -> DeployResult:
        """Déploie `version` sur tous les services gérés de `env`.

        Raises:
            PreconditionError: entrée invalide, rien n'a été touché.
            PreflightFailed / BackupFailed: arrêt avant toute mutation.
            StrategyFailed / HealthCheckFailed: `outcome` indique si le rollback
                automatique a eu lieu (ROLLED_BACK) ou non (PARTIAL, avec `force`).
            RollbackFailed: le rollback automatique a lui-même échoué.
        """

        started = time.monotonic()
        environment = resolve_environment(env) if isinstance(env, str) else env
        strategy_name = StrategyName.parse(strategy)
        self.logger.info("🚀 Déploiement %s sur %s (%s)", version, environment.name, strategy_name.value)
        self.logger.info(
            "Options: skip_tests=%s skip_backup=%s dry_run=%s force=%s",
            opts.skip_tests,
            opts.skip_backup,
            opts.dry_run,
            opts.force,
        )

        cleaned = validate_images(environment, version, self.registry, self.logger)
        if strategy_name is StrategyName.CANARY and self.analyzer is None:
            raise PreconditionError("La stratégie canary requiert une source de métriques (BASCULE_PROMETHEUS_URL)")
        attempt = RolloutAttempt(environment=environment.name, target_version=cleaned, strategy=strategy_name)

        if opts.dry_run:
            plan = self.plan(environment, cleaned, strategy_name, opts)
            self.logger.info("🔍 DRY RUN - aucune modification ne sera effectuée")
            for line in plan.describe():
                self.logger.info(line)
            attempt.finish(AttemptStatus.SUCCEEDED, "dry-run")
            return DeployResult(attempt=attempt, plan=plan, duration=time.monotonic() - started)

        require_confirmation(environment, opts.confirmed, "Déploiement")

        with self.store.hold(environment.name, self.owner, self.lock_ttl):
            try:
                self._execute(environment, cleaned, strategy_name, opts, attempt, cancel or CancelToken())
            except DeployError as exc:
                exc.attempt = attempt
                if attempt.status is AttemptStatus.RUNNING:
                    attempt.finish(AttemptStatus.FAILED, str(exc))
                raise

        duration = time.monotonic() - started
        attempt.finish(AttemptStatus.SUCCEEDED, f"{cleaned} en ligne")
        self.store.clear_degraded(environment.name)
        self.logger.info("🎉 Déploiement terminé en %.0f secondes", duration)
        self.notifier.notify(
            Severity.INFO,
            environment.name,
            f"Déploiement réussi: version {cleaned} déployée sur {environment.name} en {duration:.0f}s",
        )
        return DeployResult(attempt=attempt, duration=duration)

    def plan(
        self, env: Environment, version: str, strategy: StrategyName, opts: DeployOptions = DeployOptions()
    ) -> DeployPlan:
        current: Dict[str, str] = {}
        for service in env.services:
            try:
                current[service] = self.backend.describe(service).image
            except CommandError:
                current[service] = "?"
        return DeployPlan(
            environment=env.name,
            namespace=env.namespace,
            version=version,
            strategy=strategy,
            services=env.services,
            current_images=current,
            target_images={s: env.image_for(s, version) for s in env.services},
            run_tests=not opts.skip_tests,
            take_backup=not opts.skip_backup,
        )

    def _execute(
        self,
        env: Environment,
        version: str,
        strategy_name: StrategyName,
        opts: DeployOptions,
        attempt: RolloutAttempt,
        cancel: CancelToken,
    ) -> None:
        self._run_tests(env, version, opts)

        if opts.skip_backup:
            self.logger.warning("⚠️ Backup de la base ignoré (skip_backup)")
        elif self.backups is not None:
            attempt.backup_id = self.backups.backup(env).backup_id
        else:
            self.logger.warning("⚠️ Aucun service de backup configuré, backup ignoré")

        try:
            snapshot = self.store.save(capture_state(self.backend, env))
        except (CommandError, ValueError) as exc:
            raise DeployError(f"Impossible de sauvegarder l'état courant: {exc}") from exc
        attempt.state_id = snapshot.state_id
        self.logger.info("✅ État courant sauvegardé (snapshot %s)", snapshot.state_id)

        strategy = build_strategy(
            strategy_name,
            self.backend,
            self.health,
            analyzer=self.analyzer,
            settings=self.settings,
            logger=self.logger,
        )
        try:
            strategy.run(env, version, cancel)
            self._post_deploy_validation(env, cancel)
        except DeployFailed as exc:
            self._handle_failure(env, snapshot, opts, attempt, exc)

    def _run_tests(self, env: Environment, version: str, opts: DeployOptions) -> None:
        if opts.skip_tests or self.tests is None:
            self.logger.warning("⚠️ Tests pré-déploiement ignorés")
            return
        try:
            self.tests.run(env, version)
        except PreflightFailed:
            if not opts.force:
                self.logger.error("Tests pré-déploiement en échec. Utiliser force pour passer outre.")
                raise
            self.logger.warning("Tests pré-déploiement en échec, on continue (force)")

    def _post_deploy_validation(self, env: Environment, cancel: CancelToken) -> None:
        self.logger.info("🔍 Validation post-déploiement...")
        for service in env.services:
            try:
                self.health.wait_healthy(service, cancel=cancel)
            except Cancelled as exc:
                raise StrategyFailed(f"Déploiement interrompu: {exc}", service=service) from exc
            except HealthCheckFailed as exc:
                self.logger.error("Health check post-déploiement en échec pour %s", service)
                raise exc

    def _handle_failure(
        self,
        env: Environment,
        snapshot: DeploymentState,
        opts: DeployOptions,
        attempt: RolloutAttempt,
        exc: DeployFailed,
    ) -> None:
        self.logger.error("Déploiement en échec: %s", exc)
        if opts.force:
            exc.outcome = Outcome.PARTIAL
            self.logger.warning("force actif : pas de rollback automatique, environnement partiellement modifié")
            self.notifier.notify(
                Severity.HIGH,
                env.name,
                f"Déploiement {attempt.target_version} en échec sans rollback (force): {exc}",
            )
            raise exc

        self.logger.error("Lancement du rollback automatique vers le snapshot %s...", snapshot.state_id)
        try:
            self.rollback.rollback_to_state(env, snapshot, RollbackMode.NORMAL)
        except RollbackFailed as rollback_exc:
            rollback_exc.attempt = attempt
            attempt.finish(AttemptStatus.FAILED, f"rollback en échec: {rollback_exc}")
            raise rollback_exc from exc

        exc.outcome = Outcome.ROLLED_BACK
        attempt.finish(AttemptStatus.ROLLED_BACK, str(exc))
        self.notifier.notify(
            Severity.HIGH,
            env.name,
            f"Déploiement {attempt.target_version} en échec ({exc}), rollback effectué",
        )
        raise exc
