"""Moteur de rollback : snapshot, version précise, mode urgence, base de données."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from bascule.deploy.environments import DEPLOY_HEALTH_TIMEOUT, EMERGENCY_HEALTH_TIMEOUT, Environment, validate_version
from bascule.deploy.errors import (
    BackupFailed,
    DatabaseRestoreFailed,
    HealthCheckFailed,
    Outcome,
    PreconditionError,
    RollbackFailed,
    SnapshotNotFound,
)
from bascule.deploy.health import HealthChecker
from bascule.logging.logger import CommandError
from bascule.services.backup import BackupCoordinator, BackupService
from bascule.services.cluster import ClusterBackend
from bascule.services.notify import NotificationChannel, Severity
from bascule.services.registry import ImageRegistry
from bascule.store.models import BackupRecord, DeploymentState
from bascule.store.sqlite_store import StateStore


class RollbackMode(str, Enum):
    NORMAL = "Normal"
    EMERGENCY = "Emergency"


@dataclass(frozen=True)
class RestoreTarget:
    service: str
    image: str
    replicas: Optional[int] = None


@dataclass
class RollbackResult:
    environment: str
    mode: RollbackMode
    target: str
    restored: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class RollbackEngine:
    def __init__(
        self,
        backend: ClusterBackend,
        health: HealthChecker,
        store: StateStore,
        notifier: NotificationChannel,
        registry: Optional[ImageRegistry] = None,
        backups: Optional[BackupCoordinator] = None,
        logger: Optional[logging.Logger] = None,
        rollout_timeout: float = DEPLOY_HEALTH_TIMEOUT,
        emergency_timeout: float = EMERGENCY_HEALTH_TIMEOUT,
    ) -> None:
        self.backend = backend
        self.health = health
        self.store = store
        self.notifier = notifier
        self.registry = registry
        self.backups = backups
        self.logger = logger or logging.getLogger(__name__)
        self.rollout_timeout = rollout_timeout
        self.emergency_timeout = emergency_timeout

    # --- Déploiements ---
    def rollback_to_state(
        self, env: Environment, state: DeploymentState, mode: RollbackMode = RollbackMode.NORMAL
    ) -> RollbackResult:
        label = f"snapshot {state.state_id}" if state.state_id is not None else "snapshot"
        self.logger.info("Restauration de %s depuis %s (%s)", env.name, label, mode.value)
        targets = [RestoreTarget(r.name, r.image, r.desired_replicas) for r in state.services]
        return self._restore(env, targets, mode, label)

    def rollback_to_last_state(self, env: Environment, mode: RollbackMode = RollbackMode.NORMAL) -> RollbackResult:
        state = self.store.latest(env.name)
        if state is None:
            raise SnapshotNotFound(f"Aucun snapshot de rollback pour {env.name}")
        return self.rollback_to_state(env, state, mode)

    def rollback_to_version(
        self, env: Environment, version: str, mode: RollbackMode = RollbackMode.NORMAL
    ) -> RollbackResult:
        cleaned = validate_version(version)
        # En urgence on ne perd pas de temps à interroger le registre
        if mode is RollbackMode.NORMAL and self.registry is not None:
            missing = [s for s in env.services if not self.registry.image_exists(s, cleaned)]
            if missing:
                raise PreconditionError(f"Image(s) introuvable(s) pour {cleaned}: {', '.join(missing)}")
        targets = [RestoreTarget(s, env.image_for(s, cleaned)) for s in env.services]
        return self._restore(env, targets, mode, f"version {cleaned}")

    def emergency_rollback(self, env: Environment) -> RollbackResult:
        state = self.store.latest(env.name)
        if state is None:
            raise SnapshotNotFound(f"Aucun état d'urgence disponible pour {env.name}")

        self.logger.critical("🚨 ROLLBACK D'URGENCE vers le snapshot %s", state.state_id)
        self.notifier.notify(Severity.CRITICAL, env.name, f"Rollback d'urgence initié pour {env.name}")
        result = self.rollback_to_state(env, state, RollbackMode.EMERGENCY)

        message = f"Rollback d'urgence terminé pour {env.name}"
        if result.warnings:
            message += f" ({len(result.warnings)} avertissement(s), vérification manuelle requise)"
        self.notifier.notify(Severity.HIGH, env.name, message)
        return result

    def _restore(
        self, env: Environment, targets: Sequence[RestoreTarget], mode: RollbackMode, label: str
    ) -> RollbackResult:
        emergency = mode is RollbackMode.EMERGENCY
        timeout = self.emergency_timeout if emergency else self.rollout_timeout
        result = RollbackResult(environment=env.name, mode=mode, target=label)
        failures: List[str] = []

        for target in targets:
            service = target.service
            self.logger.info(
                "Restauration de %s vers %s (%s réplica(s))",
                service,
                target.image,
                target.replicas if target.replicas is not None else "inchangé",
            )
            try:
                if emergency:
                    # Recreate : l'ancienne version revient sans attendre un remplacement progressif
                    self.backend.set_update_strategy(service, "Recreate")
                self.backend.set_image(service, target.image)
                if target.replicas is not None:
                    self.backend.scale(service, target.replicas)

                if not self.backend.wait_for_rollout(service, timeout):
                    if not emergency:
                        self._escalate(env, f"Rollout non terminé pour {service} après {timeout}s", service)
                    warning = f"{service}: rollout non terminé après {timeout}s en mode urgence, on continue"
                    self.logger.warning("⚠️ %s", warning)
                    result.warnings.append(warning)
                    result.restored.append(service)
                    continue

                self.health.wait_healthy(service, timeout=timeout)
            except HealthCheckFailed as exc:
                if not emergency:
                    self._escalate(env, f"Health check en échec après rollback: {exc}", service, exc)
                warning = f"{service}: {exc.message}"
                self.logger.warning("⚠️ Health check en mode urgence: %s", warning)
                result.warnings.append(warning)
            except CommandError as exc:
                if not emergency:
                    self._escalate(env, f"Échec de la restauration: {exc}", service, exc)
                self.logger.error("Restauration de %s en échec (urgence, on continue): %s", service, exc)
                failures.append(service)
                continue

            result.restored.append(service)
            self.logger.info("✅ %s restauré", service)

        if failures:
            self._escalate(env, f"Rollback d'urgence incomplet, service(s) en échec: {', '.join(failures)}", failures[0])

        self.store.clear_degraded(env.name)
        self.logger.info("🎉 Restauration de %s terminée (%s)", env.name, label)
        return result

    def _escalate(
        self, env: Environment, message: str, service: Optional[str], cause: Optional[BaseException] = None
    ) -> None:
        """Marque l'environnement dégradé, alerte en critique et lève RollbackFailed."""

        self.logger.critical("❌ CRITIQUE: %s", message)
        self.store.mark_degraded(env.name, message)
        self.notifier.notify(Severity.CRITICAL, env.name, f"Rollback en échec: {message}")
        raise RollbackFailed(message, service=service) from cause

    # --- Base de données ---
    def rollback_database(self, env: Environment) -> BackupRecord:
        """Restaure le dernier backup pré-déploiement.

        Un backup « pre-rollback » est pris juste avant, puis restauré si la
        restauration principale échoue. Pas d'autre tentative au-delà.
        """

        if self.backups is None:
            raise PreconditionError("Aucun service de backup configuré")
        target = self.store.latest_backup(env.name)
        if target is None:
            raise SnapshotNotFound(f"Aucun backup de base pour {env.name}")

        self.logger.warning("⚠️ ROLLBACK DE LA BASE (destructif) vers %s", target.location_ref)
        try:
            safety = self.backups.backup(env, kind="pre-rollback")
        except BackupFailed as exc:
            raise BackupFailed(f"Backup pré-rollback impossible, restauration annulée: {exc.message}") from exc

        service: BackupService = self.backups.service
        try:
            service.restore(env, target)
        except (CommandError, OSError, ValueError) as exc:
            self.logger.error("Restauration de la base échouée: %s", exc)
            self.logger.warning("Tentative de restauration de l'état pré-rollback...")
            try:
                service.restore(env, safety)
            except (CommandError, OSError, ValueError) as second:
                message = "Restauration échouée et état pré-rollback non restauré"
                self.logger.critical("❌ CRITIQUE: %s", message)
                self.store.mark_degraded(env.name, message)
                self.notifier.notify(Severity.CRITICAL, env.name, f"CRITIQUE: {message}")
                raise DatabaseRestoreFailed(message, outcome=Outcome.ROLLBACK_FAILED) from second
            self.logger.info("✅ État pré-rollback restauré")
            self.notifier.notify(Severity.HIGH, env.name, "Restauration de la base échouée, état pré-rollback restauré")
            raise DatabaseRestoreFailed(
                f"Restauration de la base échouée: {exc}", outcome=Outcome.ROLLED_BACK
            ) from exc

        self.logger.info("✅ Base restaurée depuis %s", target.location_ref)
        return target
