"""Stratégies de rollout : BlueGreen, Rolling, Canary.

Les trois variantes partagent la même boucle par service (ordre déclaré,
fail-fast) et la même machine à états :
NOT_STARTED → PER_SERVICE_LOOP → VALIDATING → DONE | FAILED.
Le premier service en échec arrête la boucle ; les suivants ne sont jamais
touchés. L'interruption opérateur est vérifiée entre deux services.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from bascule.deploy.canary import CanaryAnalyzer, CanaryDecision, CanaryEvaluation
from bascule.deploy.environments import (
    CANARY_FRACTION,
    CANARY_WINDOW,
    DEPLOY_HEALTH_TIMEOUT,
    ROLLING_MAX_SURGE,
    ROLLING_MAX_UNAVAILABLE,
    Environment,
)
from bascule.deploy.errors import Cancelled, HealthCheckFailed, PreconditionError, StrategyFailed
from bascule.deploy.health import HealthChecker
from bascule.deploy.polling import CancelToken
from bascule.logging.logger import CommandError
from bascule.services.cluster import ClusterBackend
from bascule.services.metrics import MetricsUnavailable
from bascule.store.models import ServiceRecord


class StrategyName(str, Enum):
    BLUE_GREEN = "BlueGreen"
    ROLLING = "Rolling"
    CANARY = "Canary"

    @classmethod
    def parse(cls, value: "str | StrategyName") -> "StrategyName":
        if isinstance(value, StrategyName):
            return value
        key = (value or "").strip().lower().replace("-", "").replace("_", "")
        for member in cls:
            if member.value.lower() == key:
                return member
        raise PreconditionError(f"Stratégie inconnue: {value!r} (blue-green, rolling, canary)")


class StrategyPhase(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    PER_SERVICE_LOOP = "PER_SERVICE_LOOP"
    VALIDATING = "VALIDATING"
    DONE = "DONE"
    FAILED = "FAILED"


_TRANSITIONS: Dict[StrategyPhase, tuple] = {
    StrategyPhase.NOT_STARTED: (StrategyPhase.PER_SERVICE_LOOP,),
    StrategyPhase.PER_SERVICE_LOOP: (StrategyPhase.VALIDATING, StrategyPhase.FAILED),
    StrategyPhase.VALIDATING: (StrategyPhase.DONE, StrategyPhase.FAILED),
    StrategyPhase.DONE: (),
    StrategyPhase.FAILED: (),
}


class RolloutStrategy:
    """Squelette commun ; une instance par exécution."""

    name: StrategyName

    def __init__(
        self,
        backend: ClusterBackend,
        health: HealthChecker,
        logger: Optional[logging.Logger] = None,
        rollout_timeout: float = DEPLOY_HEALTH_TIMEOUT,
    ) -> None:
        self.backend = backend
        self.health = health
        self.logger = logger or logging.getLogger(__name__)
        self.rollout_timeout = rollout_timeout
        self.phase = StrategyPhase.NOT_STARTED
        self.history: List[StrategyPhase] = [self.phase]
        self.completed: List[str] = []

    def _transition(self, target: StrategyPhase) -> None:
        if target not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"Transition invalide {self.phase.value} -> {target.value}")
        self.phase = target
        self.history.append(target)

    def run(self, env: Environment, version: str, cancel: Optional[CancelToken] = None) -> List[str]:
        """Déploie `version` sur tous les services de `env`, dans l'ordre déclaré.

        Raises:
            StrategyFailed: au premier service en échec (ou sur interruption).
        """

        token = cancel or CancelToken()
        self.logger.info("Démarrage du déploiement %s pour la version %s", self.name.value, version)
        self._transition(StrategyPhase.PER_SERVICE_LOOP)
        current: Optional[str] = None
        try:
            for service in env.services:
                token.raise_if_cancelled()
                current = service
                self.logger.info("Déploiement de %s (%s)...", service, self.name.value)
                self.deploy_service(service, env.image_for(service, version), token)
                self.completed.append(service)
                self.logger.info("✅ %s déployé", service)
            current = None
            self._transition(StrategyPhase.VALIDATING)
            self._validate(env, version)
        except Cancelled as exc:
            self._transition(StrategyPhase.FAILED)
            raise StrategyFailed(f"Déploiement interrompu: {exc}", service=current) from exc
        except HealthCheckFailed as exc:
            self._transition(StrategyPhase.FAILED)
            raise StrategyFailed(f"Health check en échec: {exc.message}", service=exc.service or current) from exc
        except StrategyFailed:
            self._transition(StrategyPhase.FAILED)
            raise
        except CommandError as exc:
            self._transition(StrategyPhase.FAILED)
            raise StrategyFailed(str(exc), service=current) from exc

        self._transition(StrategyPhase.DONE)
        self.logger.info("🎉 Déploiement %s terminé", self.name.value)
        return list(self.completed)

    def deploy_service(self, service: str, image: str, cancel: CancelToken) -> None:
        raise NotImplementedError

    def _rollout_and_check(self, service: str, cancel: CancelToken) -> None:
        if not self.backend.wait_for_rollout(service, self.rollout_timeout):
            raise StrategyFailed(f"Rollout non terminé après {self.rollout_timeout}s", service=service)
        self.health.wait_healthy(service, cancel=cancel)

    def _validate(self, env: Environment, version: str) -> None:
        for service in self.completed:
            expected = env.image_for(service, version)
            actual = self.backend.describe(service).image
            if actual != expected:
                raise StrategyFailed(f"Image inattendue après rollout: {actual} (attendu {expected})", service=service)


class BlueGreenStrategy(RolloutStrategy):
    """La nouvelle image remplace l'ancienne sur le déploiement existant ;
    la version « green » devient active une fois prête."""

    name = StrategyName.BLUE_GREEN

    def deploy_service(self, service: str, image: str, cancel: CancelToken) -> None:
        self.backend.set_image(service, image)
        self._rollout_and_check(service, cancel)


class RollingStrategy(RolloutStrategy):
    name = StrategyName.ROLLING

    def __init__(
        self,
        *args,
        max_unavailable: str = ROLLING_MAX_UNAVAILABLE,
        max_surge: str = ROLLING_MAX_SURGE,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.max_unavailable = max_unavailable
        self.max_surge = max_surge

    def deploy_service(self, service: str, image: str, cancel: CancelToken) -> None:
        self.backend.set_update_strategy(service, "RollingUpdate", self.max_unavailable, self.max_surge)
        self.backend.set_image(service, image)
        self._rollout_and_check(service, cancel)


def canary_split(current_replicas: int, fraction: float = CANARY_FRACTION) -> tuple[int, int]:
    """Renvoie (canary, principal) ; arrondi au plus proche, au moins 1 canary."""

    canary = max(1, int(current_replicas * fraction + 0.5))
    return canary, max(0, current_replicas - canary)


class CanaryStrategy(RolloutStrategy):
    name = StrategyName.CANARY

    def __init__(
        self,
        *args,
        analyzer: CanaryAnalyzer,
        fraction: float = CANARY_FRACTION,
        observation_window: float = CANARY_WINDOW,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.analyzer = analyzer
        self.fraction = fraction
        self.observation_window = observation_window
        self.evaluations: List[CanaryEvaluation] = []

    def deploy_service(self, service: str, image: str, cancel: CancelToken) -> None:
        baseline = self.backend.describe(service)
        replicas = baseline.desired_replicas
        if replicas < 1:
            raise StrategyFailed("Aucun réplica actif, analyse canary impossible", service=service)

        canary_replicas, main_replicas = canary_split(replicas, self.fraction)
        canary_name = f"{service}-canary"
        self.logger.info(
            "Canary %s: %s réplica(s) canary, %s principal(aux) sur %s",
            service,
            canary_replicas,
            main_replicas,
            replicas,
        )

        try:
            # Réduction puis création, séquencées ; si le principal tomberait à 0,
            # la canary est créée et prête d'abord pour ne jamais passer à capacité nulle.
            if main_replicas > 0:
                self.backend.scale(service, main_replicas)
            self.backend.create_shadow_deployment(service, canary_name, image, canary_replicas)
            if not self.backend.wait_for_rollout(canary_name, self.rollout_timeout):
                raise StrategyFailed("Déploiement canary non prêt", service=service)
            if main_replicas == 0:
                self.backend.scale(service, 0)

            self.logger.info("Observation de la canary pendant %ss...", self.observation_window)
            cancel.wait(self.observation_window)

            evaluation = self.analyzer.evaluate(service, canary_name, service)
        except MetricsUnavailable as exc:
            self._abort(service, canary_name, baseline)
            raise StrategyFailed(f"Métriques indisponibles, canary abandonnée: {exc}", service=service) from exc
        except (StrategyFailed, Cancelled, CommandError):
            self._abort(service, canary_name, baseline)
            raise

        self.evaluations.append(evaluation)
        if evaluation.decision is CanaryDecision.ABORT:
            self.logger.error("Validation canary échouée pour %s: %s", service, evaluation.reason)
            self._abort(service, canary_name, baseline)
            raise StrategyFailed(f"Canary abandonnée: {evaluation.reason}", service=service)

        self.logger.info("Canary validée, promotion de %s", service)
        self.backend.set_image(service, image)
        self.backend.scale(service, replicas)
        self.backend.delete_deployment(canary_name)
        self._rollout_and_check(service, cancel)

    def _abort(self, service: str, canary_name: str, baseline: ServiceRecord) -> None:
        self.logger.warning(
            "Retrait de %s, %s restauré à %s réplica(s) sur %s",
            canary_name,
            service,
            baseline.desired_replicas,
            baseline.image,
        )
        self.backend.delete_deployment(canary_name)
        self.backend.scale(service, baseline.desired_replicas)


@dataclass(frozen=True)
class StrategySettings:
    rollout_timeout: float = DEPLOY_HEALTH_TIMEOUT
    max_unavailable: str = ROLLING_MAX_UNAVAILABLE
    max_surge: str = ROLLING_MAX_SURGE
    canary_fraction: float = CANARY_FRACTION
    canary_window: float = CANARY_WINDOW


def build_strategy(
    name: "str | StrategyName",
    backend: ClusterBackend,
    health: HealthChecker,
    analyzer: Optional[CanaryAnalyzer] = None,
    settings: StrategySettings = StrategySettings(),
    logger: Optional[logging.Logger] = None,
) -> RolloutStrategy:
    strategy = StrategyName.parse(name)
    common = {"logger": logger, "rollout_timeout": settings.rollout_timeout}
    if strategy is StrategyName.BLUE_GREEN:
        return BlueGreenStrategy(backend, health, **common)
    if strategy is StrategyName.ROLLING:
        return RollingStrategy(
            backend,
            health,
            max_unavailable=settings.max_unavailable,
            max_surge=settings.max_surge,
            **common,
        )
    if analyzer is None:
        raise PreconditionError("La stratégie canary requiert un analyseur de métriques")
    return CanaryStrategy(
        backend,
        health,
        analyzer=analyzer,
        fraction=settings.canary_fraction,
        observation_window=settings.canary_window,
        **common,
    )
