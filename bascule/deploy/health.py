from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Optional

from bascule.deploy.environments import (
    DEPLOY_HEALTH_TIMEOUT,
    PROBE_ATTEMPTS,
    PROBE_INTERVAL,
    READINESS_INTERVAL,
)
from bascule.deploy.errors import HealthCheckFailed
from bascule.deploy.polling import CancelToken, poll_until, retry
from bascule.logging.logger import CommandError
from bascule.services.cluster import ClusterBackend


@dataclass(frozen=True)
class HealthPolicy:
    timeout: float = DEPLOY_HEALTH_TIMEOUT
    readiness_interval: float = READINESS_INTERVAL
    probe_attempts: int = PROBE_ATTEMPTS
    probe_interval: float = PROBE_INTERVAL


class HealthChecker:
    """Contrôle en deux phases : readiness des pods, puis sonde HTTP in-pod.

    Une seule sonde réussie suffit. Lève HealthCheckFailed (avec `timed_out`
    à True si la readiness n'a pas été atteinte dans le délai).
    """

    def __init__(
        self,
        backend: ClusterBackend,
        health_path: str = "/actuator/health",
        policy: Optional[HealthPolicy] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.backend = backend
        self.health_path = health_path
        self.policy = policy or HealthPolicy()
        self.logger = logger or logging.getLogger(__name__)

    def wait_healthy(
        self,
        service: str,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        policy = self.policy if timeout is None else replace(self.policy, timeout=timeout)
        # Un timeout explicite borne les deux phases, sondes comprises
        deadline = None if timeout is None else time.monotonic() + timeout
        self.logger.info("🏥 Health check de %s (timeout=%ss)", service, policy.timeout)

        last_seen = {"ready": 0, "desired": 0}

        def _ready() -> bool:
            try:
                ready, desired = self.backend.pod_readiness(service)
            except CommandError as exc:
                self.logger.warning("Readiness illisible pour %s: %s", service, exc)
                return False
            last_seen.update(ready=ready, desired=desired)
            return desired > 0 and ready == desired

        def _waiting(attempt: int) -> None:
            self.logger.info(
                "Attente des pods de %s (%s/%s prêts), tentative %s",
                service,
                last_seen["ready"],
                last_seen["desired"],
                attempt,
            )

        if not poll_until(
            _ready,
            interval=policy.readiness_interval,
            timeout=policy.timeout,
            cancel=cancel,
            on_retry=_waiting,
        ):
            raise HealthCheckFailed(
                f"Pods non prêts après {policy.timeout}s ({last_seen['ready']}/{last_seen['desired']})",
                service=service,
                timed_out=True,
            )

        last_status = {"code": 0, "attempts": 0}

        def _probe() -> bool:
            code, _body = self.backend.exec_probe(service, self.health_path)
            last_status["code"] = code
            last_status["attempts"] += 1
            return 200 <= code < 400

        def _probe_failed(attempt: int) -> None:
            self.logger.info(
                "Sonde %s tentative %s/%s échouée (HTTP %s), nouvel essai",
                service,
                attempt,
                policy.probe_attempts,
                last_status["code"],
            )

        if not retry(
            _probe,
            attempts=policy.probe_attempts,
            interval=policy.probe_interval,
            cancel=cancel,
            on_retry=_probe_failed,
            deadline=deadline,
        ):
            raise HealthCheckFailed(
                f"Sonde {self.health_path} en échec après {last_status['attempts']} tentative(s) "
                f"(dernier statut HTTP {last_status['code']})",
                service=service,
            )

        self.logger.info("✅ Health check OK pour %s", service)
