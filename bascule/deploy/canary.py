from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bascule.services.metrics import DEFAULT_WINDOW, MetricsProbe


class CanaryDecision(str, Enum):
    PROMOTE = "Promote"
    ABORT = "Abort"


@dataclass(frozen=True)
class CanaryPolicy:
    max_error_rate: float = 1.0  # en %
    max_latency_ratio: float = 1.5
    window: str = DEFAULT_WINDOW


@dataclass(frozen=True)
class CanaryEvaluation:
    service: str
    canary_error_rate: float
    baseline_error_rate: float
    canary_latency_ms: float
    baseline_latency_ms: float
    decision: CanaryDecision
    reason: str = ""


def decide(
    canary_error_rate: float,
    canary_latency_ms: float,
    baseline_latency_ms: float,
    policy: CanaryPolicy = CanaryPolicy(),
) -> tuple[CanaryDecision, str]:
    """Règle de promotion, fonction pure des métriques."""

    if canary_error_rate > policy.max_error_rate:
        return CanaryDecision.ABORT, f"taux d'erreur canary trop élevé: {canary_error_rate}%"
    if canary_latency_ms > policy.max_latency_ratio * baseline_latency_ms:
        return (
            CanaryDecision.ABORT,
            f"latence canary trop élevée: {canary_latency_ms}ms vs {baseline_latency_ms}ms",
        )
    return CanaryDecision.PROMOTE, "critères respectés"


class CanaryAnalyzer:
    def __init__(
        self,
        metrics: MetricsProbe,
        policy: Optional[CanaryPolicy] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.metrics = metrics
        self.policy = policy or CanaryPolicy()
        self.logger = logger or logging.getLogger(__name__)

    def evaluate(self, service: str, canary_ref: str, baseline_ref: str) -> CanaryEvaluation:
        window = self.policy.window
        baseline_errors = self.metrics.error_rate(baseline_ref, window)
        canary_errors = self.metrics.error_rate(canary_ref, window)
        baseline_latency = self.metrics.latency_p95(baseline_ref, window)
        canary_latency = self.metrics.latency_p95(canary_ref, window)

        self.logger.info("Principal %s - erreurs: %s%%, latence: %sms", baseline_ref, baseline_errors, baseline_latency)
        self.logger.info("Canary %s - erreurs: %s%%, latence: %sms", canary_ref, canary_errors, canary_latency)

        decision, reason = decide(canary_errors, canary_latency, baseline_latency, self.policy)
        return CanaryEvaluation(
            service=service,
            canary_error_rate=canary_errors,
            baseline_error_rate=baseline_errors,
            canary_latency_ms=canary_latency,
            baseline_latency_ms=baseline_latency,
            decision=decision,
            reason=reason,
        )
