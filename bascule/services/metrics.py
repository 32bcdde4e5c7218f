"""Sonde de métriques : taux d'erreur et latence p95 par déploiement."""
from __future__ import annotations

import json
import logging
from typing import Dict, Optional, Protocol, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

DEFAULT_WINDOW = "5m"


class MetricsUnavailable(Exception):
    """Le backend de métriques n'a pas pu répondre."""


class MetricsProbe(Protocol):
    def error_rate(self, deployment_ref: str, window: str = DEFAULT_WINDOW) -> float: ...

    def latency_p95(self, deployment_ref: str, window: str = DEFAULT_WINDOW) -> float: ...


class PrometheusMetricsProbe:
    """Interroge l'API HTTP de Prometheus (`/api/v1/query`).

    - taux d'erreur (%) = 100 * débit des réponses 5xx / débit total
    - latence p95 (ms) = histogram_quantile(0.95) des durées de requête

    Les séries sont filtrées par le label `deployment`, ce qui suppose un
    relabeling côté scrape (nom du Deployment Kubernetes).
    """

    ERROR_RATE_QUERY = (
        'sum(rate(http_server_requests_seconds_count{{deployment="{ref}",status=~"5.."}}[{window}])) '
        '/ sum(rate(http_server_requests_seconds_count{{deployment="{ref}"}}[{window}])) * 100'
    )
    LATENCY_QUERY = (
        "histogram_quantile(0.95, sum by (le) ("
        'rate(http_server_requests_seconds_bucket{{deployment="{ref}"}}[{window}]))) * 1000'
    )

    def __init__(self, base_url: str, logger: Optional[logging.Logger] = None, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.logger = logger or logging.getLogger(__name__)
        self.timeout = timeout

    def _query(self, promql: str) -> float:
        url = f"{self.base_url}/api/v1/query?{urlencode({'query': promql})}"
        try:
            req = Request(url, method="GET")
            with urlopen(req, timeout=self.timeout) as resp:  # nosec - URL fournie par la configuration
                payload = json.loads(resp.read().decode("utf-8"))
        except (HTTPError, URLError, ValueError) as exc:
            raise MetricsUnavailable(f"Requête Prometheus échouée: {exc}") from exc

        if payload.get("status") != "success":
            raise MetricsUnavailable(f"Réponse Prometheus en erreur: {payload.get('error')}")

        result = payload.get("data", {}).get("result", [])
        if not result:
            # Aucun trafic observé sur la fenêtre
            return 0.0
        value = float(result[0]["value"][1])
        return 0.0 if value != value else value  # NaN (division 0/0)

    def error_rate(self, deployment_ref: str, window: str = DEFAULT_WINDOW) -> float:
        value = self._query(self.ERROR_RATE_QUERY.format(ref=deployment_ref, window=window))
        self.logger.info("Taux d'erreur %s sur %s: %.3f%%", deployment_ref, window, value)
        return value

    def latency_p95(self, deployment_ref: str, window: str = DEFAULT_WINDOW) -> float:
        value = self._query(self.LATENCY_QUERY.format(ref=deployment_ref, window=window))
        self.logger.info("Latence p95 %s sur %s: %.1fms", deployment_ref, window, value)
        return value


class StaticMetricsProbe:
    """Valeurs fixes par déploiement (environnements sans Prometheus, tests)."""

    def __init__(self, values: Optional[Dict[str, Tuple[float, float]]] = None, default: Tuple[float, float] = (0.1, 150.0)) -> None:
        self.values = dict(values or {})
        self.default = default

    def error_rate(self, deployment_ref: str, window: str = DEFAULT_WINDOW) -> float:
        return self.values.get(deployment_ref, self.default)[0]

    def latency_p95(self, deployment_ref: str, window: str = DEFAULT_WINDOW) -> float:
        return self.values.get(deployment_ref, self.default)[1]
