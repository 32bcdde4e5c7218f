"""Configuration : environnements connus, services gérés, délais par défaut.

Tout se règle par variables d'environnement `BASCULE_*` ; les valeurs par
défaut reprennent celles des scripts d'exploitation historiques.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Tuple

from bascule.deploy.errors import PreconditionError

ROOT_DIR = Path(__file__).resolve().parents[2]
DATA_DIR = Path(os.environ.get("BASCULE_DATA_DIR", str(ROOT_DIR / "data")))
LOGS_DIR = DATA_DIR / "logs"
BACKUPS_DIR = DATA_DIR / "backups"
DB_PATH = DATA_DIR / "state.sqlite"

DEFAULT_SERVICES = (
    "api-gateway",
    "auth-service",
    "station-service",
    "coupon-service",
    "raffle-service",
)

DEPLOY_HEALTH_TIMEOUT = 300  # secondes
EMERGENCY_HEALTH_TIMEOUT = 60  # secondes
READINESS_INTERVAL = 10  # secondes
PROBE_ATTEMPTS = 10
PROBE_INTERVAL = 15  # secondes
CANARY_FRACTION = 0.1
CANARY_WINDOW = 300  # secondes
ROLLING_MAX_UNAVAILABLE = "25%"
ROLLING_MAX_SURGE = "25%"
LOCK_TTL = 1800  # secondes, durée max d'un déploiement
STATE_RETENTION = 10
BACKUP_RETENTION_DAYS = 7

VERSION_PATTERN = re.compile(r"^v?[0-9]+\.[0-9]+\.[0-9]+(-[a-zA-Z0-9]+)?$")

_ALIASES: Dict[str, str] = {
    "dev": "development",
    "development": "development",
    "staging": "staging",
    "stage": "staging",
    "prod": "production",
    "production": "production",
}
_NAMESPACE_SUFFIX = {"development": "dev", "staging": "staging", "production": "prod"}


@dataclass(frozen=True)
class Environment:
    name: str
    namespace: str
    registry: str
    services: Tuple[str, ...]
    requires_confirmation: bool = False
    health_path: str = "/actuator/health"
    service_port: int = 8080

    def image_for(self, service: str, version: str) -> str:
        return f"{self.registry}/{service}:{version}"


def managed_services(env: Mapping[str, str] | None = None) -> Tuple[str, ...]:
    env = os.environ if env is None else env
    raw = env.get("BASCULE_SERVICES", "")
    services = tuple(s.strip() for s in raw.split(",") if s.strip())
    return services or DEFAULT_SERVICES


def resolve_environment(name: str, env: Mapping[str, str] | None = None) -> Environment:
    """Normalise un nom d'environnement (alias acceptés) et construit sa config.

    Raises:
        PreconditionError: environnement inconnu.
    """

    env = os.environ if env is None else env
    canonical = _ALIASES.get((name or "").strip().lower())
    if canonical is None:
        raise PreconditionError(
            f"Environnement invalide: {name!r} (valides: dev, staging, prod)"
        )

    prefix = env.get("BASCULE_NAMESPACE_PREFIX", "bascule")
    registry = env.get("BASCULE_REGISTRY", "registry.bascule.local")
    suffix = _NAMESPACE_SUFFIX[canonical]
    if canonical != "production":
        registry = f"{suffix}-{registry}"

    return Environment(
        name=canonical,
        namespace=f"{prefix}-{suffix}",
        registry=registry,
        services=managed_services(env),
        requires_confirmation=canonical == "production",
        health_path=env.get("BASCULE_HEALTH_PATH", "/actuator/health"),
        service_port=int(env.get("BASCULE_SERVICE_PORT", "8080")),
    )


def known_environments(env: Mapping[str, str] | None = None) -> Tuple[Environment, ...]:
    return tuple(resolve_environment(name, env) for name in ("development", "staging", "production"))


def validate_version(version: str) -> str:
    cleaned = (version or "").strip()
    if not VERSION_PATTERN.match(cleaned):
        raise PreconditionError(
            f"Format de version invalide: {version!r} (attendu X.Y.Z ou X.Y.Z-suffixe, ex. 1.2.3 ou 1.2.3-rc1)"
        )
    return cleaned
