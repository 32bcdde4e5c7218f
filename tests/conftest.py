from __future__ import annotations

import logging
import os
import tempfile

# Les constantes de chemins sont lues à l'import : isoler data/ avant tout import du moteur
os.environ.setdefault("BASCULE_DATA_DIR", tempfile.mkdtemp(prefix="bascule-tests-"))

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from bascule.deploy.canary import CanaryAnalyzer
from bascule.deploy.coordinator import DeploymentCoordinator
from bascule.deploy.environments import Environment, resolve_environment
from bascule.deploy.errors import PreflightFailed
from bascule.deploy.health import HealthChecker, HealthPolicy
from bascule.deploy.strategies import StrategySettings
from bascule.logging.logger import CommandError
from bascule.rollback.engine import RollbackEngine
from bascule.services.backup import BackupCoordinator
from bascule.services.metrics import StaticMetricsProbe
from bascule.services.notify import Severity
from bascule.store.models import BackupRecord, ServiceRecord, utc_now
from bascule.store.sqlite_store import StateStore

SERVICES = ("api-gateway", "auth-service", "station-service")
MUTATIONS = {"set_image", "scale", "set_update_strategy", "create_shadow_deployment", "delete_deployment"}


class FakeClusterBackend:
    """Cluster en mémoire : chaque appel est horodaté dans `calls`.

    Les images de `unhealthy_images` n'atteignent jamais la readiness ; les
    services de `never_ready` non plus, quelle que soit leur image.
    """

    def __init__(self, deployments: Dict[str, Tuple[str, int]]) -> None:
        self.deployments: Dict[str, Dict[str, object]] = {
            name: {"image": image, "replicas": replicas, "strategy": "RollingUpdate"}
            for name, (image, replicas) in deployments.items()
        }
        self.calls: List[Tuple[str, tuple, datetime]] = []
        self.unhealthy_images: Set[str] = set()
        self.never_ready: Set[str] = set()
        self.failing_probes: Set[str] = set()
        self.failing_services: Set[str] = set()
        self.stuck_rollouts: Set[str] = set()

    def _record(self, method: str, *args: object) -> None:
        self.calls.append((method, args, utc_now()))
        if method in MUTATIONS and args and args[0] in self.failing_services:
            raise CommandError(f"kubectl {method} {args[0]} en échec", 1, "error")

    def mutations(self) -> List[Tuple[str, tuple, datetime]]:
        return [call for call in self.calls if call[0] in MUTATIONS]

    def touched(self, service: str) -> List[str]:
        return [method for method, args, _ in self.mutations() if args and args[0] == service]

    def image(self, service: str) -> str:
        return self.deployments[service]["image"]  # type: ignore[return-value]

    def replicas(self, service: str) -> int:
        return self.deployments[service]["replicas"]  # type: ignore[return-value]

    def _healthy(self, service: str) -> bool:
        return service not in self.never_ready and self.deployments[service]["image"] not in self.unhealthy_images

    # --- ClusterBackend ---
    def set_image(self, service: str, image: str) -> None:
        self._record("set_image", service, image)
        self.deployments[service]["image"] = image

    def scale(self, service: str, replicas: int) -> None:
        self._record("scale", service, replicas)
        self.deployments[service]["replicas"] = replicas

    def set_update_strategy(
        self, service: str, strategy_type: str, max_unavailable: str = "25%", max_surge: str = "25%"
    ) -> None:
        self._record("set_update_strategy", service, strategy_type, max_unavailable, max_surge)
        self.deployments[service]["strategy"] = strategy_type

    def wait_for_rollout(self, service: str, timeout: float) -> bool:
        self._record("wait_for_rollout", service, timeout)
        return service not in self.stuck_rollouts

    def pod_readiness(self, service: str) -> Tuple[int, int]:
        self._record("pod_readiness", service)
        desired = self.replicas(service)
        return (desired if self._healthy(service) else 0), desired

    def exec_probe(self, service: str, path: str) -> Tuple[int, str]:
        self._record("exec_probe", service, path)
        if service in self.failing_probes or not self._healthy(service):
            return 503, '{"status":"DOWN"}'
        return 200, '{"status":"UP"}'

    def describe(self, service: str) -> ServiceRecord:
        self._record("describe", service)
        if service not in self.deployments:
            raise CommandError(f"deployment {service} introuvable", 1, "NotFound")
        desired = self.replicas(service)
        return ServiceRecord(
            name=service,
            image=self.image(service),
            desired_replicas=desired,
            ready_replicas=desired if self._healthy(service) else 0,
        )

    def create_shadow_deployment(self, base_service: str, name: str, image: str, replicas: int) -> None:
        self._record("create_shadow_deployment", base_service, name, image, replicas)
        self.deployments[name] = {"image": image, "replicas": replicas, "strategy": "RollingUpdate"}

    def delete_deployment(self, name: str) -> None:
        self._record("delete_deployment", name)
        self.deployments.pop(name, None)


class FakeRegistry:
    def __init__(self, missing: Optional[Set[Tuple[str, str]]] = None) -> None:
        self.missing = missing or set()
        self.checked: List[Tuple[str, str]] = []

    def image_exists(self, service: str, version: str) -> bool:
        self.checked.append((service, version))
        return (service, version) not in self.missing


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[Severity, str, str]] = []

    def notify(self, severity: Severity, environment: str, message: str) -> None:
        self.sent.append((severity, environment, message))

    def severities(self) -> List[Severity]:
        return [severity for severity, _, _ in self.sent]


class FakeBackupService:
    def __init__(self, backups_dir: Path) -> None:
        self.backups_dir = backups_dir
        self.fail_backup = False
        self.restore_failures = 0
        self.taken: List[BackupRecord] = []
        self.restored: List[BackupRecord] = []

    def backup(self, env: Environment, kind: str = "pre-deploy") -> BackupRecord:
        if self.fail_backup:
            raise CommandError("pg_dump en échec", 1, "connection refused")
        location = self.backups_dir / f"{kind}_{env.name}_{len(self.taken)}.dump"
        location.write_text("dump", encoding="utf-8")
        record = BackupRecord(environment=env.name, location_ref=str(location), kind=kind)
        self.taken.append(record)
        return record

    def restore(self, env: Environment, record: BackupRecord) -> None:
        if self.restore_failures > 0:
            self.restore_failures -= 1
            raise CommandError("pg_restore en échec", 1, "error")
        self.restored.append(record)


class FakeTests:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.runs: List[Tuple[str, str]] = []

    def run(self, env: Environment, version: str) -> None:
        self.runs.append((env.name, version))
        if self.fail:
            raise PreflightFailed("Tests pré-déploiement en échec: 2 test(s) KO")


FAST_HEALTH = HealthPolicy(timeout=0, readiness_interval=0, probe_attempts=2, probe_interval=0)
FAST_SETTINGS = StrategySettings(rollout_timeout=0, canary_window=0)


def make_env(name: str = "staging", services: Tuple[str, ...] = SERVICES) -> Environment:
    return resolve_environment(name, {"BASCULE_SERVICES": ",".join(services)})


def make_backend(env: Environment, version: str = "1.2.2", replicas: int = 3) -> FakeClusterBackend:
    return FakeClusterBackend({s: (env.image_for(s, version), replicas) for s in env.services})


class Harness:
    """Moteur complet câblé sur les fakes, avec des délais nuls."""

    def __init__(
        self, tmp_path: Path, env: Environment, backend: FakeClusterBackend, store: Optional[StateStore] = None
    ) -> None:
        self.env = env
        self.backend = backend
        self.logger = logging.getLogger("tests.bascule")
        self.store = store or StateStore(tmp_path / "state.sqlite")
        self.notifier = FakeNotifier()
        self.registry = FakeRegistry()
        self.backup_service = FakeBackupService(tmp_path)
        self.backups = BackupCoordinator(self.backup_service, self.store, logger=self.logger)
        self.metrics = StaticMetricsProbe()
        self.analyzer = CanaryAnalyzer(self.metrics, logger=self.logger)
        self.tests = FakeTests()
        self.health = HealthChecker(self.backend, health_path=env.health_path, policy=FAST_HEALTH, logger=self.logger)
        self.rollback = RollbackEngine(
            self.backend,
            self.health,
            self.store,
            self.notifier,
            registry=self.registry,
            backups=self.backups,
            logger=self.logger,
            rollout_timeout=0,
            emergency_timeout=0,
        )
        self.coordinator = DeploymentCoordinator(
            self.backend,
            self.health,
            self.store,
            self.rollback,
            self.notifier,
            self.registry,
            backups=self.backups,
            tests=self.tests,
            analyzer=self.analyzer,
            settings=FAST_SETTINGS,
            logger=self.logger,
            owner="tests",
        )


@pytest.fixture
def staging() -> Environment:
    return make_env("staging")


@pytest.fixture
def backend(staging: Environment) -> FakeClusterBackend:
    return make_backend(staging)


@pytest.fixture
def harness(tmp_path: Path, staging: Environment, backend: FakeClusterBackend) -> Harness:
    return Harness(tmp_path, staging, backend)


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("tests.bascule")
