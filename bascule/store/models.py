"""Enregistrements persistés : snapshots d'environnement et pointeurs de backup."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ServiceRecord:
    name: str
    image: str
    desired_replicas: int
    ready_replicas: int = 0

    def __post_init__(self) -> None:
        if self.desired_replicas < 0 or self.ready_replicas < 0:
            raise ValueError(f"{self.name}: nombre de réplicas négatif")
        if self.ready_replicas > self.desired_replicas:
            raise ValueError(
                f"{self.name}: readyReplicas ({self.ready_replicas}) > desiredReplicas ({self.desired_replicas})"
            )

    @property
    def tag(self) -> str:
        """Tag de l'image (partie après le dernier ':'), ou chaîne vide."""

        last = self.image.rsplit("/", 1)[-1]
        return last.split(":", 1)[1] if ":" in last else ""


@dataclass(frozen=True)
class DeploymentState:
    """Topologie d'un environnement capturée avant un changement.

    Jamais modifié après création : chaque tentative de déploiement crée un
    nouveau snapshot. `state_id` est attribué par le StateStore à l'écriture.
    """

    environment: str
    services: Tuple[ServiceRecord, ...]
    captured_at: datetime = field(default_factory=utc_now)
    state_id: Optional[int] = None

    def __post_init__(self) -> None:
        names = [record.name for record in self.services]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Service(s) en double dans le snapshot: {', '.join(duplicates)}")

    def images(self) -> Dict[str, str]:
        return {record.name: record.image for record in self.services}

    def to_payload(self) -> List[Dict[str, Any]]:
        return [asdict(record) for record in self.services]

    @classmethod
    def from_payload(
        cls, environment: str, payload: List[Dict[str, Any]], captured_at: datetime, state_id: Optional[int] = None
    ) -> "DeploymentState":
        services = tuple(ServiceRecord(**item) for item in payload)
        return cls(environment=environment, services=services, captured_at=captured_at, state_id=state_id)


@dataclass(frozen=True)
class BackupRecord:
    environment: str
    location_ref: str
    created_at: datetime = field(default_factory=utc_now)
    backup_id: Optional[int] = None
    kind: str = "pre-deploy"
