"""Taxonomie des erreurs du moteur de déploiement/rollback.

Chaque erreur porte un `Outcome` pour que l'appelant distingue « rien n'a
changé », « changé puis rollback effectué » et « rollback en échec » : ces cas
appellent des réponses opérateur très différentes.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class Outcome(str, Enum):
    UNCHANGED = "UNCHANGED"
    PARTIAL = "PARTIAL"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"


class DeployError(Exception):
    """Erreur fonctionnelle lors d'un déploiement ou d'un rollback."""

    default_outcome = Outcome.UNCHANGED

    def __init__(self, message: str, *, service: Optional[str] = None, outcome: Optional[Outcome] = None) -> None:
        super().__init__(message)
        self.message = message
        self.service = service
        self.outcome = outcome or self.default_outcome
        # RolloutAttempt concerné, renseigné par le coordinateur
        self.attempt = None

    def __str__(self) -> str:
        if self.service:
            return f"{self.message} (service: {self.service})"
        return self.message


class PreconditionError(DeployError):
    """Environnement inconnu, version invalide, image absente, confirmation manquante."""


class LockUnavailable(PreconditionError):
    """Un autre déploiement/rollback détient le verrou de l'environnement."""


class SnapshotNotFound(PreconditionError):
    """Aucun snapshot (ou backup) disponible pour l'environnement."""


class PreflightFailed(DeployError):
    """Tests ou scans pré-déploiement en échec."""


class BackupFailed(DeployError):
    """Backup de la base impossible : fatal, rien n'est modifié."""


class DeployFailed(DeployError):
    """Échec d'exécution après le début des mutations du cluster."""

    default_outcome = Outcome.PARTIAL


class StrategyFailed(DeployFailed):
    pass


class HealthCheckFailed(DeployFailed):
    def __init__(self, message: str, *, timed_out: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.timed_out = timed_out


class RollbackFailed(DeployError):
    """Le rollback lui-même a échoué : l'environnement est dégradé."""

    default_outcome = Outcome.ROLLBACK_FAILED


class DatabaseRestoreFailed(RollbackFailed):
    pass


class Cancelled(Exception):
    """Interruption opérateur, levée entre deux étapes d'un service."""
