from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path
from typing import List, Mapping, Optional, Protocol, Sequence

from bascule.deploy.environments import ROOT_DIR, Environment, validate_version
from bascule.deploy.errors import PreconditionError, PreflightFailed
from bascule.logging.logger import CommandError, run_command
from bascule.services.registry import ImageRegistry


class PreDeployTests(Protocol):
    def run(self, env: Environment, version: str) -> None: ...


class CommandTestRunner:
    """Exécute les commandes de test configurées ; la première en échec arrête tout."""

    def __init__(
        self,
        commands: Sequence[Sequence[str]],
        cwd: Path = ROOT_DIR,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.commands = [list(c) for c in commands]
        self.cwd = cwd
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **kwargs) -> "CommandTestRunner":
        env = os.environ if env is None else env
        raw = env.get("BASCULE_PREDEPLOY_COMMANDS", "")
        commands = [shlex.split(part) for part in raw.split(";") if part.strip()]
        return cls(commands, **kwargs)

    def run(self, env: Environment, version: str) -> None:
        if not self.commands:
            self.logger.warning("Aucune commande de test pré-déploiement configurée")
            return
        self.logger.info("🧪 Tests pré-déploiement (%s commande(s))", len(self.commands))
        for command in self.commands:
            try:
                run_command(command, logger=self.logger, cwd=self.cwd)
            except (CommandError, OSError) as exc:
                raise PreflightFailed(f"Tests pré-déploiement en échec: {exc}") from exc
        self.logger.info("✅ Tests pré-déploiement réussis")


def validate_images(env: Environment, version: str, registry: ImageRegistry, logger: logging.Logger) -> str:
    """Vérifie format de version et présence des images pour chaque service géré."""

    cleaned = validate_version(version)
    missing: List[str] = [s for s in env.services if not registry.image_exists(s, cleaned)]
    if missing:
        raise PreconditionError(
            f"Image(s) absente(s) du registre pour {cleaned}: "
            + ", ".join(env.image_for(s, cleaned) for s in missing)
        )
    logger.info("✅ Version %s validée (%s service(s))", cleaned, len(env.services))
    return cleaned


def require_confirmation(env: Environment, confirmed: bool, action: str) -> None:
    if env.requires_confirmation and not confirmed:
        raise PreconditionError(
            f"{action} sur {env.name} : confirmation explicite requise (drapeau de confirmation/automatisation)"
        )
