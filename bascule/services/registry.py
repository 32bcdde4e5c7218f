from __future__ import annotations

import logging
from typing import Optional, Protocol

from bascule.logging.logger import CommandError, run_command


class ImageRegistry(Protocol):
    def image_exists(self, service: str, version: str) -> bool: ...


class DockerRegistry:
    """Vérifie la présence d'une image via `docker manifest inspect`."""

    def __init__(self, registry: str, logger: Optional[logging.Logger] = None) -> None:
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)

    def image_exists(self, service: str, version: str) -> bool:
        image = f"{self.registry}/{service}:{version}"
        try:
            run_command(["docker", "manifest", "inspect", image], logger=self.logger, quiet=True)
        except CommandError:
            self.logger.error("Image introuvable dans le registre: %s", image)
            return False
        return True
