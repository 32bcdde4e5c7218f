from __future__ import annotations

import logging
import os
from pathlib import Path
from subprocess import PIPE, STDOUT, run
from typing import List, Mapping, Optional


class CommandError(Exception):
    """Commande externe (kubectl, docker, pg_dump...) terminée en erreur."""

    def __init__(self, message: str, returncode: int, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


def build_logger(environment: str, logs_dir: Path, log_filename: str = "deploy.log") -> logging.Logger:
    logs_dir.mkdir(parents=True, exist_ok=True)
    env_log_dir = logs_dir / environment
    env_log_dir.mkdir(parents=True, exist_ok=True)
    log_file = env_log_dir / log_filename

    logger = logging.getLogger(f"bascule.{log_filename.split('.')[0]}.{environment}")
    logger.setLevel(logging.INFO)

    if not any(isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_file) for handler in logger.handlers):
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    return logger


def run_command(
    command: List[str],
    logger: logging.Logger,
    cwd: Path | None = None,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    quiet: bool = False,
) -> str:
    """Exécute une commande et renvoie sa sortie standard (stderr fusionné).

    Raises:
        CommandError: si le code retour est non nul.
    """

    logger.info("$ %s", " ".join(command))
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    result = run(
        command,
        cwd=cwd,
        input=input_text,
        stdout=PIPE,
        stderr=STDOUT,
        text=True,
        check=False,
        env=full_env,
    )
    output = result.stdout or ""
    if output and not quiet:
        logger.info(output.strip())

    if result.returncode != 0:
        error_msg = f"Commande échouée ({result.returncode}): {' '.join(command)}"
        logger.error(error_msg)
        if quiet and output:
            logger.error(output.strip())
        raise CommandError(error_msg, result.returncode, output)

    return output
