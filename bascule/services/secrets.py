"""Identifiants de connexion à la base, depuis un secret Kubernetes ou l'environnement."""
from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

from bascule.logging.logger import run_command


@dataclass(frozen=True)
class DatabaseCredentials:
    host: str
    database: str
    user: str
    password: str = ""
    port: str = "5432"

    def pg_env(self) -> dict:
        """Variables PG* pour pg_dump / pg_restore (évite le mot de passe en argument)."""

        return {"PGPASSWORD": self.password, "PGPORT": self.port}


class SecretStore(Protocol):
    def database_credentials(self, namespace: str) -> DatabaseCredentials: ...


class KubernetesSecretStore:
    def __init__(self, secret_name: str = "postgres-credentials", logger: Optional[logging.Logger] = None) -> None:
        self.secret_name = secret_name
        self.logger = logger or logging.getLogger(__name__)

    def database_credentials(self, namespace: str) -> DatabaseCredentials:
        raw = run_command(
            ["kubectl", "get", "secret", "-n", namespace, self.secret_name, "-o", "json"],
            logger=self.logger,
            quiet=True,
        )
        data = json.loads(raw).get("data", {})

        def _field(key: str, default: str = "") -> str:
            value = data.get(key)
            return base64.b64decode(value).decode("utf-8") if value else default

        return DatabaseCredentials(
            host=_field("host"),
            database=_field("database"),
            user=_field("username"),
            password=_field("password"),
            port=_field("port", "5432"),
        )


class EnvSecretStore:
    """Lit les variables PG* (PGHOST, PGDATABASE, PGUSER, PGPASSWORD, PGPORT)."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self.env = env

    def database_credentials(self, namespace: str) -> DatabaseCredentials:
        env = os.environ if self.env is None else self.env
        host = env.get("PGHOST")
        database = env.get("PGDATABASE")
        user = env.get("PGUSER")
        if not (host and database and user):
            raise ValueError("Variables PG* incomplètes (PGHOST, PGDATABASE, PGUSER requis)")
        return DatabaseCredentials(
            host=host,
            database=database,
            user=user,
            password=env.get("PGPASSWORD", ""),
            port=env.get("PGPORT", "5432"),
        )
