"""Backups de la base avant déploiement (pg_dump) et restauration (pg_restore)."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional, Protocol

import psycopg2

from bascule.deploy.environments import BACKUPS_DIR, Environment
from bascule.deploy.errors import BackupFailed
from bascule.logging.logger import CommandError, run_command
from bascule.services.secrets import DatabaseCredentials, SecretStore
from bascule.store.models import BackupRecord
from bascule.store.sqlite_store import StateStore


class BackupService(Protocol):
    def backup(self, env: Environment, kind: str = "pre-deploy") -> BackupRecord: ...

    def restore(self, env: Environment, record: BackupRecord) -> None: ...


class PostgresBackupService:
    """Dump/restauration PostgreSQL au format custom, un fichier par backup.

    `location_ref` est le chemin du fichier de dump.
    """

    def __init__(
        self,
        secrets: SecretStore,
        backups_dir: Path = BACKUPS_DIR,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.secrets = secrets
        self.backups_dir = Path(backups_dir)
        self.logger = logger or logging.getLogger(__name__)

    def _check_connection(self, creds: DatabaseCredentials) -> None:
        conn = psycopg2.connect(
            host=creds.host,
            dbname=creds.database,
            user=creds.user,
            password=creds.password,
            port=creds.port,
        )
        try:
            self.logger.info(
                "Connexion base: host=%s port=%s db=%s user=%s (serveur %s)",
                conn.info.host,
                conn.info.port,
                conn.info.dbname,
                conn.info.user,
                conn.server_version,
            )
        finally:
            conn.close()

    def backup(self, env: Environment, kind: str = "pre-deploy") -> BackupRecord:
        creds = self.secrets.database_credentials(env.namespace)
        self._check_connection(creds)

        self.backups_dir.mkdir(parents=True, exist_ok=True)
        prefix = "db_backup" if kind == "pre-deploy" else kind.replace("-", "_") + "_backup"
        stamp = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
        target = self.backups_dir / f"{prefix}_{env.name}_{stamp}.dump"

        run_command(
            [
                "pg_dump",
                "-h",
                creds.host,
                "-U",
                creds.user,
                "-d",
                creds.database,
                "--format=custom",
                "--compress=9",
                f"--file={target}",
            ],
            logger=self.logger,
            env=creds.pg_env(),
        )
        self.logger.info("Backup créé: %s", target)
        return BackupRecord(environment=env.name, location_ref=str(target), kind=kind)

    def restore(self, env: Environment, record: BackupRecord) -> None:
        dump = Path(record.location_ref)
        if not dump.is_file():
            raise FileNotFoundError(f"Fichier de backup introuvable: {dump}")

        creds = self.secrets.database_credentials(env.namespace)
        run_command(
            [
                "pg_restore",
                "-h",
                creds.host,
                "-U",
                creds.user,
                "-d",
                creds.database,
                "--clean",
                "--if-exists",
                str(dump),
            ],
            logger=self.logger,
            env=creds.pg_env(),
        )


class BackupCoordinator:
    """Déclenche le backup pré-déploiement et consigne son pointeur."""

    def __init__(self, service: BackupService, store: StateStore, logger: Optional[logging.Logger] = None) -> None:
        self.service = service
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def backup(self, env: Environment, kind: str = "pre-deploy") -> BackupRecord:
        """Raises:
            BackupFailed: le déploiement doit s'arrêter avant toute mutation.
        """

        self.logger.info("💾 Backup de la base (%s) pour %s", kind, env.name)
        try:
            record = self.service.backup(env, kind=kind)
        except (CommandError, psycopg2.Error, ValueError, OSError) as exc:
            self.logger.exception("Backup de la base échoué")
            raise BackupFailed(f"Backup de la base échoué: {exc}") from exc
        saved = self.store.save_backup(record)
        self.logger.info("✅ Backup consigné: %s (id=%s)", saved.location_ref, saved.backup_id)
        return saved
