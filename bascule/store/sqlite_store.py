from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, List, Optional
from uuid import uuid4

from bascule.deploy.errors import LockUnavailable
from bascule.store.models import BackupRecord, DeploymentState, utc_now


def _timestamp_id(previous: Optional[int]) -> int:
    """Identifiant dérivé de l'horloge (µs), strictement croissant."""

    candidate = time.time_ns() // 1000
    if previous is not None and candidate <= previous:
        candidate = previous + 1
    return candidate


class StateStore:
    """Historique append-only des snapshots et backups, par environnement.

    Le plus récent est celui qui porte l'identifiant le plus élevé.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS deployment_states (
                    id INTEGER PRIMARY KEY,
                    environment TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    services TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_records (
                    id INTEGER PRIMARY KEY,
                    environment TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    location_ref TEXT NOT NULL,
                    kind TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS environment_locks (
                    environment TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS environment_flags (
                    environment TEXT PRIMARY KEY,
                    degraded INTEGER NOT NULL,
                    reason TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )

    # --- Snapshots ---
    def save(self, state: DeploymentState) -> DeploymentState:
        """Persiste un snapshot et le renvoie avec son identifiant."""

        with self._connect() as conn:
            row = conn.execute("SELECT MAX(id) FROM deployment_states").fetchone()
            state_id = _timestamp_id(row[0])
            conn.execute(
                "INSERT INTO deployment_states(id, environment, captured_at, services) VALUES(?, ?, ?, ?)",
                (
                    state_id,
                    state.environment,
                    state.captured_at.isoformat(),
                    json.dumps(state.to_payload(), ensure_ascii=False),
                ),
            )
        return DeploymentState(
            environment=state.environment,
            services=state.services,
            captured_at=state.captured_at,
            state_id=state_id,
        )

    def latest(self, environment: str) -> Optional[DeploymentState]:
        history = self.history(environment, limit=1)
        return history[0] if history else None

    def get(self, environment: str, state_id: int) -> Optional[DeploymentState]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, environment, captured_at, services FROM deployment_states WHERE environment = ? AND id = ?",
                (environment, state_id),
            ).fetchone()
        return self._state_from_row(row) if row else None

    def history(self, environment: str, limit: Optional[int] = None) -> List[DeploymentState]:
        query = "SELECT id, environment, captured_at, services FROM deployment_states WHERE environment = ? ORDER BY id DESC"
        params: tuple = (environment,)
        if limit is not None:
            query += " LIMIT ?"
            params = (environment, limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._state_from_row(row) for row in rows]

    @staticmethod
    def _state_from_row(row: sqlite3.Row) -> DeploymentState:
        return DeploymentState.from_payload(
            row["environment"],
            json.loads(row["services"]),
            datetime.fromisoformat(row["captured_at"]),
            state_id=row["id"],
        )

    # --- Backups ---
    def save_backup(self, record: BackupRecord) -> BackupRecord:
        with self._connect() as conn:
            row = conn.execute("SELECT MAX(id) FROM backup_records").fetchone()
            backup_id = _timestamp_id(row[0])
            conn.execute(
                "INSERT INTO backup_records(id, environment, created_at, location_ref, kind) VALUES(?, ?, ?, ?, ?)",
                (backup_id, record.environment, record.created_at.isoformat(), record.location_ref, record.kind),
            )
        return BackupRecord(
            environment=record.environment,
            location_ref=record.location_ref,
            created_at=record.created_at,
            backup_id=backup_id,
            kind=record.kind,
        )

    def latest_backup(self, environment: str, kind: str = "pre-deploy") -> Optional[BackupRecord]:
        backups = [b for b in self.backups(environment) if b.kind == kind]
        return backups[0] if backups else None

    def backups(self, environment: str) -> List[BackupRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, environment, created_at, location_ref, kind FROM backup_records WHERE environment = ? ORDER BY id DESC",
                (environment,),
            ).fetchall()
        return [
            BackupRecord(
                environment=row["environment"],
                location_ref=row["location_ref"],
                created_at=datetime.fromisoformat(row["created_at"]),
                backup_id=row["id"],
                kind=row["kind"],
            )
            for row in rows
        ]

    # --- Maintenance ---
    def prune_states(self, environment: str, keep: int = 10) -> int:
        """Supprime les snapshots au-delà des `keep` plus récents."""

        with self._connect() as conn:
            cursor = conn.execute(
                """
                DELETE FROM deployment_states
                WHERE environment = ? AND id NOT IN (
                    SELECT id FROM deployment_states WHERE environment = ? ORDER BY id DESC LIMIT ?
                )
                """,
                (environment, environment, keep),
            )
            return cursor.rowcount

    def prune_backups(self, environment: str, max_age_days: int = 7) -> List[BackupRecord]:
        """Oublie les pointeurs de backup plus vieux que `max_age_days`; renvoie ceux retirés."""

        cutoff = utc_now() - timedelta(days=max_age_days)
        expired = [b for b in self.backups(environment) if b.created_at < cutoff]
        if expired:
            with self._connect() as conn:
                conn.executemany(
                    "DELETE FROM backup_records WHERE id = ?",
                    [(b.backup_id,) for b in expired],
                )
        return expired

    # --- Verrou par environnement (bail avec expiration) ---
    def acquire_lock(self, environment: str, owner: str, ttl_seconds: float) -> None:
        now = time.time()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT owner, expires_at FROM environment_locks WHERE environment = ?",
                (environment,),
            ).fetchone()
            if row and row["expires_at"] > now and row["owner"] != owner:
                raise LockUnavailable(
                    f"Environnement {environment} verrouillé par {row['owner']} "
                    f"(expire dans {int(row['expires_at'] - now)}s)"
                )
            conn.execute(
                """
                INSERT INTO environment_locks(environment, owner, expires_at) VALUES(?, ?, ?)
                ON CONFLICT(environment) DO UPDATE SET owner=excluded.owner, expires_at=excluded.expires_at
                """,
                (environment, owner, now + ttl_seconds),
            )

    def release_lock(self, environment: str, owner: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM environment_locks WHERE environment = ? AND owner = ?",
                (environment, owner),
            )

    def lock_owner(self, environment: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT owner, expires_at FROM environment_locks WHERE environment = ?",
                (environment,),
            ).fetchone()
        if row and row["expires_at"] > time.time():
            return row["owner"]
        return None

    @contextmanager
    def hold(self, environment: str, owner: str, ttl_seconds: float) -> Iterator[str]:
        """Bail exclusif le temps du bloc, sous un jeton propre à l'appel.

        Deux exécutions d'un même opérateur s'excluent donc mutuellement, et
        la sortie du bloc ne libère que le bail de cet appel.
        """

        token = f"{owner}:{uuid4().hex[:12]}"
        self.acquire_lock(environment, token, ttl_seconds)
        try:
            yield token
        finally:
            self.release_lock(environment, token)

    # --- Marqueur « dégradé » ---
    def mark_degraded(self, environment: str, reason: str) -> None:
        self._set_flag(environment, True, reason)

    def clear_degraded(self, environment: str) -> None:
        self._set_flag(environment, False, None)

    def degraded_reason(self, environment: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT degraded, reason FROM environment_flags WHERE environment = ?",
                (environment,),
            ).fetchone()
        if row and row["degraded"]:
            return row["reason"] or "dégradé"
        return None

    def _set_flag(self, environment: str, degraded: bool, reason: Optional[str]) -> None:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO environment_flags(environment, degraded, reason, updated_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(environment) DO UPDATE SET
                    degraded=excluded.degraded,
                    reason=excluded.reason,
                    updated_at=excluded.updated_at
                """,
                (environment, int(degraded), reason, timestamp),
            )
