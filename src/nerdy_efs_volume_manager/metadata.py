from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
import sqlite3
from typing import Any

from .models import BackupJob, RestoreJob

JOB_KIND_BACKUP = "backup"
JOB_KIND_RESTORE = "restore"


class JobHistoryStore:
    """Append-only record of terminal backup and restore job outcomes.

    A job id is recorded at most once per kind. Rows are never updated.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS job_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_kind TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    namespace TEXT NOT NULL,
                    region TEXT NOT NULL,
                    source_arn TEXT,
                    vault_name TEXT,
                    state TEXT NOT NULL,
                    created_resource_arn TEXT,
                    status_message TEXT,
                    observed_at TEXT NOT NULL,
                    UNIQUE (job_kind, job_id)
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_job_history_lookup
                ON job_history(namespace, job_kind, state, observed_at)
                """
            )
            connection.commit()

    def record_backup_job(self, job: BackupJob, *, namespace: str, region: str) -> bool:
        return self._insert(
            job_kind=JOB_KIND_BACKUP,
            job_id=job.id,
            namespace=namespace,
            region=region,
            source_arn=job.resource_arn,
            vault_name=job.vault_name,
            state=job.state.value,
            created_resource_arn=None,
            status_message=job.status_message,
        )

    def record_restore_job(self, job: RestoreJob, *, namespace: str, region: str) -> bool:
        return self._insert(
            job_kind=JOB_KIND_RESTORE,
            job_id=job.id,
            namespace=namespace,
            region=region,
            source_arn=job.source_recovery_point_arn,
            vault_name=None,
            state=job.state.value,
            created_resource_arn=job.created_resource_arn,
            status_message=job.status_message,
        )

    def get_recent_jobs(self, *, namespace: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        query = """
            SELECT job_kind, job_id, namespace, region, source_arn, vault_name, state,
                   created_resource_arn, status_message, observed_at
            FROM job_history
        """
        parameters: list[Any] = []
        if namespace:
            query += " WHERE namespace = ?"
            parameters.append(namespace)
        query += " ORDER BY observed_at DESC, id DESC LIMIT ?"
        parameters.append(limit)

        with sqlite3.connect(self.db_path) as connection:
            rows = connection.execute(query, parameters).fetchall()

        columns = (
            "job_kind",
            "job_id",
            "namespace",
            "region",
            "source_arn",
            "vault_name",
            "state",
            "created_resource_arn",
            "status_message",
            "observed_at",
        )
        return [dict(zip(columns, row, strict=True)) for row in rows]

    def count_jobs(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            row = connection.execute("SELECT COUNT(*) FROM job_history").fetchone()
        return int(row[0]) if row else 0

    def _insert(self, **values: Any) -> bool:
        observed_at = datetime.now(tz=UTC).replace(microsecond=0).isoformat()
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                INSERT OR IGNORE INTO job_history (
                    job_kind,
                    job_id,
                    namespace,
                    region,
                    source_arn,
                    vault_name,
                    state,
                    created_resource_arn,
                    status_message,
                    observed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    values["job_kind"],
                    values["job_id"],
                    values["namespace"],
                    values["region"],
                    values["source_arn"],
                    values["vault_name"],
                    values["state"],
                    values["created_resource_arn"],
                    values["status_message"],
                    observed_at,
                ),
            )
            connection.commit()
        return cursor.rowcount == 1
