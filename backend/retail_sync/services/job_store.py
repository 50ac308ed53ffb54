from __future__ import annotations

from retail_sync.db.session import get_connection, transaction
from retail_sync.models.import_job import ImportJob, JobStatus

_COLUMNS = "id, domain, label, status, steps_json, created_at, updated_at, completed_at, error_msg"


class JobStore:
    """Durable history of import jobs, one row per job."""

    def save(self, job: ImportJob) -> None:
        with transaction() as connection:
            connection.execute(
                f"""
                INSERT INTO import_jobs ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    steps_json = excluded.steps_json,
                    updated_at = excluded.updated_at,
                    completed_at = excluded.completed_at,
                    error_msg = excluded.error_msg
                """,
                (
                    job.id,
                    job.domain,
                    job.label,
                    job.status.value,
                    job.steps_json(),
                    job.created_at,
                    job.updated_at,
                    job.completed_at,
                    job.error_message,
                ),
            )

    def load(self, job_id: str) -> ImportJob | None:
        connection = get_connection()
        try:
            row = connection.execute(
                f"SELECT {_COLUMNS} FROM import_jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        finally:
            connection.close()

        if not row:
            return None
        return ImportJob.from_row(row)

    def list_by_status(self, statuses: list[JobStatus]) -> list[ImportJob]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        connection = get_connection()
        try:
            rows = connection.execute(
                f"""
                SELECT {_COLUMNS}
                FROM import_jobs
                WHERE status IN ({placeholders})
                ORDER BY created_at DESC
                """,
                [s.value for s in statuses],
            ).fetchall()
        finally:
            connection.close()
        return [ImportJob.from_row(r) for r in rows]

    def history(self, limit: int = 50) -> list[ImportJob]:
        connection = get_connection()
        try:
            rows = connection.execute(
                f"SELECT {_COLUMNS} FROM import_jobs ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            connection.close()
        return [ImportJob.from_row(r) for r in rows]
