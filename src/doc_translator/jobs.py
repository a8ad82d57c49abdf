import sqlite3
from typing import Any
from uuid import uuid4

from doc_translator.db import Database, now_iso, use_conn
from doc_translator.schemas import JobStatus, TranslationJob

# statuses a worker may (re)enter ``processing`` from: first delivery, crash
# redelivery and a queued retry after a failed attempt
CLAIMABLE_STATUSES = (JobStatus.pending, JobStatus.processing, JobStatus.failed)


class JobStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, job: dict, conn: sqlite3.Connection | None = None) -> TranslationJob:
        ts = now_iso()
        row = {
            "job_id": job["job_id"],
            "owner_id": job["owner_id"],
            "file_id": job["file_id"],
            "file_path": job["file_path"],
            "file_name": job["file_name"],
            "source_lang": job.get("source_lang") or "auto",
            "target_lang": job["target_lang"],
            "target_lang_name": job["target_lang_name"],
            "formality": job.get("formality"),
            "billing_mode": job["billing_mode"],
            "payment_id": job.get("payment_id"),
            "status": JobStatus.pending.value,
            "created_at": ts,
            "updated_at": ts,
        }
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        with use_conn(self.db, conn) as c:
            c.execute(f"INSERT INTO jobs ({cols}) VALUES ({marks})", tuple(row.values()))
        return TranslationJob(**row)

    def get(self, job_id: str, conn: sqlite3.Connection | None = None) -> TranslationJob | None:
        if conn is not None:
            row = conn.execute("SELECT * FROM jobs WHERE job_id=?", (job_id,)).fetchone()
        else:
            with self.db.reader() as own:
                row = own.execute("SELECT * FROM jobs WHERE job_id=?", (job_id,)).fetchone()
        return TranslationJob(**dict(row)) if row else None

    def _owner_filter(self, owner_id: str, status: JobStatus | None) -> tuple[str, list[Any]]:
        where = "owner_id=?"
        params: list[Any] = [owner_id]
        if status is not None:
            where += " AND status=?"
            params.append(status.value)
        return where, params

    def list_for_owner(
        self,
        owner_id: str,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[TranslationJob]:
        where, params = self._owner_filter(owner_id, status)
        sql = f"SELECT * FROM jobs WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?"
        with self.db.reader() as conn:
            rows = conn.execute(sql, (*params, limit, offset)).fetchall()
        return [TranslationJob(**dict(r)) for r in rows]

    def count_for_owner(self, owner_id: str, status: JobStatus | None = None) -> int:
        where, params = self._owner_filter(owner_id, status)
        with self.db.reader() as conn:
            row = conn.execute(f"SELECT COUNT(*) c FROM jobs WHERE {where}", tuple(params)).fetchone()
        return int(row["c"])

    def transition(
        self,
        job_id: str,
        from_statuses: tuple[JobStatus, ...],
        to_status: JobStatus,
        conn: sqlite3.Connection | None = None,
        expect_token: str | None = None,
        **fields: Any,
    ) -> bool:
        """Move a job to ``to_status`` only if it is currently in ``from_statuses``.

        The check runs against the persisted row inside the UPDATE itself, so
        two racing callers can never both win. With ``expect_token`` the row must
        also still belong to that run.
        """
        sets = ["status = ?", "updated_at = ?"]
        values: list[Any] = [to_status.value, now_iso()]
        for name, value in fields.items():
            sets.append(f"{name} = ?")
            values.append(value)
        marks = ", ".join("?" for _ in from_statuses)
        sql = f"UPDATE jobs SET {', '.join(sets)} WHERE job_id = ? AND status IN ({marks})"
        values.append(job_id)
        values.extend(s.value for s in from_statuses)
        if expect_token is not None:
            sql += " AND run_token = ?"
            values.append(expect_token)
        with use_conn(self.db, conn) as c:
            changed = c.execute(sql, tuple(values)).rowcount
        return changed == 1

    def mark_processing(self, job_id: str) -> str | None:
        """Start a run. Returns the run token, or None if the job was not claimable."""
        token = uuid4().hex
        if self.transition(job_id, CLAIMABLE_STATUSES, JobStatus.processing, error_message=None, run_token=token):
            return token
        return None

    def mark_completed(
        self,
        job_id: str,
        output_path: str,
        run_token: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        return self.transition(
            job_id,
            (JobStatus.processing,),
            JobStatus.completed,
            conn=conn,
            expect_token=run_token,
            output_path=output_path,
            completed_at=now_iso(),
            error_message=None,
        )

    def mark_failed(self, job_id: str, error_message: str, run_token: str | None = None) -> bool:
        if run_token is not None:
            return self.transition(
                job_id,
                (JobStatus.processing,),
                JobStatus.failed,
                expect_token=run_token,
                error_message=error_message,
            )
        return self.transition(job_id, (JobStatus.processing, JobStatus.pending), JobStatus.failed, error_message=error_message)

    def mark_cancelled(self, job_id: str) -> bool:
        return self.transition(job_id, (JobStatus.pending,), JobStatus.cancelled)

    def reset_for_retry(self, job_id: str) -> bool:
        return self.transition(job_id, (JobStatus.failed,), JobStatus.pending, error_message=None)
