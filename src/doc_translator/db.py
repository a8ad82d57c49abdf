import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
      owner_id TEXT PRIMARY KEY,
      credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
      session_id TEXT PRIMARY KEY,
      owner_id TEXT NOT NULL,
      amount INTEGER NOT NULL DEFAULT 0,
      currency TEXT NOT NULL DEFAULT 'usd',
      usage_type TEXT NOT NULL,
      status TEXT NOT NULL,
      credits_added INTEGER NOT NULL DEFAULT 0,
      credits_applied INTEGER NOT NULL DEFAULT 0,
      plan TEXT,
      pricing_basis TEXT,
      billing_reference TEXT,
      consumed INTEGER NOT NULL DEFAULT 0,
      job_id TEXT,
      payment_intent TEXT,
      metadata TEXT NOT NULL DEFAULT '{}',
      created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_billing_ref ON payments (billing_reference, owner_id)",
    """
    CREATE TABLE IF NOT EXISTS files (
      file_id TEXT PRIMARY KEY,
      owner_id TEXT NOT NULL,
      filename TEXT NOT NULL,
      file_path TEXT NOT NULL,
      file_size INTEGER NOT NULL DEFAULT 0,
      mime_type TEXT,
      page_count INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
      job_id TEXT PRIMARY KEY,
      owner_id TEXT NOT NULL,
      file_id TEXT NOT NULL,
      file_path TEXT NOT NULL,
      file_name TEXT NOT NULL,
      source_lang TEXT NOT NULL,
      target_lang TEXT NOT NULL,
      target_lang_name TEXT NOT NULL,
      formality TEXT,
      billing_mode TEXT NOT NULL,
      payment_id TEXT,
      status TEXT NOT NULL,
      error_message TEXT,
      output_path TEXT,
      run_token TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      completed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs (owner_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS notifications (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      owner_id TEXT NOT NULL,
      kind TEXT NOT NULL,
      title TEXT NOT NULL,
      message TEXT NOT NULL,
      metadata TEXT NOT NULL DEFAULT '{}',
      read INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    )
    """,
]


class Database:
    """Thin wrapper around one SQLite file.

    Every call opens its own connection so worker threads never share one.
    Write paths that must be atomic across several statements go through
    ``transaction()``, which takes the write lock up front.
    """

    def __init__(self, path: str, busy_timeout_sec: float = 30.0) -> None:
        self.path = path
        self.busy_timeout_sec = busy_timeout_sec

    def connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_sec, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def init(self) -> None:
        with self.transaction() as conn:
            for stmt in SCHEMA:
                conn.execute(stmt)
        with self.reader() as conn:
            conn.execute("PRAGMA journal_mode=WAL")


@contextmanager
def use_conn(db: Database, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
    """Join the caller's transaction when one is given, else open a new one."""
    if conn is not None:
        yield conn
        return
    with db.transaction() as own:
        yield own
