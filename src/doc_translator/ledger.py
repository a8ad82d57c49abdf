import json
import logging
import sqlite3

from doc_translator.db import Database, now_iso, use_conn
from doc_translator.errors import DuplicateEvent, InsufficientBalance, ValidationError
from doc_translator.schemas import PaymentRecord, PaymentStatus, UsageType

logger = logging.getLogger(__name__)


class LedgerStore:
    """Credit balances and payment records.

    Balance changes are single conditional UPDATE statements, so concurrent
    callers for the same user never lose an update and the balance cannot go
    below zero.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _ensure_user(conn: sqlite3.Connection, owner_id: str) -> None:
        ts = now_iso()
        conn.execute(
            """
            INSERT INTO users (owner_id, credits, created_at, updated_at)
            VALUES (?, 0, ?, ?)
            ON CONFLICT(owner_id) DO NOTHING
            """,
            (owner_id, ts, ts),
        )

    def get_balance(self, owner_id: str, conn: sqlite3.Connection | None = None) -> int:
        if conn is not None:
            row = conn.execute("SELECT credits FROM users WHERE owner_id=?", (owner_id,)).fetchone()
        else:
            with self.db.reader() as own:
                row = own.execute("SELECT credits FROM users WHERE owner_id=?", (owner_id,)).fetchone()
        return int(row["credits"]) if row else 0

    def increase_credits(self, owner_id: str, amount: int, conn: sqlite3.Connection | None = None) -> int:
        if amount < 0:
            raise ValidationError("credit amount must be >= 0")
        if amount == 0:
            logger.warning("increase_credits called with 0 for user %s, nothing to do", owner_id)
            return self.get_balance(owner_id, conn)
        with use_conn(self.db, conn) as c:
            self._ensure_user(c, owner_id)
            c.execute(
                "UPDATE users SET credits = credits + ?, updated_at=? WHERE owner_id=?",
                (amount, now_iso(), owner_id),
            )
            balance = self.get_balance(owner_id, c)
        logger.info("Added %s credits to user %s (balance %s)", amount, owner_id, balance)
        return balance

    def decrease_one_credit(self, owner_id: str, conn: sqlite3.Connection | None = None) -> int:
        with use_conn(self.db, conn) as c:
            cur = c.execute(
                "UPDATE users SET credits = credits - 1, updated_at=? WHERE owner_id=? AND credits >= 1",
                (now_iso(), owner_id),
            )
            if cur.rowcount != 1:
                raise InsufficientBalance(f"user {owner_id} has no credits left")
            return self.get_balance(owner_id, c)

    # payments

    def insert_payment(self, record: dict, conn: sqlite3.Connection | None = None) -> PaymentRecord:
        row = {
            "session_id": record["session_id"],
            "owner_id": record["owner_id"],
            "amount": int(record.get("amount") or 0),
            "currency": record.get("currency") or "usd",
            "usage_type": UsageType(record["usage_type"]).value,
            "status": PaymentStatus(record["status"]).value,
            "credits_added": int(record.get("credits_added") or 0),
            "plan": record.get("plan"),
            "pricing_basis": json.dumps(record["pricing_basis"]) if record.get("pricing_basis") is not None else None,
            "billing_reference": record.get("billing_reference"),
            "payment_intent": record.get("payment_intent"),
            "metadata": json.dumps(record.get("metadata") or {}),
            "created_at": now_iso(),
        }
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        try:
            with use_conn(self.db, conn) as c:
                c.execute(f"INSERT INTO payments ({cols}) VALUES ({marks})", tuple(row.values()))
        except sqlite3.IntegrityError as exc:
            raise DuplicateEvent(f"payment for session {row['session_id']} already recorded") from exc
        return PaymentRecord(**row)

    def get_payment(self, session_id: str, conn: sqlite3.Connection | None = None) -> PaymentRecord | None:
        sql = "SELECT * FROM payments WHERE session_id=?"
        if conn is not None:
            row = conn.execute(sql, (session_id,)).fetchone()
        else:
            with self.db.reader() as own:
                row = own.execute(sql, (session_id,)).fetchone()
        return PaymentRecord(**dict(row)) if row else None

    def apply_payment_credits(self, session_id: str) -> bool:
        """Credit the owner for a plan payment exactly once.

        The ``credits_applied`` flip and the balance increase commit together.
        Returns False when another caller already applied them.
        """
        with self.db.transaction() as conn:
            payment = self.get_payment(session_id, conn)
            if payment is None or payment.credits_added <= 0:
                return False
            cur = conn.execute(
                "UPDATE payments SET credits_applied=1 WHERE session_id=? AND credits_applied=0",
                (session_id,),
            )
            if cur.rowcount != 1:
                return False
            self.increase_credits(payment.owner_id, payment.credits_added, conn)
        return True

    def find_one_off(self, owner_id: str, billing_reference: str) -> PaymentRecord | None:
        with self.db.reader() as conn:
            row = conn.execute(
                """
                SELECT * FROM payments
                WHERE billing_reference=? AND owner_id=? AND usage_type='one_off'
                ORDER BY created_at DESC LIMIT 1
                """,
                (billing_reference, owner_id),
            ).fetchone()
        return PaymentRecord(**dict(row)) if row else None

    def consume_one_off(
        self,
        owner_id: str,
        billing_reference: str,
        job_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> PaymentRecord | None:
        """Mark one completed, unconsumed one-off payment as used by ``job_id``.

        Returns None when no such payment is left.
        """
        with use_conn(self.db, conn) as c:
            cur = c.execute(
                """
                UPDATE payments SET consumed=1, job_id=?
                WHERE session_id = (
                  SELECT session_id FROM payments
                  WHERE billing_reference=? AND owner_id=? AND usage_type='one_off'
                    AND status='completed' AND consumed=0
                  ORDER BY created_at LIMIT 1
                )
                AND consumed=0
                """,
                (job_id, billing_reference, owner_id),
            )
            if cur.rowcount != 1:
                return None
            row = c.execute("SELECT * FROM payments WHERE job_id=? AND consumed=1", (job_id,)).fetchone()
        return PaymentRecord(**dict(row))

    def list_payments(self, owner_id: str, limit: int = 50) -> list[PaymentRecord]:
        with self.db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM payments WHERE owner_id=? ORDER BY created_at DESC LIMIT ?",
                (owner_id, limit),
            ).fetchall()
        return [PaymentRecord(**dict(r)) for r in rows]
