import json
import logging
from typing import Any, Protocol

from doc_translator.db import Database, now_iso
from doc_translator.schemas import Notification, NotificationKind

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, kind: NotificationKind, owner_id: str, payload: dict) -> None: ...


def render(kind: NotificationKind, payload: dict) -> tuple[str, str]:
    filename = payload.get("filename", "")
    if kind == NotificationKind.translation_completed:
        return "Translation Completed", f'Your file "{filename}" has been translated to {payload.get("target_lang")}'
    if kind == NotificationKind.translation_failed:
        return "Translation Failed", f'Translation of "{filename}" failed: {payload.get("error_message")}'
    if kind == NotificationKind.credits_low:
        return "Running Low on Credits", f"Only {payload.get('remaining_credits')} translation credits remain."
    return "Credits Added", f"{payload.get('credits')} credits were added to your balance."


class NotificationService:
    """Stores in-app notifications. Delivery problems are logged, never raised."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def notify(self, kind: NotificationKind, owner_id: str, payload: dict) -> None:
        try:
            title, message = render(kind, payload)
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO notifications (owner_id, kind, title, message, metadata, read, created_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?)
                    """,
                    (owner_id, kind.value, title, message, json.dumps(payload), now_iso()),
                )
        except Exception:
            logger.exception("Failed to create %s notification for user %s", kind.value, owner_id)

    def list_for_owner(self, owner_id: str, unread_only: bool = False, limit: int = 20) -> list[Notification]:
        sql = "SELECT * FROM notifications WHERE owner_id=?"
        params: list[Any] = [owner_id]
        if unread_only:
            sql += " AND read=0"
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self.db.reader() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [Notification(**dict(r)) for r in rows]

    def mark_read(self, owner_id: str, notification_id: int) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE notifications SET read=1 WHERE id=? AND owner_id=?",
                (notification_id, owner_id),
            )
            return cur.rowcount == 1

    def mark_all_read(self, owner_id: str) -> int:
        with self.db.transaction() as conn:
            cur = conn.execute("UPDATE notifications SET read=1 WHERE owner_id=? AND read=0", (owner_id,))
            return cur.rowcount
