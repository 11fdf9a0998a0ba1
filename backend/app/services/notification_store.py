import logging
import sqlite3
from typing import Iterable, List, Optional
from uuid import uuid4

from app.models import FanoutFailure, FanoutResult, NotificationRecord
from app.services.database import Database, utc_now_iso
from app.services.errors import StoreError, StoreNotFoundError, StoreValidationError
from app.services.push_sender import PushSender

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = {"info", "success", "warning", "error", "admin", "system", "service-request", "status-update"}
LIST_LIMIT = 100


class NotificationFanout:
    """Best-effort notification delivery.

    ``notify`` is a single write whose failure reaches the caller; nothing is
    retried. ``notify_many`` writes each recipient independently and reports
    what failed without undoing what was delivered.
    """

    collection = "notifications"

    def __init__(self, db: Database, push_sender: Optional[PushSender] = None):
        self._db = db
        self._push_sender = push_sender or PushSender()

    @property
    def push_enabled(self) -> bool:
        return self._push_sender.enabled

    def _row_to_record(self, row: sqlite3.Row) -> NotificationRecord:
        return NotificationRecord(
            id=row["id"],
            recipient_id=row["recipient_id"],
            title=row["title"],
            body=row["body"],
            kind=row["kind"],
            read=bool(row["read"]),
            created_at=row["created_at"],
            link=row["link"],
        )

    def register_device_token(self, user_id: str, device_token: str, platform: str = "android") -> None:
        if not device_token.strip():
            return
        with self._db.session() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO device_tokens (user_id, device_token, platform) VALUES (?, ?, ?)",
                (user_id, device_token.strip(), platform),
            )

    def _push(self, record: NotificationRecord) -> None:
        with self._db.session() as conn:
            tokens = [
                str(row["device_token"])
                for row in conn.execute(
                    "SELECT device_token FROM device_tokens WHERE user_id = ?",
                    (record.recipient_id,),
                ).fetchall()
            ]
        invalid_tokens = self._push_sender.send_notification(
            tokens=tokens,
            title=record.title,
            body=record.body,
            data={
                "notification_id": record.id,
                "kind": record.kind,
                "link": record.link or "",
            },
        )
        if invalid_tokens:
            with self._db.session() as conn:
                conn.executemany(
                    "DELETE FROM device_tokens WHERE user_id = ? AND device_token = ?",
                    [(record.recipient_id, token) for token in invalid_tokens],
                )

    def notify(
        self,
        recipient_id: str,
        title: str,
        body: str,
        kind: str = "info",
        link: Optional[str] = None,
        *,
        dedupe_key: Optional[str] = None,
    ) -> NotificationRecord:
        """Persist one notification and push it to the recipient's devices.

        With a ``dedupe_key``, a repeat for the same recipient returns the
        record already stored instead of writing a second one.
        """
        if not recipient_id or not title or not body:
            raise StoreValidationError("recipient_id, title and body are required")
        if kind not in NOTIFICATION_KINDS:
            raise StoreValidationError(f"Unknown notification kind: {kind}")

        notification_id = f"ntf_{uuid4().hex[:10]}"
        with self._db.session() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO notifications (id, recipient_id, title, body, kind, link, read, dedupe_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (notification_id, recipient_id, title, body, kind, link, dedupe_key, utc_now_iso()),
            )
            if cursor.rowcount == 0:
                existing = conn.execute(
                    "SELECT * FROM notifications WHERE recipient_id = ? AND dedupe_key = ?",
                    (recipient_id, dedupe_key),
                ).fetchone()
                logger.info("notification_deduplicated recipient=%s key=%s", recipient_id, dedupe_key)
                return self._row_to_record(existing)
            record = self._row_to_record(
                conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
            )
            self._db.publish(self.collection, record.id, "created", {"recipient_id": recipient_id, "read": False})

        try:
            self._push(record)
        except Exception:
            logger.exception("Push delivery failed for notification %s", record.id)
        return record

    def notify_many(
        self,
        recipient_ids: Iterable[str],
        title: str,
        body: str,
        kind: str = "info",
        link: Optional[str] = None,
        *,
        dedupe_key: Optional[str] = None,
    ) -> FanoutResult:
        result = FanoutResult()
        seen = set()
        for recipient_id in recipient_ids:
            if recipient_id in seen:
                continue
            seen.add(recipient_id)
            try:
                record = self.notify(recipient_id, title, body, kind, link, dedupe_key=dedupe_key)
            except StoreError as exc:
                logger.warning("Fan-out to %s failed: %s", recipient_id, exc)
                result.failed.append(FanoutFailure(recipient_id=recipient_id, error=str(exc)))
                continue
            result.delivered.append(record)
        if result.failed:
            logger.warning(
                "Fan-out partially failed: delivered=%d failed=%d title=%r",
                len(result.delivered),
                len(result.failed),
                title,
            )
        return result

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        query = "SELECT n.*, n.rowid AS seq FROM notifications n WHERE n.recipient_id = ?"
        if unread_only:
            query += " AND n.read = 0"
        with self._db.session() as conn:
            rows = self._db.fetch_ordered(
                conn,
                index="idx_notifications_recipient_created",
                sql=query,
                order_by="n.created_at DESC, n.rowid DESC",
                params=(user_id,),
            )
        return [self._row_to_record(row) for row in rows[:LIST_LIMIT]]

    def unread_count(self, user_id: str) -> int:
        with self._db.session() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS unread FROM notifications WHERE recipient_id = ? AND read = 0",
                (user_id,),
            ).fetchone()
        return int(row["unread"])

    def mark_read(self, user_id: str, notification_id: str) -> NotificationRecord:
        """Only the recipient can mark a notification read; others see NotFound."""
        with self._db.session() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET read = 1 WHERE id = ? AND recipient_id = ?",
                (notification_id, user_id),
            )
            if cursor.rowcount != 1:
                raise StoreNotFoundError("Notification not found")
            record = self._row_to_record(
                conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
            )
            self._db.publish(self.collection, record.id, "updated", {"recipient_id": user_id, "read": True})
        return record

    def mark_all_read(self, user_id: str) -> int:
        with self._db.session() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET read = 1 WHERE recipient_id = ? AND read = 0",
                (user_id,),
            )
            changed = cursor.rowcount
            if changed:
                self._db.publish(self.collection, user_id, "bulk_read", {"recipient_id": user_id, "count": changed})
        return changed
