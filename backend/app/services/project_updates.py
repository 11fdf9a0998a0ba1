import logging
import sqlite3
from typing import List, Optional
from uuid import uuid4

from app.models import ProjectUpdate
from app.services.database import Database, utc_now_iso
from app.services.errors import StoreValidationError

logger = logging.getLogger(__name__)


class ProjectUpdateLog:
    """Append-only audit trail of lifecycle transitions and progress notes."""

    collection = "project_updates"

    def __init__(self, db: Database) -> None:
        self._db = db

    def _row_to_update(self, row: sqlite3.Row) -> ProjectUpdate:
        return ProjectUpdate(
            id=row["id"],
            request_id=row["request_id"],
            status=row["status"],
            actor_id=row["actor_id"],
            note=row["note"],
            created_at=row["created_at"],
        )

    def find_by_key(self, idempotency_key: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[ProjectUpdate]:
        with self._db.using(conn) as session:
            row = session.execute(
                "SELECT * FROM project_updates WHERE idempotency_key = ?",
                (idempotency_key,),
            ).fetchone()
        return self._row_to_update(row) if row else None

    def append(
        self,
        request_id: str,
        status: str,
        actor_id: str,
        note: str = "",
        *,
        idempotency_key: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> ProjectUpdate:
        """Insert one entry. A repeated idempotency key returns the first entry."""
        if not request_id or not status or not actor_id:
            raise StoreValidationError("request_id, status and actor_id are required")

        update_id = f"pu_{uuid4().hex[:10]}"
        with self._db.using(conn) as session:
            cursor = session.execute(
                """
                INSERT OR IGNORE INTO project_updates (id, request_id, status, actor_id, note, idempotency_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (update_id, request_id, status, actor_id, note.strip(), idempotency_key, utc_now_iso()),
            )
            if cursor.rowcount == 0 and idempotency_key:
                existing = session.execute(
                    "SELECT * FROM project_updates WHERE idempotency_key = ?",
                    (idempotency_key,),
                ).fetchone()
                logger.info("project_update_replayed request=%s key=%s", request_id, idempotency_key)
                return self._row_to_update(existing)
            row = session.execute("SELECT * FROM project_updates WHERE id = ?", (update_id,)).fetchone()
            entry = self._row_to_update(row)
            self._db.publish(self.collection, entry.id, "created", {"request_id": request_id, "status": status})
        return entry

    def list(self, request_id: str) -> List[ProjectUpdate]:
        """Newest first, whether or not the ordered-query index exists."""
        with self._db.session() as conn:
            rows = self._db.fetch_ordered(
                conn,
                index="idx_project_updates_request_created",
                sql="SELECT pu.*, pu.rowid AS seq FROM project_updates pu WHERE pu.request_id = ?",
                order_by="pu.created_at DESC, pu.rowid DESC",
                params=(request_id,),
            )
        return [self._row_to_update(row) for row in rows]
