import json
import sqlite3
from typing import List, Optional, Sequence

from app.models import DirectoryEntry
from app.services.database import Database, utc_now_iso
from app.services.errors import StoreNotFoundError


class UserDirectory:
    """Roles and offered service types, as published by the profile subsystem."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def _row_to_entry(self, row: sqlite3.Row) -> DirectoryEntry:
        return DirectoryEntry(
            user_id=row["user_id"],
            role=row["role"],
            service_types=json.loads(row["service_types_json"] or "[]"),
        )

    def upsert(self, user_id: str, role: str, service_types: Sequence[str] = ()) -> DirectoryEntry:
        entry = DirectoryEntry(user_id=user_id, role=role, service_types=list(service_types))
        with self._db.session() as conn:
            conn.execute(
                """
                INSERT INTO directory_users (user_id, role, service_types_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    role = excluded.role,
                    service_types_json = excluded.service_types_json,
                    updated_at = excluded.updated_at
                """,
                (entry.user_id, entry.role, json.dumps(entry.service_types), utc_now_iso()),
            )
        return entry

    def get(self, user_id: str) -> DirectoryEntry:
        with self._db.session() as conn:
            row = conn.execute("SELECT * FROM directory_users WHERE user_id = ?", (user_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("User not found")
        return self._row_to_entry(row)

    def has_role(self, user_id: str, role: str) -> bool:
        try:
            return self.get(user_id).role == role
        except StoreNotFoundError:
            return False

    def list_by_role(self, role: str, service_type: Optional[str] = None) -> List[DirectoryEntry]:
        with self._db.session() as conn:
            rows = conn.execute(
                "SELECT * FROM directory_users WHERE role = ? ORDER BY user_id ASC",
                (role,),
            ).fetchall()
        entries = [self._row_to_entry(row) for row in rows]
        if service_type:
            entries = [entry for entry in entries if service_type in entry.service_types]
        return entries
