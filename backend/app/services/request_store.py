import json
import logging
import sqlite3
from typing import Any, List, Optional, Sequence
from uuid import uuid4

from pydantic import TypeAdapter

from app.models import ProgressNote, RequestDetails, ServiceRequest, ServiceRequestCreate
from app.services.database import Database, utc_now_iso
from app.services.errors import (
    InvalidTransitionError,
    StoreConflictError,
    StoreNotFoundError,
    StorePermissionError,
    StoreValidationError,
)

logger = logging.getLogger(__name__)

REQUEST_TERMINAL_STATUSES = {"Rejected", "Completed", "Cancelled"}
REQUEST_ACTIVE_STATUSES = {"Pending", "Accepted", "InProgress"}

_details_adapter: TypeAdapter = TypeAdapter(RequestDetails)

_REQUEST_COLUMNS = "r.*, r.rowid AS seq"


class RequestStore:
    collection = "service_requests"

    def __init__(self, db: Database) -> None:
        self._db = db

    def _publish(self, request: ServiceRequest, kind: str) -> None:
        self._db.publish(
            self.collection,
            request.id,
            kind,
            {
                "status": request.status,
                "client_id": request.client_id,
                "provider_id": request.provider_id,
                "requested_provider_id": request.requested_provider_id,
            },
        )

    def _load_row(self, conn: sqlite3.Connection, request_id: str) -> sqlite3.Row:
        row = conn.execute(
            f"SELECT {_REQUEST_COLUMNS} FROM service_requests r WHERE r.id = ?",
            (request_id,),
        ).fetchone()
        if not row:
            raise StoreNotFoundError("Request not found")
        return row

    def _progress_notes(self, conn: sqlite3.Connection, request_id: str) -> List[ProgressNote]:
        rows = conn.execute(
            "SELECT note, actor_id, created_at FROM progress_notes WHERE request_id = ? ORDER BY position ASC",
            (request_id,),
        ).fetchall()
        return [ProgressNote(note=row["note"], actor_id=row["actor_id"], at=row["created_at"]) for row in rows]

    def _row_to_request(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ServiceRequest:
        return ServiceRequest(
            id=row["id"],
            request_type=row["request_type"],
            client_id=row["client_id"],
            provider_id=row["provider_id"],
            requested_provider_id=row["requested_provider_id"],
            status=row["status"],
            budget=float(row["budget"]),
            quote=float(row["quote"]) if row["quote"] is not None else None,
            quote_provider_id=row["quote_provider_id"],
            quote_submitted_at=row["quote_submitted_at"],
            chat_id=row["chat_id"],
            progress_notes=self._progress_notes(conn, row["id"]),
            details=_details_adapter.validate_python(json.loads(row["details_json"] or "{}")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _reload(self, conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
        return self._row_to_request(conn, self._load_row(conn, request_id))

    def create(self, payload: ServiceRequestCreate, *, conn: Optional[sqlite3.Connection] = None) -> ServiceRequest:
        client_id = payload.client_id.strip()
        if not client_id:
            raise StoreValidationError("client_id is required")
        if payload.requested_provider_id and payload.requested_provider_id == client_id:
            raise StoreValidationError("A client cannot address a request to themselves")

        now_iso = utc_now_iso()
        request_id = f"req_{uuid4().hex[:10]}"
        with self._db.using(conn) as session:
            session.execute(
                """
                INSERT INTO service_requests (
                    id, request_type, client_id, provider_id, requested_provider_id, status, budget,
                    quote, quote_provider_id, quote_submitted_at, chat_id, details_json, created_at, updated_at
                ) VALUES (?, ?, ?, NULL, ?, 'Pending', ?, NULL, NULL, NULL, NULL, ?, ?, ?)
                """,
                (
                    request_id,
                    payload.details.request_type,
                    client_id,
                    payload.requested_provider_id,
                    float(payload.budget),
                    payload.details.model_dump_json(),
                    now_iso,
                    now_iso,
                ),
            )
            created = self._reload(session, request_id)
            self._publish(created, "created")
        logger.info("request_created id=%s type=%s client=%s", created.id, created.request_type, client_id)
        return created

    def get(self, request_id: str, *, conn: Optional[sqlite3.Connection] = None) -> ServiceRequest:
        with self._db.using(conn) as session:
            return self._reload(session, request_id)

    def _list(self, conditions: List[str], params: Sequence[Any], status: Optional[str] = None) -> List[ServiceRequest]:
        if status:
            conditions = [*conditions, "r.status = ?"]
            params = (*params, status)
        where = f"WHERE {' AND '.join(f'({condition})' for condition in conditions)}" if conditions else ""
        with self._db.session() as conn:
            rows = self._db.fetch_ordered(
                conn,
                index="idx_service_requests_created",
                sql=f"SELECT {_REQUEST_COLUMNS} FROM service_requests r {where}",
                order_by="r.created_at DESC, r.rowid DESC",
                params=params,
            )
            return [self._row_to_request(conn, row) for row in rows]

    def list_for_client(self, client_id: str, status: Optional[str] = None) -> List[ServiceRequest]:
        return self._list(["r.client_id = ?"], (client_id,), status)

    def list_for_provider(self, provider_id: str, status: Optional[str] = None) -> List[ServiceRequest]:
        """Requests assigned to the provider plus open Pending ones they may claim."""
        return self._list(
            [
                """
                r.provider_id = ?
                OR (
                    r.status = 'Pending'
                    AND r.provider_id IS NULL
                    AND r.client_id != ?
                    AND (r.requested_provider_id IS NULL OR r.requested_provider_id = ?)
                )
                """
            ],
            (provider_id, provider_id, provider_id),
            status,
        )

    def list_all(self, status: Optional[str] = None) -> List[ServiceRequest]:
        return self._list([], (), status)

    def claim(self, request_id: str, provider_id: str, *, conn: sqlite3.Connection) -> ServiceRequest:
        """Compare-and-set Pending/unassigned -> Accepted/provider_id in one write."""
        cursor = conn.execute(
            """
            UPDATE service_requests
            SET provider_id = ?, status = 'Accepted', updated_at = ?
            WHERE id = ?
              AND status = 'Pending'
              AND provider_id IS NULL
              AND (requested_provider_id IS NULL OR requested_provider_id = ?)
            """,
            (provider_id, utc_now_iso(), request_id, provider_id),
        )
        if cursor.rowcount != 1:
            row = self._load_row(conn, request_id)
            if row["provider_id"] is not None:
                raise StoreConflictError("Request already assigned")
            if row["status"] != "Pending":
                raise InvalidTransitionError(f"Invalid status transition: {row['status']} -> Accepted")
            raise StorePermissionError("Request is addressed to a different provider")
        updated = self._reload(conn, request_id)
        self._publish(updated, "updated")
        return updated

    def transition(
        self,
        request_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        *,
        conn: sqlite3.Connection,
    ) -> ServiceRequest:
        placeholders = ", ".join("?" for _ in from_statuses)
        cursor = conn.execute(
            f"""
            UPDATE service_requests
            SET status = ?, updated_at = ?
            WHERE id = ? AND status IN ({placeholders})
            """,
            (to_status, utc_now_iso(), request_id, *from_statuses),
        )
        if cursor.rowcount != 1:
            row = self._load_row(conn, request_id)
            raise InvalidTransitionError(f"Invalid status transition: {row['status']} -> {to_status}")
        updated = self._reload(conn, request_id)
        self._publish(updated, "updated")
        return updated

    def set_quote(self, request_id: str, provider_id: str, amount: float, *, conn: sqlite3.Connection) -> ServiceRequest:
        if amount <= 0:
            raise StoreValidationError("Quote amount must be greater than 0")
        now_iso = utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE service_requests
            SET quote = ?, quote_provider_id = ?, quote_submitted_at = ?, updated_at = ?
            WHERE id = ? AND status IN ('Pending', 'Accepted', 'InProgress')
            """,
            (float(amount), provider_id, now_iso, now_iso, request_id),
        )
        if cursor.rowcount != 1:
            row = self._load_row(conn, request_id)
            raise InvalidTransitionError(f"Cannot quote a request in status {row['status']}")
        updated = self._reload(conn, request_id)
        self._publish(updated, "updated")
        return updated

    def add_progress_note(self, request_id: str, actor_id: str, note: str, *, conn: sqlite3.Connection) -> ServiceRequest:
        cleaned = note.strip()
        if not cleaned:
            raise StoreValidationError("Progress note is required")
        now_iso = utc_now_iso()
        conn.execute(
            """
            INSERT INTO progress_notes (id, request_id, position, note, actor_id, created_at)
            SELECT ?, ?, COALESCE(MAX(position), 0) + 1, ?, ?, ?
            FROM progress_notes WHERE request_id = ?
            """,
            (f"pn_{uuid4().hex[:10]}", request_id, cleaned, actor_id, now_iso, request_id),
        )
        conn.execute("UPDATE service_requests SET updated_at = ? WHERE id = ?", (now_iso, request_id))
        updated = self._reload(conn, request_id)
        self._publish(updated, "updated")
        return updated

    def attach_chat(self, request_id: str, chat_id: str, *, conn: Optional[sqlite3.Connection] = None) -> ServiceRequest:
        with self._db.using(conn) as session:
            session.execute(
                "UPDATE service_requests SET chat_id = ?, updated_at = ? WHERE id = ?",
                (chat_id, utc_now_iso(), request_id),
            )
            updated = self._reload(session, request_id)
            self._publish(updated, "updated")
            return updated

    def delete(self, request_id: str, actor_id: str) -> None:
        with self._db.session() as conn:
            row = self._load_row(conn, request_id)
            if row["client_id"] != actor_id:
                raise StorePermissionError("Only the client can delete this request")
            if row["status"] != "Pending" or row["provider_id"] is not None:
                raise StoreConflictError("Only unclaimed Pending requests can be deleted")
            conn.execute("DELETE FROM progress_notes WHERE request_id = ?", (request_id,))
            conn.execute("DELETE FROM project_updates WHERE request_id = ?", (request_id,))
            conn.execute("DELETE FROM service_requests WHERE id = ?", (request_id,))
            self._db.publish(self.collection, request_id, "deleted", {"client_id": row["client_id"]})
        logger.info("request_deleted id=%s client=%s", request_id, actor_id)
