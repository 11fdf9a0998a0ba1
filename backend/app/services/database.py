import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from app.services.change_feed import ChangeFeed
from app.services.errors import IndexUnavailableError, TransientStoreError

logger = logging.getLogger(__name__)

# Indexes backing ordered reads. A store built with provision_indexes=False
# lacks them, and readers fall back to unordered fetch + client-side sort.
ORDERED_QUERY_INDEXES: Dict[str, str] = {
    "idx_service_requests_created": "CREATE INDEX IF NOT EXISTS idx_service_requests_created ON service_requests (created_at DESC)",
    "idx_project_updates_request_created": (
        "CREATE INDEX IF NOT EXISTS idx_project_updates_request_created ON project_updates (request_id, created_at DESC)"
    ),
    "idx_conversations_updated": "CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations (updated_at DESC)",
    "idx_messages_conversation_created": (
        "CREATE INDEX IF NOT EXISTS idx_messages_conversation_created ON messages (conversation_id, created_at)"
    ),
    "idx_notifications_recipient_created": (
        "CREATE INDEX IF NOT EXISTS idx_notifications_recipient_created ON notifications (recipient_id, created_at DESC)"
    ),
    "idx_reviews_target_created": (
        "CREATE INDEX IF NOT EXISTS idx_reviews_target_created ON reviews (target_type, target_id, created_at DESC)"
    ),
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def created_desc_key(row: sqlite3.Row) -> Tuple[str, int]:
    return (str(row["created_at"]), int(row["seq"]))


@dataclass
class Database:
    db_path: str
    provision_indexes: bool = True
    feed: ChangeFeed = field(default_factory=ChangeFeed)

    def __post_init__(self) -> None:
        self._lock = Lock()
        self._pending_events: List[Tuple[str, str, str, Dict[str, Any]]] = []
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self.session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS service_requests (
                    id TEXT PRIMARY KEY,
                    request_type TEXT NOT NULL,
                    client_id TEXT NOT NULL,
                    provider_id TEXT,
                    requested_provider_id TEXT,
                    status TEXT NOT NULL,
                    budget REAL NOT NULL,
                    quote REAL,
                    quote_provider_id TEXT,
                    quote_submitted_at TEXT,
                    chat_id TEXT,
                    details_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS progress_notes (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    note TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (request_id, position)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS project_updates (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    note TEXT NOT NULL,
                    idempotency_key TEXT UNIQUE,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    participant_a TEXT NOT NULL,
                    participant_b TEXT NOT NULL,
                    last_message_snippet TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (participant_a, participant_b)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_unread (
                    conversation_id TEXT NOT NULL,
                    participant_id TEXT NOT NULL,
                    unread_count INTEGER NOT NULL DEFAULT 0 CHECK (unread_count >= 0),
                    PRIMARY KEY (conversation_id, participant_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    recipient_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    body TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    link TEXT,
                    read INTEGER NOT NULL DEFAULT 0,
                    dedupe_key TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (recipient_id, dedupe_key)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS device_tokens (
                    user_id TEXT NOT NULL,
                    device_token TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    PRIMARY KEY (user_id, device_token)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reviews (
                    id TEXT PRIMARY KEY,
                    reviewer_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    target_type TEXT NOT NULL,
                    rating INTEGER NOT NULL,
                    comment TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (reviewer_id, target_id, target_type)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS directory_users (
                    user_id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    service_types_json TEXT NOT NULL DEFAULT '[]',
                    updated_at TEXT NOT NULL
                )
                """
            )
            if self.provision_indexes:
                for ddl in ORDERED_QUERY_INDEXES.values():
                    conn.execute(ddl)

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """One serialised unit of work: commit on success, roll back on error.

        Change events queued with ``publish`` are delivered only after commit.
        """
        with self._lock:
            self._pending_events = []
            try:
                conn = self._connect()
            except sqlite3.OperationalError as exc:
                raise TransientStoreError("Store unavailable, please retry") from exc
            try:
                yield conn
                conn.commit()
            except sqlite3.OperationalError as exc:
                conn.rollback()
                self._pending_events = []
                logger.warning("Store operation failed: %s", exc)
                raise TransientStoreError("Store unavailable, please retry") from exc
            except BaseException:
                conn.rollback()
                self._pending_events = []
                raise
            finally:
                conn.close()
            events, self._pending_events = self._pending_events, []
            for collection, doc_id, kind, data in events:
                self.feed.publish(collection, doc_id, kind, data)

    @contextmanager
    def using(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Join the caller's transaction when given one, else open a session."""
        if conn is not None:
            yield conn
            return
        with self.session() as own:
            yield own

    def publish(self, collection: str, doc_id: str, kind: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._pending_events.append((collection, doc_id, kind, dict(data or {})))

    def require_index(self, conn: sqlite3.Connection, name: str) -> None:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
            (name,),
        ).fetchone()
        if not row:
            raise IndexUnavailableError(f"Ordered query requires index {name}")

    def fetch_ordered(
        self,
        conn: sqlite3.Connection,
        *,
        index: str,
        sql: str,
        order_by: str,
        params: Sequence[Any] = (),
        sort_key: Callable[[sqlite3.Row], Any] = created_desc_key,
        descending: bool = True,
    ) -> List[sqlite3.Row]:
        """Run ``sql`` ordered by ``order_by``; without its index, sort client-side.

        ``sql`` must select a ``seq`` column (the rowid) for tie-breaking.
        """
        try:
            self.require_index(conn, index)
        except IndexUnavailableError as exc:
            logger.warning("%s; sorting client-side", exc)
            rows = conn.execute(sql, tuple(params)).fetchall()
            return sorted(rows, key=sort_key, reverse=descending)
        return conn.execute(f"{sql} ORDER BY {order_by}", tuple(params)).fetchall()

    def provision_index(self, name: str) -> None:
        ddl = ORDERED_QUERY_INDEXES.get(name)
        if ddl is None:
            raise KeyError(name)
        with self.session() as conn:
            conn.execute(ddl)
