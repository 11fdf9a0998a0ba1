"""Two-party conversations keyed by their participant pair.

The conversation id is derived from the sorted pair, so ``find_or_create``
is an ``INSERT OR IGNORE`` on a primary key: any number of callers, in any
order, converge on the same record.
"""

import logging
import sqlite3
from typing import List, Optional, Tuple
from uuid import uuid4

from app.models import Conversation, Message
from app.services.database import Database, created_desc_key, utc_now_iso
from app.services.errors import StoreNotFoundError, StorePermissionError, StoreValidationError

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 100


def _ordered_pair(participant_a: str, participant_b: str) -> Tuple[str, str]:
    a = (participant_a or "").strip()
    b = (participant_b or "").strip()
    if not a or not b:
        raise StoreValidationError("Both participant ids are required")
    if a == b:
        raise StoreValidationError("Cannot start a conversation with yourself")
    first, second = sorted((a, b))
    return first, second


def conversation_id_for(participant_a: str, participant_b: str) -> str:
    first, second = _ordered_pair(participant_a, participant_b)
    return f"conv_{first}__{second}"


class ConversationMatcher:
    collection = "conversations"
    messages_collection = "messages"

    def __init__(self, db: Database) -> None:
        self._db = db

    def _row_to_conversation(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Conversation:
        counts = {
            str(item["participant_id"]): int(item["unread_count"])
            for item in conn.execute(
                "SELECT participant_id, unread_count FROM conversation_unread WHERE conversation_id = ?",
                (row["id"],),
            ).fetchall()
        }
        participants = [row["participant_a"], row["participant_b"]]
        return Conversation(
            id=row["id"],
            participant_ids=participants,
            last_message_snippet=row["last_message_snippet"],
            unread_counts={participant: counts.get(participant, 0) for participant in participants},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load_row(self, conn: sqlite3.Connection, conversation_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("Conversation not found")
        return row

    def _other_participant(self, row: sqlite3.Row, participant_id: str) -> str:
        if participant_id == row["participant_a"]:
            return str(row["participant_b"])
        if participant_id == row["participant_b"]:
            return str(row["participant_a"])
        raise StorePermissionError("Not a participant of this conversation")

    def find_or_create(
        self,
        participant_a: str,
        participant_b: str,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Conversation:
        first, second = _ordered_pair(participant_a, participant_b)
        conversation_id = conversation_id_for(first, second)
        now_iso = utc_now_iso()
        with self._db.using(conn) as session:
            cursor = session.execute(
                """
                INSERT OR IGNORE INTO conversations (id, participant_a, participant_b, last_message_snippet, created_at, updated_at)
                VALUES (?, ?, ?, '', ?, ?)
                """,
                (conversation_id, first, second, now_iso, now_iso),
            )
            created = cursor.rowcount == 1
            if created:
                session.executemany(
                    "INSERT OR IGNORE INTO conversation_unread (conversation_id, participant_id, unread_count) VALUES (?, ?, 0)",
                    [(conversation_id, first), (conversation_id, second)],
                )
            conversation = self._row_to_conversation(session, self._load_row(session, conversation_id))
            if created:
                self._db.publish(
                    self.collection,
                    conversation_id,
                    "created",
                    {"participant_ids": conversation.participant_ids},
                )
        if created:
            logger.info("conversation_created id=%s", conversation_id)
        return conversation

    def get(self, conversation_id: str) -> Conversation:
        with self._db.session() as conn:
            return self._row_to_conversation(conn, self._load_row(conn, conversation_id))

    def list_for_user(self, user_id: str) -> List[Conversation]:
        """Most recently active first."""
        with self._db.session() as conn:
            rows = self._db.fetch_ordered(
                conn,
                index="idx_conversations_updated",
                sql="SELECT c.*, c.rowid AS seq FROM conversations c WHERE c.participant_a = ? OR c.participant_b = ?",
                order_by="c.updated_at DESC, c.rowid DESC",
                params=(user_id, user_id),
                sort_key=lambda row: (str(row["updated_at"]), int(row["seq"])),
            )
            return [self._row_to_conversation(conn, row) for row in rows]

    def list_messages(self, conversation_id: str, participant_id: str) -> List[Message]:
        """Oldest first."""
        with self._db.session() as conn:
            row = self._load_row(conn, conversation_id)
            self._other_participant(row, participant_id)
            rows = self._db.fetch_ordered(
                conn,
                index="idx_messages_conversation_created",
                sql="SELECT m.*, m.rowid AS seq FROM messages m WHERE m.conversation_id = ?",
                order_by="m.created_at ASC, m.rowid ASC",
                params=(conversation_id,),
                sort_key=created_desc_key,
                descending=False,
            )
        return [
            Message(
                id=item["id"],
                conversation_id=item["conversation_id"],
                sender_id=item["sender_id"],
                text=item["text"],
                read=bool(item["read"]),
                created_at=item["created_at"],
            )
            for item in rows
        ]

    def append_message(self, conversation_id: str, sender_id: str, text: str) -> Tuple[Message, Conversation]:
        cleaned = (text or "").strip()
        if not cleaned:
            raise StoreValidationError("Message text is required")

        now_iso = utc_now_iso()
        message_id = f"msg_{uuid4().hex[:10]}"
        with self._db.session() as conn:
            row = self._load_row(conn, conversation_id)
            recipient_id = self._other_participant(row, sender_id)
            conn.execute(
                """
                INSERT INTO messages (id, conversation_id, sender_id, recipient_id, text, read, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (message_id, conversation_id, sender_id, recipient_id, cleaned, now_iso),
            )
            conn.execute(
                "UPDATE conversations SET last_message_snippet = ?, updated_at = ? WHERE id = ?",
                (cleaned[:SNIPPET_LENGTH], now_iso, conversation_id),
            )
            # Increment in place; the recipient's count only ever grows here.
            conn.execute(
                """
                INSERT INTO conversation_unread (conversation_id, participant_id, unread_count)
                VALUES (?, ?, 1)
                ON CONFLICT(conversation_id, participant_id) DO UPDATE SET unread_count = unread_count + 1
                """,
                (conversation_id, recipient_id),
            )
            conn.execute(
                """
                INSERT INTO conversation_unread (conversation_id, participant_id, unread_count)
                VALUES (?, ?, 0)
                ON CONFLICT(conversation_id, participant_id) DO UPDATE SET unread_count = 0
                """,
                (conversation_id, sender_id),
            )
            message = Message(
                id=message_id,
                conversation_id=conversation_id,
                sender_id=sender_id,
                text=cleaned,
                read=False,
                created_at=now_iso,
            )
            conversation = self._row_to_conversation(conn, self._load_row(conn, conversation_id))
            self._db.publish(
                self.messages_collection,
                message_id,
                "created",
                {"conversation_id": conversation_id, "sender_id": sender_id, "recipient_id": recipient_id},
            )
            self._db.publish(
                self.collection,
                conversation_id,
                "updated",
                {"participant_ids": conversation.participant_ids, "unread_counts": conversation.unread_counts},
            )
        return message, conversation

    def mark_read(self, conversation_id: str, participant_id: str) -> Conversation:
        with self._db.session() as conn:
            row = self._load_row(conn, conversation_id)
            self._other_participant(row, participant_id)
            conn.execute(
                """
                INSERT INTO conversation_unread (conversation_id, participant_id, unread_count)
                VALUES (?, ?, 0)
                ON CONFLICT(conversation_id, participant_id) DO UPDATE SET unread_count = 0
                """,
                (conversation_id, participant_id),
            )
            conn.execute(
                "UPDATE messages SET read = 1 WHERE conversation_id = ? AND recipient_id = ? AND read = 0",
                (conversation_id, participant_id),
            )
            conversation = self._row_to_conversation(conn, self._load_row(conn, conversation_id))
            self._db.publish(
                self.collection,
                conversation_id,
                "updated",
                {"participant_ids": conversation.participant_ids, "unread_counts": conversation.unread_counts},
            )
        return conversation

    def other_participant(self, conversation_id: str, participant_id: str) -> str:
        with self._db.session() as conn:
            return self._other_participant(self._load_row(conn, conversation_id), participant_id)
