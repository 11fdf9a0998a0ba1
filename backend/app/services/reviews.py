import logging
import sqlite3
from decimal import ROUND_HALF_UP, Decimal
from typing import List
from uuid import uuid4

from app.models import RatingSummary, Review
from app.services.database import Database, utc_now_iso
from app.services.errors import StoreConflictError, StoreValidationError

logger = logging.getLogger(__name__)

REVIEW_TARGET_TYPES = {"property", "construction", "renovation", "provider"}
MIN_COMMENT_LENGTH = 10


def average_of(ratings: List[int]) -> RatingSummary:
    if not ratings:
        return RatingSummary(average=0.0, count=0)
    mean = Decimal(sum(ratings)) / Decimal(len(ratings))
    return RatingSummary(
        average=float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)),
        count=len(ratings),
    )


class ReviewStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def _row_to_review(self, row: sqlite3.Row) -> Review:
        return Review(
            id=row["id"],
            reviewer_id=row["reviewer_id"],
            target_id=row["target_id"],
            target_type=row["target_type"],
            rating=int(row["rating"]),
            comment=row["comment"],
            created_at=row["created_at"],
        )

    def create(self, reviewer_id: str, target_id: str, target_type: str, rating: int, comment: str) -> Review:
        cleaned = (comment or "").strip()
        if not reviewer_id or not target_id:
            raise StoreValidationError("reviewer_id and target_id are required")
        if target_type not in REVIEW_TARGET_TYPES:
            raise StoreValidationError("Invalid target_type. Allowed: property, construction, renovation, provider")
        if not 1 <= int(rating) <= 5:
            raise StoreValidationError("Rating must be between 1 and 5")
        if len(cleaned) < MIN_COMMENT_LENGTH:
            raise StoreValidationError(f"Comment must be at least {MIN_COMMENT_LENGTH} characters")

        review_id = f"rev_{uuid4().hex[:10]}"
        with self._db.session() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO reviews (id, reviewer_id, target_id, target_type, rating, comment, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (review_id, reviewer_id, target_id, target_type, int(rating), cleaned, utc_now_iso()),
                )
            except sqlite3.IntegrityError as exc:
                raise StoreConflictError("You have already reviewed this item") from exc
            row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
        logger.info("review_created target=%s/%s rating=%s", target_type, target_id, rating)
        return self._row_to_review(row)

    def list_by_target(self, target_id: str, target_type: str) -> List[Review]:
        with self._db.session() as conn:
            rows = self._db.fetch_ordered(
                conn,
                index="idx_reviews_target_created",
                sql="SELECT rv.*, rv.rowid AS seq FROM reviews rv WHERE rv.target_type = ? AND rv.target_id = ?",
                order_by="rv.created_at DESC, rv.rowid DESC",
                params=(target_type, target_id),
            )
        return [self._row_to_review(row) for row in rows]

    def average_rating(self, target_id: str, target_type: str) -> RatingSummary:
        return average_of([review.rating for review in self.list_by_target(target_id, target_type)])
