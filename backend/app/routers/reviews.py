from typing import Optional

from fastapi import APIRouter, Depends, Header

from app.auth import assert_actor_authorized
from app.container import Container, get_container
from app.models import RatingSummary, Review, ReviewCreateRequest, ReviewTargetType
from app.routers.common import raise_store_http_error
from app.services.errors import StoreError

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.post("", response_model=Review)
def create_review(
    payload: ReviewCreateRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.reviewer_id, authorization, container.settings)
    try:
        return container.reviews.create(
            payload.reviewer_id,
            payload.target_id,
            payload.target_type,
            payload.rating,
            payload.comment,
        )
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{target_type}/{target_id}", response_model=list[Review])
def list_reviews(target_type: ReviewTargetType, target_id: str, container: Container = Depends(get_container)):
    try:
        return container.reviews.list_by_target(target_id, target_type)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{target_type}/{target_id}/summary", response_model=RatingSummary)
def rating_summary(target_type: ReviewTargetType, target_id: str, container: Container = Depends(get_container)):
    try:
        return container.reviews.average_rating(target_id, target_type)
    except StoreError as exc:
        raise_store_http_error(exc)
