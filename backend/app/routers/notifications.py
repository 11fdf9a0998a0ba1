from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from app.auth import assert_actor_authorized
from app.container import Container, get_container
from app.models import BroadcastRequest, DeviceTokenRegisterRequest, FanoutResult, NotificationRecord
from app.routers.common import event_stream, raise_store_http_error
from app.services.errors import StoreError

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    container: Container = Depends(get_container),
):
    try:
        return container.notifications.list_for_user(user_id, unread_only=unread_only)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/unread-count", response_model=dict)
def unread_count(user_id: str = Query(...), container: Container = Depends(get_container)):
    try:
        return {"user_id": user_id, "unread": container.notifications.unread_count(user_id)}
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.user_id, authorization, container.settings)
    try:
        container.notifications.register_device_token(payload.user_id, payload.device_token, payload.platform)
    except StoreError as exc:
        raise_store_http_error(exc)
    return {"status": "ok"}


@router.post("/read-all", response_model=dict)
def mark_all_read(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(user_id, authorization, container.settings)
    try:
        return {"status": "ok", "updated": container.notifications.mark_all_read(user_id)}
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/broadcast", response_model=FanoutResult)
def broadcast(
    payload: BroadcastRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.actor_user_id, authorization, container.settings)
    try:
        if not container.directory.has_role(payload.actor_user_id, "admin"):
            raise HTTPException(status_code=403, detail="Admin role required")
        recipient_ids = list(payload.recipient_ids)
        if payload.role:
            recipient_ids.extend(entry.user_id for entry in container.directory.list_by_role(payload.role))
        if not recipient_ids:
            raise HTTPException(status_code=400, detail="recipient_ids or role is required")
        return container.notifications.notify_many(
            recipient_ids,
            payload.title,
            payload.body,
            payload.kind,
            payload.link,
        )
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(user_id, authorization, container.settings)
    try:
        return container.notifications.mark_read(user_id, notification_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/events")
def notification_events(
    request: Request,
    user_id: str = Query(...),
    limit: Optional[int] = Query(default=None, ge=0),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(user_id, authorization, container.settings)
    subscription = container.db.feed.subscribe(
        container.notifications.collection,
        lambda event: event.data.get("recipient_id") == user_id,
    )
    return event_stream(
        request,
        subscription,
        lambda: {
            "unread": container.notifications.unread_count(user_id),
            "items": container.notifications.list_for_user(user_id),
        },
        limit=limit,
    )
