from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from app.auth import assert_actor_authorized
from app.container import Container, get_container
from app.models import (
    ProjectUpdate,
    QuoteSubmitRequest,
    RequestActionRequest,
    RequestStatus,
    ServiceRequest,
    ServiceRequestCreate,
)
from app.routers.common import event_stream, raise_store_http_error
from app.services.errors import StoreError

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequest)
def create_request(
    payload: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.client_id, authorization, container.settings)
    try:
        return container.lifecycle.create_request(payload)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("", response_model=list[ServiceRequest])
def list_requests(
    client_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    status: Optional[RequestStatus] = Query(default=None),
    container: Container = Depends(get_container),
):
    try:
        if client_id:
            return container.requests.list_for_client(client_id, status=status)
        if provider_id:
            return container.requests.list_for_provider(provider_id, status=status)
        return container.requests.list_all(status=status)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{request_id}", response_model=ServiceRequest)
def get_request(request_id: str, container: Container = Depends(get_container)):
    try:
        return container.requests.get(request_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.delete("/{request_id}", response_model=dict)
def delete_request(
    request_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(actor_user_id, authorization, container.settings)
    try:
        container.requests.delete(request_id, actor_user_id)
    except StoreError as exc:
        raise_store_http_error(exc)
    return {"status": "deleted", "id": request_id}


@router.post("/{request_id}/accept", response_model=ServiceRequest)
def accept_request(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.actor_user_id, authorization, container.settings)
    try:
        return container.lifecycle.accept(request_id, payload.actor_user_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{request_id}/reject", response_model=ServiceRequest)
def reject_request(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.actor_user_id, authorization, container.settings)
    try:
        return container.lifecycle.reject(request_id, payload.actor_user_id, payload.note)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{request_id}/quote", response_model=ServiceRequest)
def submit_quote(
    request_id: str,
    payload: QuoteSubmitRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.actor_user_id, authorization, container.settings)
    try:
        return container.lifecycle.submit_quote(request_id, payload.actor_user_id, payload.amount)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{request_id}/progress", response_model=ServiceRequest)
def record_progress(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.actor_user_id, authorization, container.settings)
    try:
        return container.lifecycle.record_progress(request_id, payload.actor_user_id, payload.note)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{request_id}/complete", response_model=ServiceRequest)
def complete_request(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.actor_user_id, authorization, container.settings)
    try:
        return container.lifecycle.complete(request_id, payload.actor_user_id, payload.note)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{request_id}/cancel", response_model=ServiceRequest)
def cancel_request(
    request_id: str,
    payload: RequestActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.actor_user_id, authorization, container.settings)
    try:
        return container.lifecycle.cancel(request_id, payload.actor_user_id, payload.note)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{request_id}/updates", response_model=list[ProjectUpdate])
def list_updates(request_id: str, container: Container = Depends(get_container)):
    try:
        container.requests.get(request_id)
        return container.updates.list(request_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{request_id}/events")
def request_events(
    request: Request,
    request_id: str,
    limit: Optional[int] = Query(default=None, ge=0),
    container: Container = Depends(get_container),
):
    try:
        container.requests.get(request_id)
    except StoreError as exc:
        raise_store_http_error(exc)
    subscription = container.db.feed.subscribe(
        container.requests.collection,
        lambda event: event.doc_id == request_id,
    )
    return event_stream(request, subscription, lambda: container.requests.get(request_id), limit=limit)
