from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from app.auth import assert_actor_authorized
from app.container import Container, get_container
from app.models import DirectoryEntry, DirectoryRole, RequestType
from app.routers.common import raise_store_http_error
from app.services.errors import StoreError

router = APIRouter(prefix="/directory", tags=["directory"])


@router.put("/users", response_model=DirectoryEntry)
def upsert_user(
    payload: DirectoryEntry,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.user_id, authorization, container.settings)
    try:
        return container.directory.upsert(payload.user_id, payload.role, payload.service_types)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/users", response_model=list[DirectoryEntry])
def list_users(
    role: DirectoryRole = Query(default="provider"),
    service_type: Optional[RequestType] = Query(default=None),
    container: Container = Depends(get_container),
):
    try:
        return container.directory.list_by_role(role, service_type=service_type)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/users/{user_id}", response_model=DirectoryEntry)
def get_user(user_id: str, container: Container = Depends(get_container)):
    try:
        return container.directory.get(user_id)
    except StoreError as exc:
        raise_store_http_error(exc)
