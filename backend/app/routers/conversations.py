from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from app.auth import assert_actor_authorized
from app.container import Container, get_container
from app.models import (
    Conversation,
    ConversationReadRequest,
    ConversationStartRequest,
    Message,
    MessageSendRequest,
    MessageSendResponse,
)
from app.routers.common import event_stream, raise_store_http_error
from app.services.errors import StoreError

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.post("", response_model=Conversation)
def start_conversation(
    payload: ConversationStartRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.user_id, authorization, container.settings)
    try:
        return container.conversations.find_or_create(payload.user_id, payload.other_user_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("", response_model=list[Conversation])
def list_conversations(user_id: str = Query(...), container: Container = Depends(get_container)):
    try:
        return container.conversations.list_for_user(user_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{conversation_id}/messages", response_model=list[Message])
def list_messages(
    conversation_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(user_id, authorization, container.settings)
    try:
        return container.conversations.list_messages(conversation_id, user_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{conversation_id}/messages", response_model=MessageSendResponse)
def send_message(
    conversation_id: str,
    payload: MessageSendRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.sender_id, authorization, container.settings)
    try:
        message, conversation = container.conversations.append_message(conversation_id, payload.sender_id, payload.text)
    except StoreError as exc:
        raise_store_http_error(exc)
    return MessageSendResponse(message=message, conversation=conversation)


@router.post("/{conversation_id}/read", response_model=Conversation)
def mark_conversation_read(
    conversation_id: str,
    payload: ConversationReadRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(payload.user_id, authorization, container.settings)
    try:
        return container.conversations.mark_read(conversation_id, payload.user_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{conversation_id}/events")
def conversation_events(
    request: Request,
    conversation_id: str,
    user_id: str = Query(...),
    limit: Optional[int] = Query(default=None, ge=0),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    assert_actor_authorized(user_id, authorization, container.settings)
    try:
        container.conversations.list_messages(conversation_id, user_id)
    except StoreError as exc:
        raise_store_http_error(exc)
    subscription = container.db.feed.subscribe(
        container.conversations.messages_collection,
        lambda event: event.data.get("conversation_id") == conversation_id,
    )
    return event_stream(
        request,
        subscription,
        lambda: container.conversations.list_messages(conversation_id, user_id),
        limit=limit,
    )
