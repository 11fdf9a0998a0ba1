from concurrent.futures import ThreadPoolExecutor

import pytest

from app.services.conversations import SNIPPET_LENGTH, conversation_id_for
from app.services.errors import StoreNotFoundError, StorePermissionError, StoreValidationError


def test_find_or_create_is_order_independent(container):
    first = container.conversations.find_or_create("client_1", "provider_1")
    second = container.conversations.find_or_create("provider_1", "client_1")
    assert first.id == second.id == conversation_id_for("client_1", "provider_1")
    assert first.participant_ids == ["client_1", "provider_1"]
    assert len(container.conversations.list_for_user("client_1")) == 1


def test_concurrent_find_or_create_converges(container):
    pairs = [("alice", "bob"), ("bob", "alice")] * 8
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda pair: container.conversations.find_or_create(*pair), pairs))

    assert {conversation.id for conversation in results} == {conversation_id_for("alice", "bob")}
    assert len(container.conversations.list_for_user("alice")) == 1


def test_self_conversation_is_rejected(container):
    with pytest.raises(StoreValidationError):
        container.conversations.find_or_create("client_1", "client_1")
    with pytest.raises(StoreValidationError):
        container.conversations.find_or_create("client_1", " ")


def test_unread_counts_follow_messages(container):
    conversation = container.conversations.find_or_create("client_1", "provider_1")
    matcher = container.conversations

    matcher.append_message(conversation.id, "client_1", "Hello, when can you start?")
    _, updated = matcher.append_message(conversation.id, "client_1", "Also, do you handle permits?")
    assert updated.unread_counts == {"client_1": 0, "provider_1": 2}

    _, updated = matcher.append_message(conversation.id, "provider_1", "Next Monday, and yes.")
    assert updated.unread_counts == {"client_1": 1, "provider_1": 0}
    assert updated.last_message_snippet == "Next Monday, and yes."

    read = matcher.mark_read(conversation.id, "client_1")
    assert read.unread_counts == {"client_1": 0, "provider_1": 0}


def test_mark_read_only_touches_reader(container):
    conversation = container.conversations.find_or_create("client_1", "provider_1")
    container.conversations.append_message(conversation.id, "client_1", "Ping")
    container.conversations.append_message(conversation.id, "provider_1", "Pong")
    container.conversations.append_message(conversation.id, "provider_1", "Pong again")

    read = container.conversations.mark_read(conversation.id, "provider_1")
    assert read.unread_counts == {"client_1": 2, "provider_1": 0}


def test_messages_are_returned_oldest_first(container):
    conversation = container.conversations.find_or_create("client_1", "provider_1")
    for idx in range(5):
        container.conversations.append_message(conversation.id, "client_1", f"message {idx}")

    messages = container.conversations.list_messages(conversation.id, "provider_1")
    assert [message.text for message in messages] == [f"message {idx}" for idx in range(5)]
    assert all(message.read is False for message in messages)


def test_mark_read_flips_only_readers_incoming_messages(container):
    conversation = container.conversations.find_or_create("client_1", "provider_1")
    container.conversations.append_message(conversation.id, "client_1", "Can you quote by Friday?")
    container.conversations.append_message(conversation.id, "provider_1", "Yes, sending it Thursday.")

    container.conversations.mark_read(conversation.id, "provider_1")

    flags = {message.sender_id: message.read for message in container.conversations.list_messages(conversation.id, "client_1")}
    assert flags == {"client_1": True, "provider_1": False}


def test_concurrent_messages_are_all_counted(container):
    conversation = container.conversations.find_or_create("client_1", "provider_1")
    texts = [f"burst {idx}" for idx in range(12)]
    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(lambda text: container.conversations.append_message(conversation.id, "client_1", text), texts))

    stored = container.conversations.get(conversation.id)
    assert stored.unread_counts["provider_1"] == len(texts)
    assert sorted(message.text for message in container.conversations.list_messages(conversation.id, "client_1")) == sorted(texts)


def test_snippet_is_truncated(container):
    conversation = container.conversations.find_or_create("client_1", "provider_1")
    _, updated = container.conversations.append_message(conversation.id, "client_1", "x" * 250)
    assert len(updated.last_message_snippet) == SNIPPET_LENGTH


def test_non_participants_are_refused(container):
    conversation = container.conversations.find_or_create("client_1", "provider_1")
    with pytest.raises(StorePermissionError):
        container.conversations.append_message(conversation.id, "stranger", "Hi")
    with pytest.raises(StorePermissionError):
        container.conversations.list_messages(conversation.id, "stranger")
    with pytest.raises(StoreNotFoundError):
        container.conversations.mark_read("conv_missing", "client_1")
    with pytest.raises(StoreValidationError):
        container.conversations.append_message(conversation.id, "client_1", "   ")
