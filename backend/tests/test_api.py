import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.routers.common import event_stream
from app.services.errors import TransientStoreError


def _create(client, construction_payload, **extra):
    response = client.post("/requests", json=construction_payload(**extra))
    assert response.status_code == 200
    return response.json()


def test_health_ok(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ready_reports_indexes_and_push(client):
    payload = client.get("/ready").json()
    assert payload["status"] == "ready"
    assert payload["push_configured"] is False
    assert payload["missing_indexes"] == []


def test_auth_login_and_me(client):
    login = client.post("/auth/login", json={"user_id": "user_2", "password": "broker-demo"})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user_id"] == "user_2"


def test_auth_rejects_bad_password_and_token(client):
    assert client.post("/auth/login", json={"user_id": "user_2", "password": "wrong"}).status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Bearer not.a-token"}).status_code == 401


def test_token_must_match_actor(client, construction_payload):
    token = client.post("/auth/login", json={"user_id": "client_9", "password": "broker-demo"}).json()["access_token"]
    response = client.post("/requests", json=construction_payload(), headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403


def test_unknown_request_is_404(client):
    assert client.get("/requests/req_missing").status_code == 404
    response = client.post("/requests/req_missing/accept", json={"actor_user_id": "provider_1"})
    assert response.status_code == 404


def test_invalid_details_are_422(client, construction_payload):
    payload = construction_payload()
    payload["details"] = {"request_type": "rental", "property_id": "prop_1"}
    assert client.post("/requests", json=payload).status_code == 422


def test_second_accept_is_conflict(client, construction_payload):
    request = _create(client, construction_payload)
    first = client.post(f"/requests/{request['id']}/accept", json={"actor_user_id": "provider_1"})
    second = client.post(f"/requests/{request['id']}/accept", json={"actor_user_id": "provider_2"})

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["detail"] == "Request already assigned"


def test_invalid_transition_is_distinct_409(client, construction_payload):
    request = _create(client, construction_payload)
    response = client.post(f"/requests/{request['id']}/complete", json={"actor_user_id": "provider_1"})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "invalid_transition"


def test_permission_errors_are_403(client, construction_payload):
    request = _create(client, construction_payload)
    own = client.post(f"/requests/{request['id']}/accept", json={"actor_user_id": "client_1"})
    assert own.status_code == 403

    delete = client.delete(f"/requests/{request['id']}", params={"actor_user_id": "provider_1"})
    assert delete.status_code == 403


def test_delete_open_request(client, construction_payload):
    request = _create(client, construction_payload)
    response = client.delete(f"/requests/{request['id']}", params={"actor_user_id": "client_1"})
    assert response.status_code == 200
    assert client.get(f"/requests/{request['id']}").status_code == 404


def test_list_requests_by_status(client, construction_payload):
    open_request = _create(client, construction_payload)
    taken = _create(client, construction_payload)
    client.post(f"/requests/{taken['id']}/accept", json={"actor_user_id": "provider_1"})

    pending = client.get("/requests", params={"status": "Pending"}).json()
    assert [item["id"] for item in pending] == [open_request["id"]]
    mine = client.get("/requests", params={"client_id": "client_1"}).json()
    assert [item["id"] for item in mine] == [taken["id"], open_request["id"]]


def test_conversation_endpoints(client):
    started = client.post("/conversations", json={"user_id": "client_1", "other_user_id": "provider_1"})
    assert started.status_code == 200
    conversation_id = started.json()["id"]

    assert client.post("/conversations", json={"user_id": "client_1", "other_user_id": "client_1"}).status_code == 400
    outsider = client.get(f"/conversations/{conversation_id}/messages", params={"user_id": "stranger"})
    assert outsider.status_code == 403
    listed = client.get("/conversations", params={"user_id": "provider_1"}).json()
    assert [item["id"] for item in listed] == [conversation_id]


def test_duplicate_review_is_conflict(client):
    body = {
        "reviewer_id": "client_1",
        "target_id": "prop_1",
        "target_type": "property",
        "rating": 4,
        "comment": "Spacious and quiet",
    }
    assert client.post("/reviews", json=body).status_code == 200
    assert client.post("/reviews", json=body).status_code == 409
    assert client.post("/reviews", json={**body, "reviewer_id": "client_2", "rating": 9}).status_code == 400


def test_broadcast_requires_admin(client, container):
    body = {"actor_user_id": "admin_1", "role": "provider", "title": "Maintenance", "body": "Downtime tonight"}
    assert client.post("/notifications/broadcast", json=body).status_code == 403

    container.directory.upsert("admin_1", "admin")
    container.directory.upsert("provider_1", "provider", ["construction"])
    container.directory.upsert("provider_2", "provider", ["rental"])
    response = client.post("/notifications/broadcast", json=body)
    assert response.status_code == 200
    assert sorted(item["recipient_id"] for item in response.json()["delivered"]) == ["provider_1", "provider_2"]
    assert response.json()["failed"] == []


def test_request_event_stream_sends_snapshot(client, container, construction_payload):
    request = _create(client, construction_payload)
    with client.stream("GET", f"/requests/{request['id']}/events", params={"limit": 0}) as response:
        assert response.status_code == 200
        body = "".join(response.iter_text())

    assert f'"id": "{request["id"]}"' in body
    assert body.rstrip().endswith("data: [DONE]")
    assert container.db.feed.active_count() == 0


class _DisconnectedRequest:
    async def is_disconnected(self):
        return True


def test_event_stream_cancels_subscription_on_disconnect(container):
    subscription = container.db.feed.subscribe(container.requests.collection)
    response = event_stream(_DisconnectedRequest(), subscription, lambda: {"open": True})

    async def consume():
        return [chunk async for chunk in response.body_iterator]

    chunks = asyncio.run(consume())
    assert chunks[0] == 'data: {"type": "snapshot", "data": {"open": true}}\n\n'
    assert chunks[-1] == "data: [DONE]\n\n"
    assert subscription.cancelled
    assert container.db.feed.active_count() == 0


def test_broadcast_maps_directory_outage_to_503(client, container, monkeypatch):
    def unavailable(*args, **kwargs):
        raise TransientStoreError("Store unavailable, please retry")

    monkeypatch.setattr(container.directory, "has_role", unavailable)
    body = {"actor_user_id": "admin_1", "recipient_ids": ["provider_1"], "title": "Maintenance", "body": "Downtime"}
    assert client.post("/notifications/broadcast", json=body).status_code == 503


def test_status_filter_applies_to_client_and_provider_listings(client, construction_payload):
    open_request = _create(client, construction_payload)
    taken = _create(client, construction_payload)
    client.post(f"/requests/{taken['id']}/accept", json={"actor_user_id": "provider_1"})

    accepted_for_client = client.get("/requests", params={"client_id": "client_1", "status": "Accepted"}).json()
    assert [item["id"] for item in accepted_for_client] == [taken["id"]]
    pending_for_provider = client.get("/requests", params={"provider_id": "provider_1", "status": "Pending"}).json()
    assert [item["id"] for item in pending_for_provider] == [open_request["id"]]
