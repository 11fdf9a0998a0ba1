from app.container import build_container
from app.models import ServiceRequestCreate
from app.services.database import Database

from conftest import make_settings


def test_updates_are_newest_first(container):
    log = container.updates
    for status in ("Pending", "Accepted", "InProgress"):
        log.append("req_1", status, "provider_1", f"moved to {status}")

    assert [entry.status for entry in log.list("req_1")] == ["InProgress", "Accepted", "Pending"]
    assert log.list("req_other") == []


def test_repeated_idempotency_key_returns_first_entry(container):
    first = container.updates.append("req_1", "Accepted", "provider_1", "Accepted", idempotency_key="req_1:Accepted")
    again = container.updates.append("req_1", "Accepted", "provider_1", "Accepted", idempotency_key="req_1:Accepted")

    assert again.id == first.id
    assert len(container.updates.list("req_1")) == 1
    assert container.updates.find_by_key("req_1:Accepted").id == first.id
    assert container.updates.find_by_key("req_1:Completed") is None


def test_ordered_reads_fall_back_without_indexes(tmp_path, caplog):
    unindexed = build_container(make_settings(tmp_path, provision_indexes=False))
    for status in ("Pending", "Accepted", "InProgress", "Completed"):
        unindexed.updates.append("req_1", status, "provider_1")

    with caplog.at_level("WARNING"):
        statuses = [entry.status for entry in unindexed.updates.list("req_1")]

    assert statuses == ["Completed", "InProgress", "Accepted", "Pending"]
    assert "idx_project_updates_request_created" in caplog.text

    unindexed.db.provision_index("idx_project_updates_request_created")
    caplog.clear()
    with caplog.at_level("WARNING"):
        assert [entry.status for entry in unindexed.updates.list("req_1")] == statuses
    assert "sorting client-side" not in caplog.text


def test_request_listing_without_indexes(tmp_path, construction_payload):
    unindexed = build_container(make_settings(tmp_path, provision_indexes=False))
    ids = [unindexed.lifecycle.create_request(ServiceRequestCreate(**construction_payload())).id for _ in range(3)]
    assert [request.id for request in unindexed.requests.list_for_client("client_1")] == list(reversed(ids))


def test_schema_survives_reopen(tmp_path):
    db_path = str(tmp_path / "reopen.sqlite3")
    Database(db_path)
    reopened = Database(db_path)
    with reopened.session() as conn:
        tables = {row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"service_requests", "project_updates", "conversations", "messages", "notifications"} <= tables
