from app.models import ServiceRequestCreate
from app.services.change_feed import ChangeFeed


def test_subscription_receives_matching_events_in_order():
    feed = ChangeFeed()
    subscription = feed.subscribe("service_requests", lambda event: event.doc_id == "req_1")

    feed.publish("service_requests", "req_1", "created", {"status": "Pending"})
    feed.publish("service_requests", "req_2", "created", {"status": "Pending"})
    feed.publish("messages", "req_1", "created")
    feed.publish("service_requests", "req_1", "updated", {"status": "Accepted"})

    events = subscription.drain()
    assert [event.kind for event in events] == ["created", "updated"]
    assert events[0].seq < events[1].seq
    subscription.cancel()


def test_cancel_releases_subscription():
    feed = ChangeFeed()
    with feed.subscribe("notifications") as subscription:
        assert feed.active_count() == 1
    assert subscription.cancelled
    assert feed.active_count() == 0

    feed.publish("notifications", "ntf_1", "created")
    assert subscription.poll(timeout=0.01) is None
    assert list(subscription) == []


def test_poll_times_out_without_events():
    feed = ChangeFeed()
    subscription = feed.subscribe("conversations")
    assert subscription.poll(timeout=0.01) is None
    subscription.cancel()


def test_failing_predicate_does_not_break_publish():
    feed = ChangeFeed()
    broken = feed.subscribe("messages", lambda event: event.data["missing"])
    healthy = feed.subscribe("messages")

    feed.publish("messages", "msg_1", "created", {})
    assert broken.drain() == []
    assert len(healthy.drain()) == 1
    broken.cancel()
    healthy.cancel()


def test_events_are_published_only_after_commit(container, construction_payload):
    subscription = container.db.feed.subscribe(container.requests.collection)
    request = container.lifecycle.create_request(ServiceRequestCreate(**construction_payload()))
    container.lifecycle.accept(request.id, "provider_1")

    kinds = [(event.doc_id, event.kind, event.data["status"]) for event in subscription.drain()]
    assert kinds[0] == (request.id, "created", "Pending")
    assert (request.id, "updated", "Accepted") in kinds
    subscription.cancel()
    assert container.db.feed.active_count() == 0


def test_rolled_back_writes_publish_nothing(container, construction_payload):
    subscription = container.db.feed.subscribe(container.requests.collection)
    try:
        with container.db.session() as conn:
            container.requests.create(ServiceRequestCreate(**construction_payload()), conn=conn)
            raise RuntimeError("abort")
    except RuntimeError:
        pass

    assert subscription.drain() == []
    assert container.requests.list_for_client("client_1") == []
    subscription.cancel()
