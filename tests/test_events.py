import json

from shopkeep.events import NEW_ORDER, EventBus, format_sse_event, new_order


def parse_sse(chunk):
    fields = dict(line.split(": ", 1) for line in chunk.strip().splitlines())
    fields["data"] = json.loads(fields["data"])
    return fields


def test_format_sse_event():
    fields = parse_sse(format_sse_event(NEW_ORDER, {"id": "abc"}, event_id="abc"))

    assert fields["id"] == "abc"
    assert fields["event"] == NEW_ORDER
    assert fields["data"]["payload"] == {"id": "abc"}


def test_publish_reaches_subscribers_and_signal_receivers():
    bus = EventBus()
    subscriber = bus.subscribe()
    received = []

    def on_new_order(sender, payload):
        received.append((sender, payload))

    with new_order.connected_to(on_new_order):
        delivered = bus.publish(NEW_ORDER, {"id": "o1"})

    assert delivered == 1
    assert subscriber.get_nowait() == (NEW_ORDER, {"id": "o1"})
    assert received == [(bus, {"id": "o1"})]


def test_slow_subscriber_drops_events_instead_of_blocking():
    bus = EventBus(queue_size=1)
    subscriber = bus.subscribe()

    assert bus.publish(NEW_ORDER, {"id": "o1"}) == 1
    assert bus.publish(NEW_ORDER, {"id": "o2"}) == 0
    assert subscriber.get_nowait() == (NEW_ORDER, {"id": "o1"})
    assert subscriber.empty()


def test_failing_receiver_does_not_break_publish():
    bus = EventBus()

    def broken_receiver(sender, payload):
        raise RuntimeError("dashboard bug")

    with new_order.connected_to(broken_receiver):
        assert bus.publish(NEW_ORDER, {"id": "o1"}) == 0


def test_stream_emits_events_and_heartbeats_then_unsubscribes():
    bus = EventBus()
    stream = bus.stream(heartbeat_seconds=0.01)

    assert parse_sse(next(stream))["event"] == "connected"
    assert bus.subscriber_count == 1

    assert parse_sse(next(stream))["event"] == "heartbeat"

    bus.publish(NEW_ORDER, {"id": "o1"})
    fields = parse_sse(next(stream))
    assert fields["event"] == NEW_ORDER
    assert fields["id"] == "o1"

    stream.close()
    assert bus.subscriber_count == 0


def test_failing_receiver_does_not_starve_other_receivers(caplog):
    bus = EventBus()
    received = []

    def broken_receiver(sender, payload):
        raise RuntimeError("dashboard bug")

    def audit_receiver(sender, payload):
        received.append(payload)

    with new_order.connected_to(broken_receiver), new_order.connected_to(audit_receiver):
        bus.publish(NEW_ORDER, {"id": "o1"})

    assert received == [{"id": "o1"}]
    assert "receiver failed: dashboard bug" in caplog.text
