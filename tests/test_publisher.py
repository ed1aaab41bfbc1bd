import threading
import time
from unittest.mock import MagicMock

import pytest

from forwarder.features.broker import MqttBrokerClient
from forwarder.features.delivery import DeliveryQueue
from forwarder.features.publisher import Publisher, encode_payload
from forwarder.features.stats import DeliveryCounters

from conftest import FakeBroker


@pytest.fixture
def stop():
    event = threading.Event()
    yield event
    event.set()


def make_publisher(broker, stop, maxsize=1):
    q = DeliveryQueue(stop, maxsize=maxsize, poll_interval=0.02)
    counters = DeliveryCounters()
    publisher = Publisher(q, broker, "mataelang/sensor/v3/abc123", counters, qos=0, retain=True, stop_event=stop)
    return q, counters, publisher


def test_encode_payload_is_compact_json():
    assert encode_payload({"msg": "x", "sensor_id": "s1"}) == b'{"msg":"x","sensor_id":"s1"}'


def test_publish_uses_topic_qos_and_retain(stop):
    broker = FakeBroker()
    q, counters, publisher = make_publisher(broker, stop)

    assert publisher.publish({"msg": "a", "sensor_id": "s1"}) is True

    assert broker.calls == [("mataelang/sensor/v3/abc123", {"msg": "a", "sensor_id": "s1"}, 0, True)]
    assert counters.peek() == (1, 1)


def test_failed_publish_is_counted_and_dropped(stop):
    broker = FakeBroker(fail_on={"bad"})
    q, counters, publisher = make_publisher(broker, stop)

    assert publisher.publish({"msg": "bad"}) is False
    assert publisher.publish({"msg": "good"}) is True

    assert counters.snapshot_and_reset() == (2, 1)
    # no retry
    assert [r["msg"] for r in broker.records] == ["bad", "good"]


def test_unserializable_record_counts_as_failure(stop):
    broker = FakeBroker()
    q, counters, publisher = make_publisher(broker, stop)

    assert publisher.publish({"msg": object()}) is False
    assert broker.calls == []
    assert counters.peek() == (1, 0)


def test_non_finite_numbers_count_as_failure(stop):
    broker = FakeBroker()
    q, counters, publisher = make_publisher(broker, stop)

    assert publisher.publish({"score": float("nan")}) is False
    assert publisher.publish({"score": float("inf")}) is False
    assert broker.calls == []
    assert counters.peek() == (2, 0)


def test_rejected_topic_does_not_kill_the_loop(stop):
    paho = MagicMock()
    paho.publish.side_effect = ValueError("Publish topic cannot contain wildcards.")
    broker = MqttBrokerClient(client_factory=lambda _cid: paho)
    q = DeliveryQueue(stop, maxsize=1, poll_interval=0.02)
    counters = DeliveryCounters()
    publisher = Publisher(q, broker, "mataelang/sensor/v3/site#1", counters, stop_event=stop)
    publisher.start()

    assert q.put({"msg": "a"})
    assert q.put({"msg": "b"})
    deadline = time.time() + 2.0
    while counters.peek()[0] < 2 and time.time() < deadline:
        time.sleep(0.01)

    assert counters.peek() == (2, 0)
    assert publisher._thread.is_alive()
    publisher.stop()


def test_fifo_order_under_slow_acknowledgement(stop):
    broker = FakeBroker(ack_delay=0.05)
    q, counters, publisher = make_publisher(broker, stop)
    publisher.start()

    for name in ("R1", "R2", "R3"):
        assert q.put({"msg": name})

    records = broker.wait_for(3)
    publisher.stop(timeout=2.0)

    assert [r["msg"] for r in records] == ["R1", "R2", "R3"]
    assert counters.peek() == (3, 3)


def test_full_queue_blocks_producer(stop):
    q = DeliveryQueue(stop, maxsize=1, poll_interval=0.02)
    assert q.put({"msg": "first"})

    accepted = threading.Event()

    def producer():
        q.put({"msg": "second"})
        accepted.set()

    t = threading.Thread(target=producer, daemon=True)
    t.start()

    # nobody is consuming, so the second put must wait
    assert not accepted.wait(0.2)

    assert q.get() == {"msg": "first"}
    assert accepted.wait(1.0)
    assert q.get() == {"msg": "second"}


def test_blocked_put_gives_up_on_stop():
    stop = threading.Event()
    q = DeliveryQueue(stop, maxsize=1, poll_interval=0.02)
    q.put({"msg": "first"})
    result = []

    t = threading.Thread(target=lambda: result.append(q.put({"msg": "second"})), daemon=True)
    t.start()
    time.sleep(0.1)
    stop.set()
    t.join(timeout=1.0)

    assert result == [False]


def test_queue_needs_a_slot():
    with pytest.raises(ValueError):
        DeliveryQueue(threading.Event(), maxsize=0)


def test_stop_flushes_queued_records():
    stop = threading.Event()
    broker = FakeBroker()
    q, counters, publisher = make_publisher(broker, stop, maxsize=4)
    for name in ("a", "b", "c"):
        q.put({"msg": name})

    # stopped before the loop ever picks anything up
    publisher._running = True
    stop.set()
    publisher._run_loop()

    assert [r["msg"] for r in broker.records] == ["a", "b", "c"]
    assert counters.peek() == (3, 3)


def test_stop_when_not_running_is_noop(stop):
    q, counters, publisher = make_publisher(FakeBroker(), stop)
    assert publisher.stop() is None
    assert not stop.is_set()


def test_start_twice(stop):
    q, counters, publisher = make_publisher(FakeBroker(), stop)
    assert publisher.start() == "publisher started"
    assert publisher.start() == "publisher already running"
    publisher.stop()
    assert not publisher.running
