import collections
import json
import time

import pytest

from logload.delivery import (
    DeliveryReport,
    DeliveryVerifierError,
    LogDeliveryVerifier,
    create_consumer,
    parse_log_record,
)

TopicPartition = collections.namedtuple("TopicPartition", "topic partition")
Message = collections.namedtuple("Message", "key value")


def service_log(message, level="INFO", service="service1"):
    return json.dumps(
        {"timestamp": "2024-05-01T10:00:00Z", "message": message, "level": level, "service": service}
    )


class FakeConsumer:
    """Joins the group after `assign_after` polls, like a rebalancing KafkaConsumer."""

    def __init__(self, batches, assign_after=0, never_assign=False):
        self._batches = list(batches)
        self._assign_after = assign_after
        self._never_assign = never_assign
        self.polls = 0
        self.positioned = []
        self.closed = False

    def assignment(self):
        if self._never_assign or self.polls < self._assign_after:
            return set()
        return {TopicPartition("logs", 0)}

    def position(self, partition):
        self.positioned.append(partition)
        return 0

    def poll(self, timeout_ms=0):
        self.polls += 1
        if self._batches:
            return {TopicPartition("logs", 0): [Message(None, v) for v in self._batches.pop(0)]}
        time.sleep(0.01)
        return {}

    def deliver(self, values):
        self._batches.append(values)

    def close(self):
        self.closed = True


def test_parse_log_record():
    record = parse_log_record(service_log("CacheHit", level="info"))
    assert record.message == "CacheHit"
    assert record.level == "INFO"
    assert record.service == "service1"
    assert parse_log_record(service_log("X").encode("utf-8")).message == "X"


@pytest.mark.parametrize("value", ["[2024-05-01T10:00] CacheHit", "[]", json.dumps({"level": "INFO"})])
def test_parse_log_record_ignores_foreign_lines(value):
    assert parse_log_record(value) is None


def test_report_matches_by_message():
    report = DeliveryReport(sent={"CacheHit": 3, "UserLogin": 1}, received={"CacheHit": 2, "Other": 4})
    assert report.missing == {"CacheHit": 1, "UserLogin": 1}
    assert report.total_sent == 4
    assert report.total_received == 2
    assert not report.complete
    assert report.to_dict()["missing"] == {"CacheHit": 1, "UserLogin": 1}


def test_verifier_counts_deliveries(tmp_path):
    consumer = FakeConsumer(
        [
            [service_log("CacheHit"), service_log("UserLogin")],
            ["[2024-05-01T10:00] plain text line", service_log("CacheHit")],
        ]
    )
    verifier = LogDeliveryVerifier(
        broker="kafka:9092",
        log_path=tmp_path / "delivery.log",
        consumer_factory=lambda broker, topic, group_id: consumer,
    )
    for message in ("CacheHit", "UserLogin", "CacheHit"):
        verifier.register_sent(message, "WARN")

    verifier.start()
    try:
        assert verifier.wait_for_pending(timeout_s=5.0)
    finally:
        verifier.stop()

    report = verifier.report()
    assert report.complete
    assert report.sent == {"CacheHit": 2, "UserLogin": 1}
    assert report.unparsed == 1
    assert consumer.closed
    log_text = (tmp_path / "delivery.log").read_text(encoding="utf-8")
    assert "message='UserLogin'" in log_text


def test_wait_for_pending_times_out(tmp_path):
    verifier = LogDeliveryVerifier(
        broker="kafka:9092",
        log_path=tmp_path / "delivery.log",
        consumer_factory=lambda broker, topic, group_id: FakeConsumer([]),
    )
    verifier.register_sent("CacheHit", "INFO")
    verifier.start()
    try:
        assert not verifier.wait_for_pending(timeout_s=0.3)
    finally:
        verifier.stop()
    assert verifier.report().missing == {"CacheHit": 1}


def test_create_consumer_gives_up_after_deadline(monkeypatch):
    from kafka.errors import NoBrokersAvailable

    import logload.delivery as delivery

    def refuse(*args, **kwargs):
        raise NoBrokersAvailable()

    monkeypatch.setattr(delivery, "KafkaConsumer", refuse)
    with pytest.raises(DeliveryVerifierError):
        create_consumer("nowhere:9092", "logs", "group", connect_timeout_s=0)


def test_start_returns_only_after_partitions_are_assigned(tmp_path):
    consumer = FakeConsumer([[service_log("Stale")]], assign_after=3)
    verifier = LogDeliveryVerifier(
        broker="kafka:9092",
        log_path=tmp_path / "delivery.log",
        consumer_factory=lambda broker, topic, group_id: consumer,
    )
    verifier.start()
    try:
        assert consumer.polls >= 3
        assert consumer.positioned == [TopicPartition("logs", 0)]
        assert verifier.report().received == {"Stale": 1}

        verifier.register_sent("CacheHit", "INFO")
        consumer.deliver([service_log("CacheHit")])
        assert verifier.wait_for_pending(timeout_s=5.0)
    finally:
        verifier.stop()


def test_start_gives_up_when_group_never_assigns(tmp_path):
    consumer = FakeConsumer([], never_assign=True)
    verifier = LogDeliveryVerifier(
        broker="kafka:9092",
        log_path=tmp_path / "delivery.log",
        consumer_factory=lambda broker, topic, group_id: consumer,
        assignment_timeout_s=0.1,
    )
    with pytest.raises(DeliveryVerifierError):
        verifier.start()
    assert consumer.closed
