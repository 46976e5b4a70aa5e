from __future__ import annotations

import collections
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from kafka import KafkaConsumer
from kafka.errors import KafkaError, NoBrokersAvailable

DEFAULT_LOG_PATH = Path("results") / "delivery.log"
DEFAULT_TOPIC = "logs"
POLL_TIMEOUT_MS_DEFAULT = 1_000
ASSIGNMENT_TIMEOUT_S_DEFAULT = 30.0

LOGGER = logging.getLogger("logload.delivery")


class DeliveryVerifierError(Exception):
    """Raised when the delivery verifier cannot reach Kafka."""


@dataclass(frozen=True)
class LogRecord:
    message: str
    level: str
    service: str
    timestamp: str | None = None


@dataclass
class DeliveryReport:
    sent: dict[str, int] = field(default_factory=dict)
    received: dict[str, int] = field(default_factory=dict)
    unparsed: int = 0

    @property
    def total_sent(self) -> int:
        return sum(self.sent.values())

    @property
    def total_received(self) -> int:
        return sum(min(self.received.get(m, 0), n) for m, n in self.sent.items())

    @property
    def missing(self) -> dict[str, int]:
        return {
            message: count - self.received.get(message, 0)
            for message, count in self.sent.items()
            if count > self.received.get(message, 0)
        }

    @property
    def complete(self) -> bool:
        return not self.missing

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": dict(self.sent),
            "received": dict(self.received),
            "missing": self.missing,
            "unparsed": self.unparsed,
            "complete": self.complete,
        }


def configure_logger(log_path: Path) -> logging.Logger:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger("logload.delivery.records")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler.setFormatter(formatter)

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def create_consumer(
    broker: str,
    topic: str,
    group_id: str,
    connect_timeout_s: float = 60.0,
) -> KafkaConsumer:
    backoff = 1.0
    max_backoff = 10.0
    deadline = time.time() + connect_timeout_s

    while True:
        try:
            return KafkaConsumer(
                topic,
                bootstrap_servers=broker,
                group_id=group_id,
                value_deserializer=lambda v: v.decode("utf-8", errors="replace"),
                key_deserializer=lambda v: v.decode("utf-8") if v else None,
                enable_auto_commit=True,
                auto_offset_reset="latest",
            )
        except NoBrokersAvailable as exc:
            if time.time() >= deadline:
                raise DeliveryVerifierError(
                    f"failed to connect to Kafka broker {broker} within "
                    f"{connect_timeout_s:.0f} seconds"
                ) from exc

            time.sleep(backoff)
            backoff = min(backoff * 1.5, max_backoff)


def parse_log_record(value: Any) -> Optional[LogRecord]:
    """Decode a JSON log line as published by the logging endpoint.

    Plain-text lines such as ``[2024-01-01T00:00] message`` return None.
    """
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if not isinstance(value, dict) or "message" not in value:
        return None
    return LogRecord(
        message=str(value.get("message")),
        level=str(value.get("level") or "INFO").upper(),
        service=str(value.get("service") or "unknown"),
        timestamp=value.get("timestamp"),
    )


def format_record(record: LogRecord, partition: int | None = None) -> str:
    parts = [f"[{record.timestamp}]", f"service={record.service}", f"level={record.level}"]
    if partition is not None:
        parts.append(f"partition={partition}")
    parts.append(f"message={record.message!r}")
    return " ".join(parts)


class LogDeliveryVerifier:
    """Counts log lines seen on the Kafka topic against those posted over HTTP.

    The logging endpoint rewrites every level to INFO before publishing, so
    sent and received lines are matched on the message name only.
    """

    def __init__(
        self,
        broker: str,
        topic: str = DEFAULT_TOPIC,
        group_id: str = "logload-delivery",
        poll_timeout_ms: int = POLL_TIMEOUT_MS_DEFAULT,
        log_path: Path = DEFAULT_LOG_PATH,
        consumer_factory=None,
        assignment_timeout_s: float = ASSIGNMENT_TIMEOUT_S_DEFAULT,
    ) -> None:
        self._broker = broker
        self._topic = topic
        self._group_id = group_id
        self._poll_timeout_ms = poll_timeout_ms
        self._log_path = log_path
        self._consumer_factory = consumer_factory or create_consumer
        self._assignment_timeout_s = assignment_timeout_s

        self._lock = threading.Lock()
        self._sent: collections.Counter[str] = collections.Counter()
        self._received: collections.Counter[str] = collections.Counter()
        self._unparsed = 0
        self._consumer = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._logger: logging.Logger | None = None

    def start(self) -> None:
        """Join the consumer group and start consuming in the background.

        Returns only once partitions are assigned and their offsets resolved,
        so every log posted afterwards is fetched.
        """
        self._consumer = self._consumer_factory(self._broker, self._topic, self._group_id)
        self._logger = configure_logger(self._log_path)
        try:
            self._wait_for_assignment()
        except DeliveryVerifierError:
            self.stop()
            raise
        LOGGER.info("Verifying log delivery on %s/%s", self._broker, self._topic)

        thread = threading.Thread(target=self._consume, name="delivery-consumer", daemon=True)
        thread.start()
        self._thread = thread

    def register_sent(self, message: str, level: str) -> None:
        with self._lock:
            self._sent[message] += 1

    def pending(self) -> int:
        with self._lock:
            return sum(
                max(count - self._received.get(message, 0), 0)
                for message, count in self._sent.items()
            )

    def wait_for_pending(self, timeout_s: float = 30.0) -> bool:
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            if self.pending() == 0:
                return True
            time.sleep(0.2)
        return self.pending() == 0

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
        if self._consumer is not None:
            self._consumer.close()
        if self._logger is not None:
            for handler in list(self._logger.handlers):
                handler.close()
                self._logger.removeHandler(handler)

    def report(self) -> DeliveryReport:
        with self._lock:
            return DeliveryReport(
                sent=dict(self._sent),
                received=dict(self._received),
                unparsed=self._unparsed,
            )

    def handle_value(self, value: Any, partition: int | None = None) -> None:
        record = parse_log_record(value)
        with self._lock:
            if record is None:
                self._unparsed += 1
                return
            self._received[record.message] += 1
        if self._logger is not None:
            self._logger.info(format_record(record, partition))

    def _wait_for_assignment(self) -> None:
        deadline = time.time() + self._assignment_timeout_s
        try:
            while not self._consumer.assignment():
                if time.time() >= deadline:
                    raise DeliveryVerifierError(
                        f"no partitions of {self._topic!r} assigned within "
                        f"{self._assignment_timeout_s:.0f} seconds"
                    )
                self._dispatch(self._consumer.poll(timeout_ms=self._poll_timeout_ms))
            # pin the "latest" offsets before any log is posted
            for partition in self._consumer.assignment():
                self._consumer.position(partition)
        except KafkaError as exc:
            raise DeliveryVerifierError(f"joining consumer group failed: {exc}") from exc

    def _dispatch(self, records) -> None:
        for partition, batch in (records or {}).items():
            for message in batch:
                self.handle_value(message.value, getattr(partition, "partition", None))

    def _consume(self) -> None:
        while not self._stop_event.is_set():
            try:
                records = self._consumer.poll(timeout_ms=self._poll_timeout_ms)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Kafka poll failed; stopping delivery verification")
                return
            self._dispatch(records)


__all__ = [
    "DEFAULT_TOPIC",
    "DeliveryReport",
    "DeliveryVerifierError",
    "LogDeliveryVerifier",
    "LogRecord",
    "create_consumer",
    "parse_log_record",
]
