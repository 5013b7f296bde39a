"""Kafka producer sink.

One message per record, JSON encoded, on topic ``<prefix>_<kind table>``.
The message key is the record's source identity (host + path) so all records
of one artifact land in one partition and keep their order for consumers.

A batch only counts as delivered once every message has been acknowledged
(``flush`` returned with nothing outstanding and no delivery report failed).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from confluent_kafka import KafkaError, KafkaException, Producer

from contracts.artifacts import ArtifactKind, Batch, DeliveryReceipt, NormalizedRecord
from contracts.errors import DeliveryError
from contracts.fingerprints import canonical_json_dumps
from contracts.schema import DEFAULT_SCHEMAS, KindSchema

logger = logging.getLogger(__name__)

# Local producer queue full: poll for delivery reports and try again.
_BUFFER_FULL_POLL_SECONDS = 0.5
_BUFFER_FULL_MAX_WAITS = 120


@dataclass(frozen=True)
class KafkaSinkConfig:
    bootstrap_servers: str = "localhost:9092"
    topic_prefix: str = "artifactstream"
    client_id: str = "artifactstream"
    acks: str = "all"
    delivery_timeout_seconds: float = 30.0
    extra: Mapping[str, Any] = field(default_factory=dict)

    def producer_config(self) -> dict[str, Any]:
        conf: dict[str, Any] = {
            "bootstrap.servers": self.bootstrap_servers,
            "client.id": self.client_id,
            "acks": self.acks,
            "enable.idempotence": self.acks == "all",
            "compression.type": "zstd",
            "linger.ms": 50,
        }
        conf.update(self.extra)
        return conf


def topic_name(prefix: str, schema: KindSchema) -> str:
    return f"{prefix}_{schema.table_name}"


def record_message(rec: NormalizedRecord) -> tuple[bytes, bytes]:
    """(key, value) for one record."""
    key = f"{rec.source_host}:{rec.source_path}".encode()
    value = canonical_json_dumps(rec.envelope()).encode("utf-8")
    return key, value


class KafkaSink:
    """confluent-kafka Producer wrapper with acknowledged batch delivery."""

    def __init__(
        self,
        cfg: KafkaSinkConfig,
        schemas: Mapping[ArtifactKind, KindSchema] | None = None,
        *,
        producer: Any = None,
    ) -> None:
        self._cfg = cfg
        self._schemas = dict(schemas or DEFAULT_SCHEMAS)
        self._producer = producer if producer is not None else Producer(cfg.producer_config())

    def sink_name(self) -> str:
        return "kafka"

    def topic_for(self, kind: ArtifactKind) -> str:
        return topic_name(self._cfg.topic_prefix, self._schemas[kind])

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        failures: list[KafkaError] = []
        acked = [0]

        def _on_delivery(err: KafkaError | None, _msg: Any) -> None:
            if err is not None:
                failures.append(err)
            else:
                acked[0] += 1

        for rec in batch.records:
            key, value = record_message(rec)
            self._produce(self.topic_for(rec.kind), key, value, _on_delivery)

        outstanding = self._producer.flush(self._cfg.delivery_timeout_seconds)
        if outstanding:
            raise DeliveryError(
                f"{outstanding} of {len(batch)} messages not acknowledged within "
                f"{self._cfg.delivery_timeout_seconds}s",
                retryable=True,
            )
        if failures:
            retryable = all(f.retriable() for f in failures)
            raise DeliveryError(
                f"{len(failures)} of {len(batch)} messages failed: {failures[0].str()}",
                retryable=retryable,
            )
        return DeliveryReceipt.success(acked[0], sink=self.sink_name())

    def _produce(self, topic: str, key: bytes, value: bytes, callback: Any) -> None:
        for _ in range(_BUFFER_FULL_MAX_WAITS):
            try:
                self._producer.produce(topic, value=value, key=key, on_delivery=callback)
            except BufferError:
                self._producer.poll(_BUFFER_FULL_POLL_SECONDS)
                continue
            except KafkaException as exc:
                err = exc.args[0] if exc.args else None
                retryable = bool(isinstance(err, KafkaError) and err.retriable())
                raise DeliveryError(f"produce to {topic} failed: {exc}", retryable=retryable) from exc
            self._producer.poll(0)
            return
        raise DeliveryError(f"producer queue stayed full while producing to {topic}", retryable=True)

    def close(self) -> None:
        outstanding = self._producer.flush(self._cfg.delivery_timeout_seconds)
        if outstanding:
            logger.warning("%d Kafka messages still queued at close", outstanding)


__all__ = ["KafkaSink", "KafkaSinkConfig", "record_message", "topic_name"]
