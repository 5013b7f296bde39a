"""Kafka topic management for the per-kind topics (``artifactstream topics``)."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from confluent_kafka import KafkaException
from confluent_kafka.admin import AdminClient, NewTopic

from contracts.artifacts import ArtifactKind
from contracts.schema import DEFAULT_SCHEMAS, KindSchema
from sinks.kafka import topic_name

logger = logging.getLogger(__name__)


class TopicManager:
    """Create, delete and list the topics used by the Kafka sink."""

    def __init__(
        self,
        bootstrap_servers: str,
        topic_prefix: str,
        schemas: Mapping[ArtifactKind, KindSchema] | None = None,
        *,
        admin: Any = None,
        timeout: float = 30.0,
    ) -> None:
        self._prefix = topic_prefix
        self._schemas = dict(schemas or DEFAULT_SCHEMAS)
        self._timeout = timeout
        self._admin = admin if admin is not None else AdminClient({"bootstrap.servers": bootstrap_servers})

    def topics_for(self, kinds: Iterable[ArtifactKind] | None = None) -> list[str]:
        selected = list(kinds) if kinds else list(self._schemas)
        return [topic_name(self._prefix, self._schemas[k]) for k in selected]

    def create(
        self,
        kinds: Iterable[ArtifactKind] | None = None,
        *,
        partitions: int = 3,
        replication: int = 1,
    ) -> dict[str, str]:
        """Create topics; returns topic -> "created" | "exists" | error text."""
        new = [NewTopic(t, num_partitions=partitions, replication_factor=replication) for t in self.topics_for(kinds)]
        futures = self._admin.create_topics(new, operation_timeout=self._timeout)
        return self._collect(futures, ok="created", exists="exists")

    def delete(self, kinds: Iterable[ArtifactKind] | None = None) -> dict[str, str]:
        futures = self._admin.delete_topics(self.topics_for(kinds), operation_timeout=self._timeout)
        return self._collect(futures, ok="deleted", exists=None)

    def list(self) -> list[str]:
        metadata = self._admin.list_topics(timeout=self._timeout)
        return sorted(t for t in metadata.topics if t.startswith(self._prefix + "_"))

    @staticmethod
    def _collect(futures: Mapping[str, Any], *, ok: str, exists: str | None) -> dict[str, str]:
        out: dict[str, str] = {}
        for topic, fut in futures.items():
            try:
                fut.result()
            except KafkaException as exc:
                err = exc.args[0] if exc.args else None
                if exists is not None and getattr(err, "name", lambda: "")() == "TOPIC_ALREADY_EXISTS":
                    out[topic] = exists
                else:
                    out[topic] = str(exc)
                    logger.warning("Topic %s: %s", topic, exc)
                continue
            out[topic] = ok
        return out


__all__ = ["TopicManager"]
