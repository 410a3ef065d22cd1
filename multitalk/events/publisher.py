from __future__ import annotations

import json
import logging
from datetime import datetime

from pydantic import BaseModel, Field

try:  # pragma: no cover - optional dependency
    from kafka import KafkaProducer
except ImportError:  # pragma: no cover - fallback when kafka-python absent
    KafkaProducer = None  # type: ignore

from multitalk.models.domain import Job, utcnow


class JobEvent(BaseModel):
    type: str
    account_id: str
    occurred_at: datetime = Field(default_factory=utcnow)
    job: Job


class JobEventPublisher:
    """Streams ``job.created`` / ``job.completed`` / ``job.failed`` to Kafka.

    Messages are keyed by account so one user's updates stay ordered.
    """

    def __init__(self, bootstrap_servers: str, topic: str, logger: logging.Logger | None = None) -> None:
        if KafkaProducer is None:
            raise RuntimeError("kafka-python is not installed")
        if not bootstrap_servers or not topic:
            raise ValueError("bootstrap_servers and topic are required")
        self.topic = topic
        self.log = logger or logging.getLogger(__name__)
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            key_serializer=lambda key: key.encode("utf-8"),
            value_serializer=lambda event: json.dumps(event, ensure_ascii=False).encode("utf-8"),
            linger_ms=5,
        )

    def publish_job(self, job: Job, event_type: str) -> None:
        self.publish(JobEvent(type=event_type, account_id=job.account_id, job=job))

    def publish(self, event: JobEvent) -> None:
        try:
            self._producer.send(self.topic, event.model_dump(mode="json"), key=event.account_id)
        except Exception:
            self.log.warning(
                "job event not published",
                extra={"job_id": str(event.job.id), "event_type": event.type, "topic": self.topic},
                exc_info=True,
            )

    def close(self) -> None:
        try:
            self._producer.flush(timeout=5)
            self._producer.close()
        except Exception:
            self.log.debug("job event publisher close failed", exc_info=True)
