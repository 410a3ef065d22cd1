from __future__ import annotations

import json
import logging
import threading
import time
from queue import Queue
from typing import Callable, Optional

try:
    from kafka import KafkaConsumer, KafkaProducer
except ImportError:  # pragma: no cover - optional dependency
    KafkaConsumer = None  # type: ignore
    KafkaProducer = None  # type: ignore

from multitalk.models.domain import SynthesisTask


class BaseQueue:
    def enqueue(self, task: SynthesisTask) -> None: ...  # pragma: no cover


class LocalQueue(BaseQueue):
    def __init__(
        self,
        processor: Callable[[SynthesisTask], None],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._processor = processor
        self._log = logger or logging.getLogger(__name__)
        self._queue: Queue[SynthesisTask] = Queue()
        self._thread = threading.Thread(target=self._run, name="synthesis-dispatch", daemon=True)
        self._thread.start()

    def enqueue(self, task: SynthesisTask) -> None:
        self._queue.put(task)

    def _run(self) -> None:
        while True:
            task = self._queue.get()
            try:
                self._processor(task)
            except Exception:
                self._log.exception("synthesis dispatch failed", extra={"job_id": str(task.job_id)})
            finally:
                self._queue.task_done()


class KafkaQueue(BaseQueue):
    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        group_id: str,
        processor: Callable[[SynthesisTask], None],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if KafkaProducer is None or KafkaConsumer is None:
            raise RuntimeError("kafka-python is not installed")
        self._topic = topic
        self._processor = processor
        self._log = logger or logging.getLogger(__name__)
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            value_serializer=lambda value: json.dumps(value).encode("utf-8"),
        )
        self._consumer = KafkaConsumer(
            topic,
            bootstrap_servers=bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=True,
            value_deserializer=lambda value: json.loads(value.decode("utf-8")),
        )
        self._thread = threading.Thread(target=self._consume, name="synthesis-consumer", daemon=True)
        self._thread.start()

    def enqueue(self, task: SynthesisTask) -> None:
        payload = {"task": task.model_dump(mode="json"), "ts": time.time()}
        # Dispatch counts as acknowledged only once the broker has the message.
        self._producer.send(self._topic, payload).get(timeout=30)

    def close(self) -> None:
        try:
            self._consumer.close()
            self._producer.close()
        except Exception:
            self._log.debug("kafka queue close failed", exc_info=True)

    def _consume(self) -> None:
        for message in self._consumer:
            try:
                task = SynthesisTask.model_validate(message.value["task"])
            except Exception:
                self._log.warning("discarding malformed synthesis task", exc_info=True)
                continue
            try:
                self._processor(task)
            except Exception:  # pragma: no cover - best effort logging
                self._log.exception("synthesis dispatch failed", extra={"job_id": str(task.job_id)})
