from __future__ import annotations

import logging
import random
import threading
from typing import Callable, Optional, Protocol
from uuid import UUID

import httpx

from multitalk.models.domain import SynthesisTask, WorkerOutcome

ResultCallback = Callable[[UUID, WorkerOutcome], object]
RejectionCallback = Callable[[UUID, str], object]


class StorageUrls(Protocol):
    def public_url(self, path: str) -> str: ...


class SimulatedSynthesisWorker:
    """Stands in for the video model: reports a result after a fixed delay.

    Each task gets its own timer, so a slow job never holds up the dispatch
    queue and results arrive in whatever order the timers fire.
    """

    def __init__(
        self,
        on_result: ResultCallback,
        delay_seconds: float = 30.0,
        artifact_base_url: str = "https://example.com/videos",
        failure_rate: float = 0.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.on_result = on_result
        self.delay_seconds = max(0.0, delay_seconds)
        self.artifact_base_url = artifact_base_url.rstrip("/")
        self.failure_rate = failure_rate
        self.log = logger or logging.getLogger(__name__)
        self._timers: dict[UUID, threading.Timer] = {}
        self._lock = threading.Lock()

    def run(self, task: SynthesisTask) -> None:
        timer = threading.Timer(self.delay_seconds, self._finish, args=(task,))
        timer.daemon = True
        with self._lock:
            self._timers[task.job_id] = timer
        timer.start()
        self.log.info(
            "simulated synthesis started",
            extra={"job_id": str(task.job_id), "delay_seconds": self.delay_seconds},
        )

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _finish(self, task: SynthesisTask) -> None:
        with self._lock:
            self._timers.pop(task.job_id, None)
        if self.failure_rate and random.random() < self.failure_rate:
            outcome = WorkerOutcome(success=False, error_detail="simulated synthesis failure")
        else:
            outcome = WorkerOutcome(success=True, artifact_ref=f"{self.artifact_base_url}/{task.job_id}.mp4")
        try:
            self.on_result(task.job_id, outcome)
        except Exception:
            self.log.exception("simulated synthesis callback failed", extra={"job_id": str(task.job_id)})


class HttpSynthesisWorker:
    """Hands tasks to a remote synthesis service.

    The service is expected to POST its result to ``callback_url`` later. If it
    refuses the task outright, or cannot be reached, the job counts as never
    dispatched and ``on_rejected`` hands it back for a refund.
    """

    def __init__(
        self,
        worker_url: str,
        callback_base_url: str,
        on_rejected: RejectionCallback,
        storage: StorageUrls | None = None,
        callback_token: str | None = None,
        timeout: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not worker_url:
            raise ValueError("worker_url is required")
        self.worker_url = worker_url.rstrip("/")
        self.callback_base_url = callback_base_url.rstrip("/")
        self.on_rejected = on_rejected
        self.storage = storage
        self.callback_token = (callback_token or "").strip()
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)

    def run(self, task: SynthesisTask) -> None:
        payload = task.model_dump(mode="json")
        payload["callback_url"] = f"{self.callback_base_url}/api/jobs/{task.job_id}/result"
        if self.storage is not None:
            payload["audio_url"] = self.storage.public_url(task.audio_ref)
            payload["image_url"] = self.storage.public_url(task.image_ref)
        headers = {"Content-Type": "application/json"}
        if self.callback_token:
            headers["X-Worker-Token"] = self.callback_token
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(f"{self.worker_url}/jobs", json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self.log.error(
                "synthesis worker rejected task",
                extra={"job_id": str(task.job_id), "status": exc.response.status_code},
            )
            self.on_rejected(task.job_id, f"worker rejected task: HTTP {exc.response.status_code}")
            return
        except httpx.HTTPError as exc:
            self.log.error("synthesis worker unreachable", extra={"job_id": str(task.job_id), "error": str(exc)})
            self.on_rejected(task.job_id, f"worker unreachable: {exc}")
            return
        self.log.info("synthesis task accepted by worker", extra={"job_id": str(task.job_id)})
