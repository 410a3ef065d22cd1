from __future__ import annotations

import base64
import binascii
import logging
import pathlib
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol
from uuid import UUID

from multitalk.config import Settings
from multitalk.errors import (
    DispatchFailed,
    InsufficientCredits,
    InvalidTransition,
    JobNotFound,
    JobValidationError,
    StorageUnavailable,
    TransientFault,
)
from multitalk.events.publisher import JobEventPublisher
from multitalk.models.api import MediaPayload, VideoGenerationRequest
from multitalk.models.domain import Job, SynthesisTask, WorkerOutcome
from multitalk.queue.queue import BaseQueue
from multitalk.services.job_store import JobStore
from multitalk.services.ledger import CreditLedger


class ObjectStorage(Protocol):
    def upload_bytes(self, path: str, content: bytes, content_type: str = ...) -> str: ...

    def delete(self, path: str) -> None: ...


@dataclass(frozen=True)
class _Upload:
    filename: str
    content_type: str
    data: bytes


@dataclass(frozen=True)
class _ValidatedRequest:
    prompt: str
    resolution: str
    frame_num: int
    audio: _Upload
    image: _Upload


class JobLifecycleManager:
    def __init__(
        self,
        ledger: CreditLedger,
        jobs: JobStore,
        storage: ObjectStorage,
        settings: Settings,
        events: JobEventPublisher | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ledger = ledger
        self.jobs = jobs
        self.storage = storage
        self.settings = settings
        self.events = events
        self.queue: BaseQueue | None = None
        self.log = logger or logging.getLogger(__name__)
        # Hung uploads must not hold the threads dispatch waits on.
        self._uploads = ThreadPoolExecutor(max_workers=8, thread_name_prefix="submit-upload")
        self._dispatches = ThreadPoolExecutor(max_workers=4, thread_name_prefix="submit-dispatch")

    def bind_queue(self, queue: BaseQueue) -> None:
        self.queue = queue

    def close(self) -> None:
        self._uploads.shutdown(wait=False)
        self._dispatches.shutdown(wait=False)

    def submit(self, account_id: str, payload: VideoGenerationRequest) -> Job:
        request = self._validate(payload)
        self.ledger.ensure_account(account_id, self.settings.free_trial_credits)

        cost = self.settings.generation_cost
        debit = self.ledger.try_debit(account_id, cost)
        if not debit.ok:
            self.log.info(
                "submission rejected, insufficient credits",
                extra={"account_id": account_id, "balance": debit.remaining_balance},
            )
            raise InsufficientCredits(account_id, debit.remaining_balance, cost)

        try:
            audio_ref, image_ref = self._persist_uploads(account_id, request)
        except Exception:
            self._refund(account_id, cost, reason="upload")
            raise

        job = self.jobs.create(
            account_id,
            prompt=request.prompt,
            resolution=request.resolution,
            frame_num=request.frame_num,
            audio_ref=audio_ref,
            image_ref=image_ref,
        )
        self.log.info("video job created", extra={"job_id": str(job.id), "account_id": account_id})
        self._emit_job_update(job, "job.created")

        try:
            self._dispatch(job)
        except Exception as exc:
            self.reject_dispatch(job.id, f"dispatch failed: {exc}")
            raise
        return job

    def reject_dispatch(self, job_id: UUID, error_detail: str) -> Job:
        """Fail a job the worker never accepted and give its credit back.

        A job the worker already finished keeps its outcome and its debit.
        """
        try:
            job = self.jobs.mark_failed(job_id, error_detail)
        except InvalidTransition as exc:
            self.log.warning(
                "dispatch rejection for finished job ignored",
                extra={"job_id": str(job_id), "status": exc.current},
            )
            return self.jobs.get(job_id)
        self._refund(job.account_id, self.settings.generation_cost, reason="dispatch")
        self._emit_job_update(job, "job.failed")
        return job

    def on_worker_result(self, job_id: UUID, outcome: WorkerOutcome) -> Job:
        try:
            if outcome.success and outcome.artifact_ref:
                job = self.jobs.mark_completed(job_id, outcome.artifact_ref)
            elif outcome.success:
                job = self.jobs.mark_failed(job_id, "worker reported success without an artifact")
            else:
                job = self.jobs.mark_failed(job_id, outcome.error_detail or "Video generation failed")
        except InvalidTransition as exc:
            self.log.warning(
                "ignoring worker result for finished job",
                extra={"job_id": str(job_id), "status": exc.current, "success": outcome.success},
            )
            return self.jobs.get(job_id)
        self.log.info("video job finished", extra={"job_id": str(job_id), "status": job.status.value})
        self._emit_job_update(job, f"job.{job.status.value}")
        return job

    def get_job(self, job_id: UUID, account_id: str | None = None) -> Job:
        job = self.jobs.get(job_id)
        if account_id and job.account_id != account_id:
            raise JobNotFound(f"job {job_id} not found")
        return job

    def list_jobs(self, account_id: str) -> list[Job]:
        return self.jobs.list_for_account(account_id)

    def _validate(self, payload: VideoGenerationRequest) -> _ValidatedRequest:
        prompt = (payload.prompt or "").strip()
        if not prompt:
            raise JobValidationError("prompt", "prompt is required")
        audio = self._decode_upload("audio", payload.audio)
        image = self._decode_upload("image", payload.image)

        resolution = payload.resolution or self.settings.default_resolution
        if resolution not in self.settings.allowed_resolutions:
            allowed = ", ".join(self.settings.allowed_resolutions)
            raise JobValidationError("resolution", f"must be one of {allowed}")
        frame_num = payload.frame_num if payload.frame_num is not None else self.settings.default_frame_num
        if frame_num not in self.settings.allowed_frame_counts:
            allowed = ", ".join(str(value) for value in self.settings.allowed_frame_counts)
            raise JobValidationError("frame_num", f"must be one of {allowed}")
        return _ValidatedRequest(prompt=prompt, resolution=resolution, frame_num=frame_num, audio=audio, image=image)

    def _decode_upload(self, field: str, media: MediaPayload | None) -> _Upload:
        if media is None or not media.data:
            raise JobValidationError(field, f"{field} file is required")
        content_type = (media.content_type or "").strip().lower()
        if not content_type.startswith(f"{field}/"):
            raise JobValidationError(field, f"Only {field} files are allowed for {field} field")
        try:
            data = base64.b64decode(media.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise JobValidationError(field, "invalid base64 payload") from exc
        if not data:
            raise JobValidationError(field, f"{field} file is empty")
        if len(data) > self.settings.max_upload_bytes:
            raise JobValidationError(field, "File too large")
        filename = pathlib.PurePosixPath(media.filename or "").name
        return _Upload(filename=filename, content_type=content_type, data=data)

    def _persist_uploads(self, account_id: str, request: _ValidatedRequest) -> tuple[str, str]:
        stamp = int(time.time() * 1000)
        audio_key = f"{account_id}/{stamp}_audio.{self._extension(request.audio)}"
        image_key = f"{account_id}/{stamp}_image.{self._extension(request.image)}"

        def _upload_both() -> tuple[str, str]:
            audio_ref = self.storage.upload_bytes(audio_key, request.audio.data, request.audio.content_type)
            image_ref = self.storage.upload_bytes(image_key, request.image.data, request.image.content_type)
            return audio_ref, image_ref

        future = self._uploads.submit(_upload_both)
        try:
            return self._await(future, self.settings.persist_timeout_seconds, StorageUnavailable, "upload")
        except TransientFault:
            # A timed-out upload may still land later, so clean up whenever it settles.
            future.add_done_callback(lambda _: self._discard_uploads(audio_key, image_key))
            raise

    def _dispatch(self, job: Job) -> None:
        if self.queue is None:
            raise DispatchFailed("no synthesis queue bound")
        task = SynthesisTask(
            job_id=job.id,
            prompt=job.prompt,
            audio_ref=job.audio_ref,
            image_ref=job.image_ref,
            resolution=job.resolution,
            frame_num=job.frame_num,
        )
        future = self._dispatches.submit(self.queue.enqueue, task)
        self._await(future, self.settings.dispatch_timeout_seconds, DispatchFailed, "dispatch")
        self.log.info("video job dispatched", extra={"job_id": str(job.id)})

    def _await(self, future: Future, timeout: float, fault: Callable[[str], TransientFault], action: str) -> Any:
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            raise fault(f"{action} timed out after {timeout}s") from exc
        except TransientFault:
            raise
        except Exception as exc:
            raise fault(f"{action} failed: {exc}") from exc

    def _discard_uploads(self, *keys: str) -> None:
        for key in keys:
            try:
                self.storage.delete(key)
            except Exception:
                self.log.warning("orphaned upload not removed", extra={"key": key}, exc_info=True)

    def _refund(self, account_id: str, amount: int, reason: str) -> None:
        try:
            balance = self.ledger.credit(account_id, amount)
        except Exception:
            self.log.exception(
                "compensating credit failed",
                extra={"account_id": account_id, "amount": amount, "reason": reason},
            )
            return
        self.log.warning(
            "submission rolled back",
            extra={"account_id": account_id, "reason": reason, "balance": balance},
        )

    def _emit_job_update(self, job: Job, event_type: str) -> None:
        if not self.events:
            return
        try:
            self.events.publish_job(job, event_type)
        except Exception:  # pragma: no cover
            self.log.warning("job event emission failed", extra={"job_id": str(job.id)}, exc_info=True)

    def _extension(self, upload: _Upload) -> str:
        suffix = pathlib.PurePosixPath(upload.filename).suffix.lstrip(".")
        if suffix:
            return suffix.lower()
        return upload.content_type.split("/", 1)[-1].split(";", 1)[0] or "bin"
