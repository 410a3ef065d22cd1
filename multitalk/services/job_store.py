from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID, uuid4

from multitalk.errors import InvalidTransition, JobNotFound
from multitalk.models.domain import Job, JobStatus, utcnow
from multitalk.storage.repository import JobRepository


class JobStore:
    """Job records and the ``queued -> processing -> completed|failed`` machine.

    Terminal jobs never change again: finishing one a second time raises
    ``InvalidTransition`` instead of overwriting the first outcome.
    """

    def __init__(self, repo: JobRepository, logger: Optional[logging.Logger] = None) -> None:
        self.repo = repo
        self.log = logger or logging.getLogger(__name__)

    def create(
        self,
        account_id: str,
        *,
        prompt: str,
        resolution: str,
        frame_num: int,
        audio_ref: str,
        image_ref: str,
    ) -> Job:
        job = Job(
            id=uuid4(),
            account_id=account_id,
            status=JobStatus.PROCESSING,
            prompt=prompt,
            resolution=resolution,
            frame_num=frame_num,
            audio_ref=audio_ref,
            image_ref=image_ref,
        )
        self.repo.save(job)
        return job

    def get(self, job_id: UUID) -> Job:
        job = self.repo.get(job_id)
        if job is None:
            raise JobNotFound(f"job {job_id} not found")
        return job

    def list_for_account(self, account_id: str) -> list[Job]:
        jobs = [job for job in self.repo.list() if job.account_id == account_id]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs

    def mark_completed(self, job_id: UUID, artifact_ref: str) -> Job:
        def _complete(job: Job) -> None:
            self._ensure_open(job, JobStatus.COMPLETED)
            job.status = JobStatus.COMPLETED
            job.artifact_ref = artifact_ref
            job.completed_at = utcnow()

        return self.repo.update(job_id, _complete)

    def mark_failed(self, job_id: UUID, error_detail: str) -> Job:
        def _fail(job: Job) -> None:
            self._ensure_open(job, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.error_detail = error_detail
            job.completed_at = utcnow()

        return self.repo.update(job_id, _fail)

    def _ensure_open(self, job: Job, target: JobStatus) -> None:
        if job.status != JobStatus.PROCESSING:
            raise InvalidTransition(job.id, job.status.value, target.value)
