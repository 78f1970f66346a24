"""In-process registry of background ingestion jobs, polled by the upload API."""

import uuid
from typing import Dict, Optional

import structlog

from ..schemas import Credentials, IngestionJob, IngestionStage, IngestResult
from .ingest import IngestionOrchestrator

logger = structlog.get_logger(__name__)

FINISHED_STAGES = (IngestionStage.PERSISTED, IngestionStage.FAILED)


class JobTracker:
    """Keeps every running job and at most ``max_finished`` finished ones, oldest evicted first."""

    def __init__(self, max_finished: int = 200):
        if max_finished < 0:
            raise ValueError("max_finished must be >= 0")
        self.max_finished = max_finished
        self._jobs: Dict[str, IngestionJob] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def create(self, phone_number: str, file_name: str, file_type: str) -> IngestionJob:
        job = IngestionJob(job_id=uuid.uuid4().hex, phone_number=phone_number,
                           file_name=file_name, file_type=file_type)
        self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> Optional[IngestionJob]:
        return self._jobs.get(job_id)

    def advance(self, job_id: str, stage: IngestionStage) -> None:
        job = self._jobs[job_id]
        job.stage = stage

    def finish(self, job_id: str, *, result: Optional[IngestResult] = None, error: Optional[str] = None) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        # Re-insert so finishing order decides eviction order
        del self._jobs[job_id]
        self._jobs[job_id] = job
        if error is not None:
            job.stage, job.error = IngestionStage.FAILED, error
        else:
            job.stage, job.result = IngestionStage.PERSISTED, result
        self._evict()

    def _evict(self) -> None:
        finished = [jid for jid, job in self._jobs.items() if job.stage in FINISHED_STAGES]
        for jid in finished[:max(0, len(finished) - self.max_finished)]:
            del self._jobs[jid]


async def run_ingestion_job(
    tracker: JobTracker,
    orchestrator: IngestionOrchestrator,
    job_id: str,
    text: str,
    credentials: Optional[Credentials],
    intent: Optional[str] = None,
) -> None:
    """Background task body. Outcome goes into the tracker, not to a caller."""
    job = tracker.get(job_id)
    if job is None:
        return
    try:
        result = await orchestrator.ingest(
            text, job.phone_number, credentials,
            name=job.file_name, file_type=job.file_type, intent=intent,
            on_stage=lambda stage: tracker.advance(job_id, stage),
        )
    except Exception as e:
        error = str(e) or type(e).__name__
        logger.error("ingestion_job_failed", job_id=job_id, phone_number=job.phone_number, error=error)
        tracker.finish(job_id, error=error)
        return
    tracker.finish(job_id, result=result)
