"""Background execution of ingestion runs with pollable status."""
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from config import INGESTION_JOB_HISTORY
from services.ingestion_pipeline import IngestionOptions, IngestionPipeline, IngestionResult, PipelinePhase

logger = logging.getLogger(__name__)


@dataclass
class IngestionJob:
    job_id: str
    source: str
    status: str = "queued"  # queued, running, completed, failed
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: Optional[str] = None
    result: Optional[IngestionResult] = None
    error: Optional[str] = None
    pipeline: Optional[IngestionPipeline] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "job_id": self.job_id,
            "source": self.source,
            "status": self.status,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
            "progress": None,
        }
        if self.pipeline is not None and self.status == "running":
            progress = self.pipeline.progress
            data["progress"] = {
                "phase": progress.phase.value,
                "documents_crawled": progress.documents_crawled,
                "processed": progress.processed,
                "skipped": progress.skipped,
                "errors": progress.errors,
            }
        return data


class IngestionJobManager:
    """Runs ingestion pipelines one at a time on a background thread."""

    def __init__(
        self,
        pipeline_factory: Callable[[str], IngestionPipeline],
        max_finished_jobs: int = INGESTION_JOB_HISTORY
    ):
        """
        Initialize IngestionJobManager.

        Args:
            pipeline_factory: Builds a pipeline for a source name ("markdown", "register_api")
            max_finished_jobs: Finished jobs kept for polling; the oldest are evicted first
        """
        self.pipeline_factory = pipeline_factory
        self.max_finished_jobs = max_finished_jobs
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ingestion")
        self._jobs: Dict[str, IngestionJob] = {}
        self._lock = threading.Lock()

    def submit(self, source: str, options: IngestionOptions) -> str:
        """
        Queue an ingestion run.

        Returns:
            Job id for polling with get_job
        """
        pipeline = self.pipeline_factory(source)
        job = IngestionJob(job_id=str(uuid.uuid4()), source=source, pipeline=pipeline)

        with self._lock:
            self._jobs[job.job_id] = job

        self._executor.submit(self._run, job, options)
        logger.info(f"Queued ingestion job {job.job_id} for source {source}")
        return job.job_id

    def _run(self, job: IngestionJob, options: IngestionOptions) -> None:
        with self._lock:
            job.status = "running"

        try:
            result = job.pipeline.run(options)
        except Exception as e:
            # Keep the worker thread alive for later jobs
            logger.error(f"Ingestion job {job.job_id} failed: {str(e)}", exc_info=True)
            with self._lock:
                job.status = "failed"
                job.error = str(e)
                self._finish(job)
            return

        with self._lock:
            job.result = result
            job.status = "completed" if result.phase == PipelinePhase.COMPLETE else "failed"
            self._finish(job)
        logger.info(f"Ingestion job {job.job_id} {job.status}")

    def _finish(self, job: IngestionJob) -> None:
        """Release the pipeline and evict the oldest finished jobs. Caller holds the lock."""
        job.finished_at = datetime.now(timezone.utc).isoformat()
        job.pipeline = None

        finished = [j.job_id for j in self._jobs.values() if j.finished_at is not None]
        for job_id in finished[:max(0, len(finished) - self.max_finished_jobs)]:
            del self._jobs[job_id]
            logger.debug(f"Evicted finished ingestion job {job_id}")

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Job status as a dict, or None for an unknown id."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.to_dict() if job else None

    def stop_job(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            pipeline = job.pipeline if job else None
        if pipeline is None:
            return False
        pipeline.request_stop()
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
