# docembed/jobs.py
"""
Job orchestration: submission and per-delivery outcome handling.

``submit`` takes the document's claim with a fresh job id before enqueueing,
so a second submission for the same document is refused immediately rather
than when a worker picks it up. The worker re-confirms the claim with the same
job id. ``handle`` turns a worker outcome into ack / retry-with-delay / drop.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from docembed.config import settings
from docembed.documents import Completion, claim_document, fail_embedding
from docembed.errors import (
    AlreadyEmbedded,
    AlreadyInFlight,
    NotFound,
    PermanentContentError,
    TransientProviderError,
)
from docembed.lifecycle import EmbeddingStatus
from docembed.metrics import (
    jobs_completed_total,
    jobs_failed_total,
    jobs_rejected_total,
    jobs_retried_total,
    jobs_submitted_total,
)
from docembed.queue import JobQueue, QueuedJob, new_job_id
from docembed.schemas import DocumentEmbeddingJob, parse_job

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    job_id: str
    document_id: int
    status: EmbeddingStatus = EmbeddingStatus.PROCESSING


class JobAction(str, enum.Enum):
    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"
    DROPPED = "dropped"  # claim refused or superseded; nothing left to do


@dataclass
class JobOutcome:
    job_id: str
    action: JobAction
    delay: float = 0.0
    error: Optional[str] = None


class JobOrchestrator:
    def __init__(
        self,
        session_factory,
        queue: JobQueue,
        worker=None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.worker = worker
        self.max_attempts = max_attempts or settings.job_max_attempts
        self.backoff_base = settings.retry_backoff_base if backoff_base is None else backoff_base
        self.backoff_max = settings.retry_backoff_max if backoff_max is None else backoff_max

    def retry_delay(self, attempt: int) -> float:
        """Delay before re-delivering after the ``attempt``-th delivery failed."""
        return min(self.backoff_base * (2 ** max(attempt - 1, 0)), self.backoff_max)

    async def submit(self, document_id: int, owner_id: str, force: bool = False) -> SubmitResult:
        """
        Raises NotFound, AlreadyInFlight, or AlreadyEmbedded (non-forced
        submission for a document that is already completed).
        """
        job_id = new_job_id()
        async with self.session_factory() as session:
            try:
                await claim_document(session, document_id, owner_id, job_id, force)
            except AlreadyInFlight:
                jobs_rejected_total.inc()
                raise

        payload = DocumentEmbeddingJob(document_id=document_id, owner_id=owner_id, force=force).model_dump()
        try:
            await self.queue.enqueue(payload, job_id=job_id)
        except Exception as e:
            logger.exception("Failed to enqueue embedding job for document %s", document_id)
            async with self.session_factory() as session:
                await fail_embedding(session, document_id, job_id, f"could not enqueue embedding job: {e}")
            raise

        jobs_submitted_total.inc()
        logger.info("Queued embedding job %s for document %s (force=%s)", job_id, document_id, force)
        return SubmitResult(job_id=job_id, document_id=document_id)

    async def _finish(self, queued: QueuedJob, action: JobAction, error: Optional[str] = None) -> JobOutcome:
        await self.queue.ack(queued.job_id)
        return JobOutcome(queued.job_id, action, error=error)

    async def handle(self, queued: QueuedJob) -> JobOutcome:
        if self.worker is None:
            raise RuntimeError("JobOrchestrator.handle needs a worker")
        try:
            job = parse_job(queued.payload)
        except (ValueError, ValidationError) as e:
            logger.error("Dropping malformed job %s: %s", queued.job_id, e)
            return await self._finish(queued, JobAction.DROPPED, str(e))

        if not isinstance(job, DocumentEmbeddingJob):
            logger.error("No handler for job kind %r (job %s)", job.kind, queued.job_id)
            return await self._finish(queued, JobAction.DROPPED, f"unhandled kind {job.kind}")

        try:
            result = await self.worker.run(queued.job_id, job)
        except (AlreadyInFlight, AlreadyEmbedded, NotFound) as e:
            jobs_rejected_total.inc()
            logger.info("Job %s for document %s dropped: %s", queued.job_id, job.document_id, e)
            return await self._finish(queued, JobAction.DROPPED, str(e))
        except TransientProviderError as e:
            if queued.attempt < self.max_attempts:
                delay = self.retry_delay(queued.attempt)
                jobs_retried_total.inc()
                logger.warning(
                    "Job %s for document %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    queued.job_id, job.document_id, queued.attempt, self.max_attempts, delay, e,
                )
                await self.queue.nack(queued.job_id, delay=delay)
                return JobOutcome(queued.job_id, JobAction.RETRY, delay=delay, error=str(e))
            jobs_failed_total.inc()
            logger.error(
                "Job %s for document %s failed after %d attempts: %s",
                queued.job_id, job.document_id, queued.attempt, e,
            )
            return await self._finish(queued, JobAction.FAILED, str(e))
        except PermanentContentError as e:
            jobs_failed_total.inc()
            logger.error("Job %s for document %s failed permanently: %s", queued.job_id, job.document_id, e)
            return await self._finish(queued, JobAction.FAILED, str(e))
        except Exception as e:
            jobs_failed_total.inc()
            logger.exception("Job %s for document %s failed with an unexpected error", queued.job_id, job.document_id)
            return await self._finish(queued, JobAction.FAILED, f"{type(e).__name__}: {e}")

        if result.outcome is Completion.SUPERSEDED:
            return await self._finish(queued, JobAction.DROPPED, "superseded")
        if result.outcome is Completion.COMPLETED:
            jobs_completed_total.inc()
        return await self._finish(queued, JobAction.COMPLETED)
