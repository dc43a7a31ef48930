# docembed/worker.py
"""
Embedding worker:
 - claim the document (single-flight, keyed by the job id)
 - chunk its content with category-specific window sizes
 - embed chunks in batches, reporting progress as batches finish
 - stage the new run's vectors in the vector index
 - swap the chunk rows and finalize the document in one transaction

Any failure after the claim marks the document ``failed``; chunk rows from the
previous successful run are left in place. Retry decisions belong to
``docembed.jobs.JobOrchestrator``.

Run a worker process with ``python -m docembed.worker``.
"""
import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence

from docembed.chunking import Chunk, batch_iterable, chunk_document
from docembed.config import configure_logging, settings
from docembed.documents import (
    Completion,
    claim_document,
    complete_embedding,
    fail_embedding,
    release_stale_claims,
    report_progress,
)
from docembed.embeddings import EmbeddingClient
from docembed.errors import PermanentContentError, TransientProviderError
from docembed.metrics import embed_errors_total
from docembed.schemas import DocumentEmbeddingJob
from docembed.vector_index import NullVectorIndex

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    document_id: int
    job_id: str
    outcome: Completion
    chunks_count: int
    model: str


class EmbeddingWorker:
    def __init__(
        self,
        session_factory,
        embedder: EmbeddingClient,
        vector_index=None,
        model: Optional[str] = None,
        batch_size: Optional[int] = None,
        embed_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.embedder = embedder
        self.vector_index = vector_index or NullVectorIndex()
        self.model = model or settings.embedding_model
        self.batch_size = batch_size or settings.embed_batch
        self.embed_timeout = embed_timeout or settings.embed_timeout

    async def _report(self, document_id: int, job_id: str, progress: int) -> None:
        try:
            async with self.session_factory() as session:
                await report_progress(session, document_id, job_id, progress)
        except Exception:
            # progress is advisory; the next batch or the final swap supersedes it
            logger.exception("Progress update failed for document %s", document_id)

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        try:
            vectors = await asyncio.wait_for(self.embedder.embed(texts, self.model), timeout=self.embed_timeout)
        except asyncio.TimeoutError as e:
            embed_errors_total.labels(kind="timeout").inc()
            raise TransientProviderError(f"embedding call timed out after {self.embed_timeout}s") from e
        except TransientProviderError:
            embed_errors_total.labels(kind="transient").inc()
            raise
        except PermanentContentError:
            embed_errors_total.labels(kind="permanent").inc()
            raise
        if len(vectors) != len(texts):
            embed_errors_total.labels(kind="permanent").inc()
            raise PermanentContentError(f"chunk/embedding mismatch: {len(texts)} vs {len(vectors)}")
        return vectors

    async def _embed_all(self, document_id: int, job_id: str, chunks: Sequence[Chunk]) -> List[List[float]]:
        total = len(chunks)
        vectors: List[List[float]] = []
        progress_tasks = []
        try:
            for batch in batch_iterable(chunks, self.batch_size):
                vectors.extend(await self._embed_batch([c.text for c in batch]))
                # fire-and-forget: the next embedding call does not wait on this write
                progress_tasks.append(
                    asyncio.create_task(self._report(document_id, job_id, len(vectors) * 100 // total))
                )
                logger.debug("Embedded %d/%d chunks for document %s", len(vectors), total, document_id)
        finally:
            if progress_tasks:
                await asyncio.gather(*progress_tasks, return_exceptions=True)
        return vectors

    async def _discard_run(self, document_id: int, job_id: str) -> None:
        try:
            await self.vector_index.delete_run(document_id, job_id)
        except Exception:
            logger.exception("Failed to discard staged vectors of job %s for document %s", job_id, document_id)

    async def run(self, job_id: str, job: DocumentEmbeddingJob) -> EmbeddingResult:
        """
        Process one delivery of ``job``. Raises ``NotFound``/``AlreadyInFlight``/
        ``AlreadyEmbedded`` when the claim is refused, or the pipeline error that
        failed the attempt after the document was marked ``failed``.
        """
        async with self.session_factory() as session:
            doc = await claim_document(session, job.document_id, job.owner_id, job_id, job.force)
            document_id, owner_id = doc.id, doc.owner_id
            content, category = doc.content or "", doc.category

        logger.info("Embedding document %s (job %s, force=%s)", document_id, job_id, job.force)
        staged = False
        try:
            chunks = chunk_document(content, category)
            vectors = await self._embed_all(document_id, job_id, chunks) if chunks else []
            if chunks:
                staged = True
                await self.vector_index.upsert_run(document_id, owner_id, job_id, self.model, chunks, vectors)
            async with self.session_factory() as session:
                outcome = await complete_embedding(session, document_id, job_id, chunks, vectors, self.model)
        except Exception as e:
            if staged:
                await self._discard_run(document_id, job_id)
            async with self.session_factory() as session:
                marked = await fail_embedding(session, document_id, job_id, f"{type(e).__name__}: {e}")
            if marked:
                logger.warning("Embedding of document %s failed (job %s): %s", document_id, job_id, e)
            else:
                logger.info("Embedding of document %s failed after its claim was released (job %s)", document_id, job_id)
            raise

        if outcome is Completion.SUPERSEDED:
            await self._discard_run(document_id, job_id)
        elif outcome is Completion.COMPLETED:
            try:
                await self.vector_index.delete_stale_runs(document_id, job_id)
            except Exception:
                # stale points are unreachable once embedding_run_id moved; a later run cleans them
                logger.exception("Failed to delete stale vector runs for document %s", document_id)
            logger.info("Completed embedding of document %s: %d chunks (job %s)", document_id, len(chunks), job_id)
        return EmbeddingResult(document_id, job_id, outcome, len(chunks), self.model)


# ---- worker process ----

async def _consume(name: str, queue, orchestrator, stop: asyncio.Event, poll_timeout: float) -> None:
    while not stop.is_set():
        queued = await queue.dequeue(timeout=poll_timeout)
        if queued is None:
            continue
        try:
            await orchestrator.handle(queued)
        except Exception:
            logger.exception("[%s] Unhandled error for job %s; re-queueing", name, queued.job_id)
            await queue.nack(queued.job_id, delay=orchestrator.retry_delay(queued.attempt))


async def _reap_stale_claims(session_factory, ttl: float, interval: float, stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            async with session_factory() as session:
                await release_stale_claims(session, timedelta(seconds=ttl))
        except Exception:
            logger.exception("Stale claim sweep failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def run_worker(
    queue,
    orchestrator,
    concurrency: int = None,
    stop: Optional[asyncio.Event] = None,
    poll_timeout: float = 1.0,
    reap_interval: Optional[float] = None,
) -> None:
    """Run ``concurrency`` consumers against ``queue`` until ``stop`` is set."""
    concurrency = concurrency or settings.worker_concurrency
    stop = stop or asyncio.Event()
    tasks = [
        asyncio.create_task(_consume(f"consumer-{i}", queue, orchestrator, stop, poll_timeout))
        for i in range(concurrency)
    ]
    if reap_interval:
        tasks.append(
            asyncio.create_task(
                _reap_stale_claims(orchestrator.session_factory, settings.claim_ttl_seconds, reap_interval, stop)
            )
        )
    logger.info("Worker started with %d consumers", concurrency)
    try:
        await asyncio.gather(*tasks)
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Worker stopped")


async def main() -> None:
    from docembed.db import AsyncSessionLocal, close_engine
    from docembed.embeddings import HTTPEmbeddingClient
    from docembed.jobs import JobOrchestrator
    from docembed.queue import RedisJobQueue
    from docembed.vector_index import get_vector_index

    queue = RedisJobQueue.from_url(settings.redis_url, name=settings.queue_name)
    embedder = HTTPEmbeddingClient()
    worker = EmbeddingWorker(AsyncSessionLocal, embedder, get_vector_index())
    orchestrator = JobOrchestrator(AsyncSessionLocal, queue, worker)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    if settings.requeue_unacked_on_start:
        await queue.requeue_unacked()
    try:
        await run_worker(
            queue, orchestrator, settings.worker_concurrency, stop, reap_interval=settings.stale_claim_sweep_interval
        )
    finally:
        await embedder.aclose()
        await queue.close()
        await close_engine()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
