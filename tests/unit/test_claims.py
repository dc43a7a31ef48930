"""Single-flight claims, completion idempotence and superseded completions."""

import asyncio

import pytest
from sqlalchemy import select

from docembed.chunking import Chunk
from docembed.documents import (
    Completion,
    claim_document,
    complete_embedding,
    create_document,
    fail_embedding,
    get_document,
    update_content,
)
from docembed.errors import AlreadyEmbedded, AlreadyInFlight, NotFound
from docembed.jobs import SubmitResult
from docembed.lifecycle import EmbeddingStatus
from docembed.models import Document, DocumentEmbedding, utcnow
from docembed.schemas import DocumentPatch

OWNER = "user-1"


def _chunks(n, prefix="chunk"):
    return [Chunk(index=i, text=f"{prefix} {i}", start=i, end=i + 1) for i in range(n)]


def _vectors(n):
    return [[1.0, float(i), 0.0, 0.0] for i in range(n)]


async def _new_document(session_factory, content="some content"):
    async with session_factory() as session:
        doc = await create_document(session, OWNER, "Doc", content)
        return doc.id


async def _rows(session_factory, document_id):
    async with session_factory() as session:
        return (
            await session.execute(
                select(DocumentEmbedding.chunk_text, DocumentEmbedding.model, DocumentEmbedding.run_id)
                .where(DocumentEmbedding.document_id == document_id)
                .order_by(DocumentEmbedding.chunk_index)
            )
        ).all()


async def _document(session_factory, document_id):
    async with session_factory() as session:
        return await get_document(session, document_id, OWNER)


def test_concurrent_submissions_single_flight(pipeline) -> None:
    async def scenario():
        doc_id = await _new_document(pipeline.session_factory)
        results = await asyncio.gather(
            pipeline.orchestrator.submit(doc_id, OWNER),
            pipeline.orchestrator.submit(doc_id, OWNER),
            return_exceptions=True,
        )
        accepted = [r for r in results if isinstance(r, SubmitResult)]
        rejected = [r for r in results if isinstance(r, AlreadyInFlight)]
        assert len(accepted) == 1
        assert len(rejected) == 1
        assert len(pipeline.queue) == 1
        doc = await _document(pipeline.session_factory, doc_id)
        assert doc.embedding_status is EmbeddingStatus.PROCESSING
        assert doc.claim_token == accepted[0].job_id

    asyncio.run(scenario())


def test_many_concurrent_claims_one_winner(session_factory) -> None:
    async def claim(doc_id, job_id):
        async with session_factory() as session:
            return await claim_document(session, doc_id, OWNER, job_id)

    async def scenario():
        doc_id = await _new_document(session_factory)
        results = await asyncio.gather(*(claim(doc_id, f"job-{i}") for i in range(5)), return_exceptions=True)
        winners = [r for r in results if isinstance(r, Document)]
        assert len(winners) == 1
        assert all(isinstance(r, AlreadyInFlight) for r in results if r not in winners)

    asyncio.run(scenario())


def test_force_does_not_preempt_processing(pipeline) -> None:
    async def scenario():
        doc_id = await _new_document(pipeline.session_factory)
        await pipeline.orchestrator.submit(doc_id, OWNER)
        with pytest.raises(AlreadyInFlight):
            await pipeline.orchestrator.submit(doc_id, OWNER, force=True)

    asyncio.run(scenario())


def test_completed_document_needs_force(pipeline) -> None:
    async def scenario():
        doc_id = await _new_document(pipeline.session_factory)
        await pipeline.orchestrator.submit(doc_id, OWNER)
        await pipeline.drain()

        with pytest.raises(AlreadyEmbedded) as excinfo:
            await pipeline.orchestrator.submit(doc_id, OWNER)
        assert excinfo.value.chunks_count == 1

        forced = await pipeline.orchestrator.submit(doc_id, OWNER, force=True)
        assert forced.job_id

    asyncio.run(scenario())


def test_claim_of_foreign_or_missing_document(session_factory) -> None:
    async def scenario():
        doc_id = await _new_document(session_factory)
        async with session_factory() as session:
            with pytest.raises(NotFound):
                await claim_document(session, doc_id, "user-2", "job-1")
            with pytest.raises(NotFound):
                await claim_document(session, 999, OWNER, "job-1")

    asyncio.run(scenario())


def test_reclaim_with_same_token_succeeds(session_factory) -> None:
    async def scenario():
        doc_id = await _new_document(session_factory)
        async with session_factory() as session:
            await claim_document(session, doc_id, OWNER, "job-1")
            doc = await claim_document(session, doc_id, OWNER, "job-1")
            assert doc.claim_token == "job-1"
            with pytest.raises(AlreadyInFlight):
                await claim_document(session, doc_id, OWNER, "job-2")

    asyncio.run(scenario())


def test_duplicate_completion_is_a_noop(session_factory) -> None:
    async def scenario():
        doc_id = await _new_document(session_factory)
        async with session_factory() as session:
            await claim_document(session, doc_id, OWNER, "job-1")
            first = await complete_embedding(session, doc_id, "job-1", _chunks(3), _vectors(3), "model-a")
        before_doc = await _document(session_factory, doc_id)
        before_rows = await _rows(session_factory, doc_id)

        async with session_factory() as session:
            second = await complete_embedding(session, doc_id, "job-1", _chunks(3), _vectors(3), "model-a")

        after_doc = await _document(session_factory, doc_id)
        assert first is Completion.COMPLETED
        assert second is Completion.ALREADY_COMPLETED
        assert await _rows(session_factory, doc_id) == before_rows
        assert after_doc.last_embedded_at == before_doc.last_embedded_at
        assert after_doc.chunks_count == 3

    asyncio.run(scenario())


def test_completion_after_content_edit_is_superseded(session_factory) -> None:
    async def scenario():
        doc_id = await _new_document(session_factory)
        async with session_factory() as session:
            await claim_document(session, doc_id, OWNER, "job-1")
            await update_content(session, doc_id, OWNER, DocumentPatch(content="edited mid-flight"))
            outcome = await complete_embedding(session, doc_id, "job-1", _chunks(2), _vectors(2), "model-a")

        assert outcome is Completion.SUPERSEDED
        doc = await _document(session_factory, doc_id)
        assert doc.embedding_status is EmbeddingStatus.PENDING
        assert await _rows(session_factory, doc_id) == []

    asyncio.run(scenario())


def test_completion_for_deleted_document_does_not_resurrect(session_factory) -> None:
    async def scenario():
        doc_id = await _new_document(session_factory)
        async with session_factory() as session:
            doc = await claim_document(session, doc_id, OWNER, "job-1")
            doc.deleted_at = utcnow()
            await session.commit()
            outcome = await complete_embedding(session, doc_id, "job-1", _chunks(2), _vectors(2), "model-a")
            assert outcome is Completion.SUPERSEDED
            assert await fail_embedding(session, doc_id, "job-1", "boom") is False
        assert await _rows(session_factory, doc_id) == []

    asyncio.run(scenario())


def test_reembed_swaps_rows_without_mixing_models(session_factory) -> None:
    async def scenario():
        doc_id = await _new_document(session_factory)
        async with session_factory() as session:
            await claim_document(session, doc_id, OWNER, "job-1")
            await complete_embedding(session, doc_id, "job-1", _chunks(3, "old"), _vectors(3), "model-a")
            await claim_document(session, doc_id, OWNER, "job-2", force=True)
            # the previous generation stays readable while the new one is computed
            assert len(await _rows(session_factory, doc_id)) == 3
            await complete_embedding(session, doc_id, "job-2", _chunks(2, "new"), _vectors(2), "model-b")

        rows = await _rows(session_factory, doc_id)
        assert [r.chunk_text for r in rows] == ["new 0", "new 1"]
        assert {r.model for r in rows} == {"model-b"}
        assert {r.run_id for r in rows} == {"job-2"}

    asyncio.run(scenario())


def test_failed_reembed_keeps_last_good_rows(session_factory) -> None:
    async def scenario():
        doc_id = await _new_document(session_factory)
        async with session_factory() as session:
            await claim_document(session, doc_id, OWNER, "job-1")
            await complete_embedding(session, doc_id, "job-1", _chunks(3), _vectors(3), "model-a")
            await claim_document(session, doc_id, OWNER, "job-2", force=True)
            assert await fail_embedding(session, doc_id, "job-2", "provider down") is True

        doc = await _document(session_factory, doc_id)
        assert doc.embedding_status is EmbeddingStatus.FAILED
        assert doc.embedded is False
        assert doc.embedding_run_id == "job-1"
        assert doc.embedding_error == "provider down"
        assert len(await _rows(session_factory, doc_id)) == 3

    asyncio.run(scenario())
