"""Unit tests for the document record store."""

import asyncio
from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import event, func, select

from docembed.chunking import Chunk
from docembed.collection_graph import add_membership, create_collection
from docembed.documents import (
    Completion,
    claim_document,
    complete_embedding,
    create_document,
    get_document_stats,
    get_embedding_status,
    list_chunks,
    list_documents,
    release_stale_claims,
    update_content,
)
from docembed.errors import NotFound
from docembed.lifecycle import EmbeddingStatus
from docembed.models import DocumentCategory, DocumentEmbedding, utcnow
from docembed.schemas import DocumentPatch

OWNER = "user-1"
OTHER = "user-2"


def _chunks(n):
    return [Chunk(index=i, text=f"chunk {i}", start=i * 10, end=i * 10 + 8) for i in range(n)]


def _vectors(n):
    return [[float(i), 0.0, 1.0, 0.5] for i in range(n)]


async def _embedded_document(session, n_chunks=3, content="old text", **kwargs):
    doc = await create_document(session, OWNER, "Title", content, **kwargs)
    await claim_document(session, doc.id, OWNER, "job-1")
    outcome = await complete_embedding(session, doc.id, "job-1", _chunks(n_chunks), _vectors(n_chunks), "model-a")
    assert outcome is Completion.COMPLETED
    return doc


async def _chunk_rows(session, document_id):
    return await session.scalar(
        select(func.count(DocumentEmbedding.id)).where(DocumentEmbedding.document_id == document_id)
    )


def test_create_document_starts_pending(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            doc = await create_document(session, OWNER, "Notes", "hello", DocumentCategory.BRAND, "txt")
            assert doc.embedding_status is EmbeddingStatus.PENDING
            assert doc.embedded is False
            assert doc.chunks_count == 0
            assert doc.category is DocumentCategory.BRAND

    asyncio.run(scenario())


def test_content_edit_drops_chunks_and_resets(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            doc = await _embedded_document(session, n_chunks=3)
            assert await _chunk_rows(session, doc.id) == 3

            result = await update_content(session, doc.id, OWNER, DocumentPatch(content="new text"))

            assert result.invalidated is True
            assert result.removed_chunks == 3
            assert result.document.embedded is False
            assert result.document.embedding_status is EmbeddingStatus.PENDING
            assert result.document.chunks_count == 0
            assert result.document.embedding_run_id is None
            assert await _chunk_rows(session, doc.id) == 0

    asyncio.run(scenario())


def test_metadata_edit_keeps_chunks(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            doc = await _embedded_document(session, n_chunks=2)
            result = await update_content(
                session, doc.id, OWNER, DocumentPatch(category=DocumentCategory.OFFERS, content="old text")
            )
            assert result.invalidated is False
            assert result.document.embedded is True
            assert await _chunk_rows(session, doc.id) == 2

    asyncio.run(scenario())


def test_blank_title_patch_rejected() -> None:
    with pytest.raises(ValidationError):
        DocumentPatch(title="")
    assert DocumentPatch(content="body").title is None


def test_update_of_foreign_document_is_not_found(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            doc = await create_document(session, OWNER, "Mine", "text")
            with pytest.raises(NotFound):
                await update_content(session, doc.id, OTHER, DocumentPatch(title="stolen"))

    asyncio.run(scenario())


def test_embedding_status_view(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            doc = await _embedded_document(session, n_chunks=4)
            view = await get_embedding_status(session, doc.id, OWNER)
            assert view.status is EmbeddingStatus.COMPLETED
            assert view.progress == 100
            assert view.chunks_count == 4
            assert view.model == "model-a"
            assert view.last_embedded_at is not None
            with pytest.raises(NotFound):
                await get_embedding_status(session, doc.id, OTHER)

    asyncio.run(scenario())


def test_list_documents_filters_and_counts(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            a = await _embedded_document(session, n_chunks=2, content="Quarterly Report on sales")
            b = await create_document(session, OWNER, "Brand book", "colours and fonts", DocumentCategory.BRAND)
            await create_document(session, OWNER, "Unrelated", "nothing here")
            await create_document(session, OTHER, "Report", "someone else's report")
            coll = await create_collection(session, OWNER, "Finance")
            await add_membership(session, a.id, coll.id, OWNER)

            found = await list_documents(session, OWNER, search="report")
            assert [d.id for d in found.items] == [a.id]
            assert found.items[0].embedding_count == 2

            brand = await list_documents(session, OWNER, category="brand")
            assert [d.id for d in brand.items] == [b.id]

            in_coll = await list_documents(session, OWNER, collection_id=coll.id)
            assert in_coll.total_count == 1

            page = await list_documents(session, OWNER, page=2, page_size=2)
            assert page.total_count == 3
            assert len(page.items) == 1

    asyncio.run(scenario())


def test_search_treats_wildcards_literally(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            await create_document(session, OWNER, "Growth 100%", "x")
            await create_document(session, OWNER, "Growth 1000", "y")
            found = await list_documents(session, OWNER, search="100%")
            assert [d.title for d in found.items] == ["Growth 100%"]

    asyncio.run(scenario())


def test_embedding_counts_use_one_query_per_page(session_factory) -> None:
    statements = []
    engine = session_factory.kw["bind"].sync_engine

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    async def scenario():
        async with session_factory() as session:
            for i in range(5):
                await _embedded_document(session, n_chunks=1, content=f"doc {i}")
            event.listen(engine, "before_cursor_execute", record)
            try:
                page = await list_documents(session, OWNER, page_size=10)
            finally:
                event.remove(engine, "before_cursor_execute", record)
            assert len(page.items) == 5
            assert all(item.embedding_count == 1 for item in page.items)

    asyncio.run(scenario())
    assert len([s for s in statements if "document_embeddings" in s]) == 1


def test_stats_group_by_status(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            await _embedded_document(session, n_chunks=3)
            await create_document(session, OWNER, "Waiting", "text")
            stats = await get_document_stats(session, OWNER)
            assert stats.total == 2
            assert stats.embedded == 1
            assert stats.pending == 1
            assert stats.chunks == 3

    asyncio.run(scenario())


def test_list_chunks_ordered(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            doc = await _embedded_document(session, n_chunks=3)
            rows = await list_chunks(session, doc.id, OWNER)
            assert [r.chunk_index for r in rows] == [0, 1, 2]
            assert all(r.run_id == "job-1" for r in rows)

    asyncio.run(scenario())


def test_release_stale_claims_fails_abandoned_work(session_factory) -> None:
    async def scenario():
        async with session_factory() as session:
            doc = await create_document(session, OWNER, "Stuck", "text")
            await claim_document(session, doc.id, OWNER, "job-x")

            assert await release_stale_claims(session, timedelta(minutes=30)) == []
            released = await release_stale_claims(session, timedelta(minutes=30), now=utcnow() + timedelta(hours=1))
            assert released == [doc.id]

            view = await get_embedding_status(session, doc.id, OWNER)
            assert view.status is EmbeddingStatus.FAILED
            assert view.error == "embedding claim expired"

    asyncio.run(scenario())
