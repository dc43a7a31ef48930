# docembed/documents.py
"""
Document record store.

Every read and write is scoped by ``owner_id``. Embedding lifecycle fields are
written only through the claim/progress/complete/fail functions at the bottom
of this module, each a single conditional UPDATE keyed by the job's claim token,
so a worker that lost its claim (document edited, deleted, or claim expired)
can never overwrite newer state.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docembed.errors import AlreadyEmbedded, AlreadyInFlight, NotFound
from docembed.lifecycle import EmbeddingStatus, check_transition, claimable_from
from docembed.models import (
    Document,
    DocumentCategory,
    DocumentCollection,
    DocumentCollectionItem,
    DocumentEmbedding,
    utcnow,
)
from docembed.schemas import (
    DocumentListItem,
    DocumentPage,
    DocumentPatch,
    DocumentStats,
    EmbeddingStatusView,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


@dataclass
class ContentUpdate:
    document: Document
    invalidated: bool
    removed_chunks: int = 0


class Completion(str, enum.Enum):
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"  # duplicate notification, nothing written
    SUPERSEDED = "superseded"  # claim lost: document edited, deleted or re-claimed


def _live(stmt, owner_id):
    return stmt.where(Document.owner_id == owner_id, Document.deleted_at.is_(None))


async def get_document(session: AsyncSession, document_id: int, owner_id: str) -> Document:
    # lifecycle writes are Core UPDATEs, so never trust a cached instance
    doc = await session.scalar(
        _live(select(Document).where(Document.id == document_id), owner_id).execution_options(populate_existing=True)
    )
    if doc is None:
        raise NotFound(f"document {document_id} not found")
    return doc


async def create_document(
    session: AsyncSession,
    owner_id: str,
    title: str,
    content: str,
    category=DocumentCategory.GENERAL,
    file_type: Optional[str] = None,
    *,
    storage_provider=None,
    storage_key: Optional[str] = None,
    source_url: Optional[str] = None,
) -> Document:
    doc = Document(
        owner_id=owner_id,
        title=title,
        content=content or "",
        category=DocumentCategory(category or DocumentCategory.GENERAL),
        file_type=file_type,
        storage_provider=storage_provider,
        storage_key=storage_key,
        source_url=source_url,
        embedding_status=EmbeddingStatus.PENDING,
        embedding_progress=0,
        chunks_count=0,
    )
    session.add(doc)
    await session.commit()
    logger.info("Created document id=%s owner=%s chars=%d", doc.id, owner_id, len(doc.content))
    return doc


async def update_content(
    session: AsyncSession,
    document_id: int,
    owner_id: str,
    patch: DocumentPatch,
    vector_index=None,
) -> ContentUpdate:
    """
    Apply ``patch``. A changed title or content resets the document to
    ``pending`` and removes every chunk row in the same transaction, so no
    vector computed from old text survives the edit.
    """
    doc = await get_document(session, document_id, owner_id)
    changes = patch.model_dump(exclude_unset=True)
    invalidated = any(
        field in changes and changes[field] is not None and changes[field] != getattr(doc, field)
        for field in ("title", "content")
    )
    for field, value in changes.items():
        if value is not None:
            setattr(doc, field, value)

    removed = 0
    if invalidated:
        result = await session.execute(delete(DocumentEmbedding).where(DocumentEmbedding.document_id == doc.id))
        removed = result.rowcount or 0
        doc.embedding_status = check_transition(EmbeddingStatus(doc.embedding_status), EmbeddingStatus.PENDING)
        doc.embedding_progress = 0
        doc.chunks_count = 0
        doc.embedding_model = None
        doc.embedding_error = None
        doc.embedding_run_id = None
        # an in-flight worker holding the old claim will find it gone at completion
        doc.claim_token = None
        doc.claimed_at = None
    await session.commit()

    if invalidated:
        logger.info("Document %s content changed; removed %d stale chunks", doc.id, removed)
        if vector_index is not None:
            try:
                await vector_index.delete_stale_runs(doc.id, None)
            except Exception:
                # the document has no live run id any more, so leftover points are unreachable
                logger.exception("Failed to purge vector index points for document %s", doc.id)
    return ContentUpdate(document=doc, invalidated=invalidated, removed_chunks=removed)


async def get_embedding_status(session: AsyncSession, document_id: int, owner_id: str) -> EmbeddingStatusView:
    doc = await get_document(session, document_id, owner_id)
    return EmbeddingStatusView(
        document_id=doc.id,
        status=doc.embedding_status,
        progress=doc.embedding_progress or 0,
        chunks_count=doc.chunks_count or 0,
        model=doc.embedding_model,
        last_embedded_at=doc.last_embedded_at,
        error=doc.embedding_error,
    )


async def embedding_counts(session: AsyncSession, document_ids: Sequence[int]) -> Dict[int, int]:
    """Chunk rows per document, one grouped query for the whole id list."""
    if not document_ids:
        return {}
    rows = await session.execute(
        select(DocumentEmbedding.document_id, func.count(DocumentEmbedding.id))
        .where(DocumentEmbedding.document_id.in_(list(document_ids)))
        .group_by(DocumentEmbedding.document_id)
    )
    return {doc_id: count for doc_id, count in rows.all()}


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def list_documents(
    session: AsyncSession,
    owner_id: str,
    *,
    collection_id: Optional[int] = None,
    category=None,
    search: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
) -> DocumentPage:
    page = max(1, page)
    page_size = max(1, min(page_size, MAX_PAGE_SIZE))

    stmt = _live(select(Document), owner_id)
    if collection_id is not None:
        stmt = (
            stmt.join(DocumentCollectionItem, DocumentCollectionItem.document_id == Document.id)
            .join(DocumentCollection, DocumentCollection.id == DocumentCollectionItem.collection_id)
            .where(
                DocumentCollectionItem.collection_id == collection_id,
                DocumentCollection.owner_id == owner_id,
                DocumentCollection.deleted_at.is_(None),
            )
        )
    if category:
        stmt = stmt.where(Document.category == DocumentCategory(category))
    if search and search.strip():
        term = f"%{_escape_like(search.strip())}%"
        stmt = stmt.where(or_(Document.title.ilike(term, escape="\\"), Document.content.ilike(term, escape="\\")))

    total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
    docs = (
        await session.scalars(
            stmt.order_by(Document.created_at.desc(), Document.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .execution_options(populate_existing=True)
        )
    ).all()
    counts = await embedding_counts(session, [d.id for d in docs])

    items = []
    for doc in docs:
        item = DocumentListItem.model_validate(doc)
        item.embedding_count = counts.get(doc.id, 0)
        items.append(item)
    return DocumentPage(items=items, total_count=total or 0, page=page, page_size=page_size)


async def get_document_stats(session: AsyncSession, owner_id: str) -> DocumentStats:
    rows = await session.execute(
        _live(
            select(Document.embedding_status, func.count(Document.id), func.coalesce(func.sum(Document.chunks_count), 0)),
            owner_id,
        ).group_by(Document.embedding_status)
    )
    stats = DocumentStats()
    for status, count, chunks in rows.all():
        status = EmbeddingStatus(status)
        stats.total += count
        stats.chunks += int(chunks or 0)
        if status is EmbeddingStatus.COMPLETED:
            stats.embedded += count
        else:
            setattr(stats, status.value, getattr(stats, status.value) + count)
    return stats


async def list_chunks(session: AsyncSession, document_id: int, owner_id: str) -> List[DocumentEmbedding]:
    doc = await get_document(session, document_id, owner_id)
    return list(
        (
            await session.scalars(
                select(DocumentEmbedding)
                .where(DocumentEmbedding.document_id == doc.id)
                .order_by(DocumentEmbedding.chunk_index)
            )
        ).all()
    )


# ---- embedding lifecycle writes (worker / orchestration callbacks) ----

async def claim_document(
    session: AsyncSession,
    document_id: int,
    owner_id: str,
    job_id: str,
    force: bool = False,
) -> Document:
    """
    Atomically move the document to ``processing`` under ``job_id``.

    The claim is one conditional UPDATE (compare-and-swap on the stored status),
    so of two concurrent claimants exactly one sees rowcount 1. Re-claiming with
    the token already held succeeds, which lets a worker confirm a claim taken
    at submission time.
    """
    result = await session.execute(
        _live(update(Document).where(Document.id == document_id), owner_id)
        .where(
            or_(
                Document.claim_token == job_id,
                Document.embedding_status.in_(list(claimable_from(force))),
            )
        )
        .values(
            embedding_status=EmbeddingStatus.PROCESSING,
            embedding_progress=0,
            embedding_error=None,
            claim_token=job_id,
            claimed_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        await session.commit()
        return await session.get(Document, document_id, populate_existing=True)

    await session.rollback()
    doc = await session.scalar(
        _live(select(Document).where(Document.id == document_id), owner_id).execution_options(populate_existing=True)
    )
    if doc is None:
        raise NotFound(f"document {document_id} not found")
    if doc.embedding_status == EmbeddingStatus.COMPLETED and not force:
        raise AlreadyEmbedded(doc.id, doc.chunks_count or 0)
    logger.info("Claim rejected for document %s (status=%s)", document_id, doc.embedding_status.value)
    raise AlreadyInFlight(document_id)


async def report_progress(session: AsyncSession, document_id: int, job_id: str, progress: int) -> bool:
    """Record progress (0-99 while running) and refresh the claim heartbeat."""
    result = await session.execute(
        update(Document)
        .where(Document.id == document_id, Document.claim_token == job_id)
        .values(embedding_progress=max(0, min(int(progress), 99)), claimed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def complete_embedding(
    session: AsyncSession,
    document_id: int,
    job_id: str,
    chunks: Sequence,
    vectors: Sequence[Sequence[float]],
    model: str,
) -> Completion:
    """
    Swap in the new chunk rows and finalize the document, in one transaction.

    Old rows are deleted and new ones inserted before the commit, so readers
    see either the previous generation or the new one, never a mix and never
    an empty set in between. A duplicate call for a run that already completed
    is a no-op.
    """
    if len(chunks) != len(vectors):
        raise ValueError(f"chunk/embedding mismatch: {len(chunks)} vs {len(vectors)}")

    now = utcnow()
    result = await session.execute(
        update(Document)
        .where(
            Document.id == document_id,
            Document.claim_token == job_id,
            Document.embedding_status == EmbeddingStatus.PROCESSING,
            Document.deleted_at.is_(None),
        )
        .values(
            embedding_status=EmbeddingStatus.COMPLETED,
            embedding_progress=100,
            chunks_count=len(chunks),
            embedding_model=model,
            embedding_error=None,
            last_embedded_at=now,
            embedding_run_id=job_id,
            claim_token=None,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        doc = await session.get(Document, document_id, populate_existing=True)
        if (
            doc is not None
            and doc.deleted_at is None
            and doc.embedding_status == EmbeddingStatus.COMPLETED
            and doc.embedding_run_id == job_id
        ):
            return Completion.ALREADY_COMPLETED
        logger.info("Completion for document %s by job %s superseded; discarding results", document_id, job_id)
        return Completion.SUPERSEDED

    await session.execute(delete(DocumentEmbedding).where(DocumentEmbedding.document_id == document_id))
    if chunks:
        await session.execute(
            insert(DocumentEmbedding),
            [
                {
                    "document_id": document_id,
                    "chunk_index": chunk.index,
                    "chunk_text": chunk.text,
                    "start_pos": chunk.start,
                    "end_pos": chunk.end,
                    "embedding": list(vec),
                    "model": model,
                    "run_id": job_id,
                }
                for chunk, vec in zip(chunks, vectors)
            ],
        )
    await session.commit()
    return Completion.COMPLETED


async def fail_embedding(session: AsyncSession, document_id: int, job_id: str, error: str) -> bool:
    """
    Mark the attempt failed and release the claim. Chunk rows and the live run
    id are left alone: a failed re-embed keeps serving the last good vectors.
    """
    result = await session.execute(
        update(Document)
        .where(Document.id == document_id, Document.claim_token == job_id, Document.deleted_at.is_(None))
        .values(
            embedding_status=EmbeddingStatus.FAILED,
            embedding_progress=0,
            embedding_error=(error or "")[:2000],
            claim_token=None,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def release_stale_claims(session: AsyncSession, older_than: timedelta, now: datetime = None) -> List[int]:
    """Fail ``processing`` documents whose claim heartbeat is older than ``older_than``."""
    cutoff = (now or utcnow()) - older_than
    stale = (
        await session.scalars(
            select(Document.id).where(
                Document.embedding_status == EmbeddingStatus.PROCESSING,
                Document.claimed_at < cutoff,
            )
        )
    ).all()
    if not stale:
        return []
    await session.execute(
        update(Document)
        .where(
            Document.id.in_(stale),
            Document.embedding_status == EmbeddingStatus.PROCESSING,
            Document.claimed_at < cutoff,
        )
        .values(
            embedding_status=EmbeddingStatus.FAILED,
            embedding_progress=0,
            embedding_error="embedding claim expired",
            claim_token=None,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.warning("Released %d stale embedding claims: %s", len(stale), list(stale))
    return list(stale)
