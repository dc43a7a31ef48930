# docembed/collection_graph.py
"""Folders of documents: parent/child edges plus a membership junction table."""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docembed.errors import CollectionNameConflict, NotFound
from docembed.models import Document, DocumentCollection, DocumentCollectionItem, utcnow
from docembed.schemas import CollectionOut

logger = logging.getLogger(__name__)


def _live(owner_id: str):
    return select(DocumentCollection).where(
        DocumentCollection.owner_id == owner_id, DocumentCollection.deleted_at.is_(None)
    )


async def get_collection(session: AsyncSession, collection_id: int, owner_id: str) -> DocumentCollection:
    coll = await session.scalar(_live(owner_id).where(DocumentCollection.id == collection_id))
    if coll is None:
        raise NotFound(f"collection {collection_id} not found")
    return coll


async def _ensure_unique_name(
    session: AsyncSession, owner_id: str, parent_id: Optional[int], name: str, exclude_id: Optional[int] = None
) -> None:
    # NULL parent ids never collide under a SQL unique constraint, so roots are checked here
    stmt = _live(owner_id).where(func.lower(DocumentCollection.name) == name.lower())
    if parent_id is None:
        stmt = stmt.where(DocumentCollection.parent_id.is_(None))
    else:
        stmt = stmt.where(DocumentCollection.parent_id == parent_id)
    if exclude_id is not None:
        stmt = stmt.where(DocumentCollection.id != exclude_id)
    if await session.scalar(stmt.limit(1)) is not None:
        raise CollectionNameConflict(f"a collection named {name!r} already exists here")


async def create_collection(
    session: AsyncSession,
    owner_id: str,
    name: str,
    parent_id: Optional[int] = None,
    color: Optional[str] = None,
    icon: Optional[str] = None,
) -> DocumentCollection:
    name = name.strip()
    if not name:
        raise ValueError("collection name must not be empty")
    if parent_id is not None:
        await get_collection(session, parent_id, owner_id)
    await _ensure_unique_name(session, owner_id, parent_id, name)

    next_idx = await session.scalar(
        select(func.coalesce(func.max(DocumentCollection.order_idx) + 1, 0)).where(
            DocumentCollection.owner_id == owner_id,
            DocumentCollection.deleted_at.is_(None),
            DocumentCollection.parent_id.is_(None) if parent_id is None else DocumentCollection.parent_id == parent_id,
        )
    )
    coll = DocumentCollection(
        owner_id=owner_id, name=name, parent_id=parent_id, color=color, icon=icon, order_idx=next_idx or 0
    )
    session.add(coll)
    await session.commit()
    return coll


async def rename_collection(session: AsyncSession, collection_id: int, owner_id: str, name: str) -> DocumentCollection:
    coll = await get_collection(session, collection_id, owner_id)
    name = name.strip()
    if not name:
        raise ValueError("collection name must not be empty")
    if name != coll.name:
        await _ensure_unique_name(session, owner_id, coll.parent_id, name, exclude_id=coll.id)
        coll.name = name
        await session.commit()
    return coll


async def delete_collection(session: AsyncSession, collection_id: int, owner_id: str) -> int:
    """
    Soft-delete the collection and clear its membership rows. Documents are
    untouched. Returns the number of memberships removed.
    """
    coll = await get_collection(session, collection_id, owner_id)
    coll.deleted_at = utcnow()
    result = await session.execute(
        delete(DocumentCollectionItem).where(DocumentCollectionItem.collection_id == coll.id)
    )
    await session.commit()
    removed = result.rowcount or 0
    logger.info("Deleted collection %s (%d memberships cleared)", coll.id, removed)
    return removed


async def _with_counts(session: AsyncSession, collections: Sequence[DocumentCollection]) -> List[CollectionOut]:
    ids = [c.id for c in collections]
    counts: Dict[int, int] = {}
    if ids:
        rows = await session.execute(
            select(DocumentCollectionItem.collection_id, func.count(DocumentCollectionItem.document_id))
            .join(Document, Document.id == DocumentCollectionItem.document_id)
            .where(DocumentCollectionItem.collection_id.in_(ids), Document.deleted_at.is_(None))
            .group_by(DocumentCollectionItem.collection_id)
        )
        counts = dict(rows.all())
    out = []
    for c in collections:
        item = CollectionOut.model_validate(c)
        item.document_count = counts.get(c.id, 0)
        out.append(item)
    return out


async def list_roots(session: AsyncSession, owner_id: str) -> List[CollectionOut]:
    rows = await session.scalars(
        _live(owner_id)
        .where(DocumentCollection.parent_id.is_(None))
        .order_by(DocumentCollection.order_idx, DocumentCollection.name)
    )
    return await _with_counts(session, rows.all())


async def list_children(session: AsyncSession, parent_id: int, owner_id: str) -> List[CollectionOut]:
    await get_collection(session, parent_id, owner_id)
    rows = await session.scalars(
        _live(owner_id)
        .where(DocumentCollection.parent_id == parent_id)
        .order_by(DocumentCollection.order_idx, DocumentCollection.name)
    )
    return await _with_counts(session, rows.all())


async def _owned_document_id(session: AsyncSession, document_id: int, owner_id: str) -> int:
    doc_id = await session.scalar(
        select(Document.id).where(
            Document.id == document_id, Document.owner_id == owner_id, Document.deleted_at.is_(None)
        )
    )
    if doc_id is None:
        raise NotFound(f"document {document_id} not found")
    return doc_id


async def add_membership(session: AsyncSession, document_id: int, collection_id: int, owner_id: str) -> bool:
    """Link a document to a collection. Returns False when the link already existed."""
    await get_collection(session, collection_id, owner_id)
    await _owned_document_id(session, document_id, owner_id)
    existing = await session.get(DocumentCollectionItem, (document_id, collection_id))
    if existing is not None:
        return False
    session.add(DocumentCollectionItem(document_id=document_id, collection_id=collection_id))
    try:
        await session.commit()
    except IntegrityError:
        # a concurrent request linked it first
        await session.rollback()
        return False
    return True


async def remove_membership(session: AsyncSession, document_id: int, collection_id: int, owner_id: str) -> bool:
    """Unlink a document from a collection. Returns False when there was no link."""
    await get_collection(session, collection_id, owner_id)
    result = await session.execute(
        delete(DocumentCollectionItem).where(
            DocumentCollectionItem.document_id == document_id,
            DocumentCollectionItem.collection_id == collection_id,
        )
    )
    await session.commit()
    return bool(result.rowcount)


async def list_document_collections(session: AsyncSession, document_id: int, owner_id: str) -> List[CollectionOut]:
    await _owned_document_id(session, document_id, owner_id)
    rows = await session.scalars(
        _live(owner_id)
        .join(DocumentCollectionItem, DocumentCollectionItem.collection_id == DocumentCollection.id)
        .where(DocumentCollectionItem.document_id == document_id)
        .order_by(DocumentCollection.name)
    )
    return await _with_counts(session, rows.all())


async def reorder_collections(session: AsyncSession, owner_id: str, orders: Sequence[Tuple[int, int]]) -> None:
    """Set ``order_idx`` for each ``(collection_id, order_idx)``; all ids must belong to the owner."""
    ids = [cid for cid, _ in orders]
    found = {c.id: c for c in (await session.scalars(_live(owner_id).where(DocumentCollection.id.in_(ids)))).all()}
    missing = set(ids) - set(found)
    if missing:
        raise NotFound(f"collections not found: {sorted(missing)}")
    for cid, idx in orders:
        found[cid].order_idx = idx
    await session.commit()
