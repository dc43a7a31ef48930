# docembed/vector_index.py
"""
Qdrant mirror of the chunk table, consumed by the downstream search component.

The SQL chunk rows are authoritative. A re-embed is staged here first: the new
run's points are upserted next to the old ones (search filters on the
document's live ``embedding_run_id``), the SQL swap commits, then stale runs
are deleted.
"""
import asyncio
import logging
import threading
import uuid
from typing import Iterable, List, Optional, Sequence

from qdrant_client import QdrantClient
from qdrant_client.http import models as rest_models

from docembed.config import settings

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_client = None


def point_id(run_id: str, chunk_index: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"docembed:{run_id}:{chunk_index}"))


def _document_filter(document_id: int, keep_run_id: Optional[str] = None) -> rest_models.Filter:
    must_not = []
    if keep_run_id is not None:
        must_not.append(rest_models.FieldCondition(key="run_id", match=rest_models.MatchValue(value=keep_run_id)))
    return rest_models.Filter(
        must=[rest_models.FieldCondition(key="document_id", match=rest_models.MatchValue(value=document_id))],
        must_not=must_not or None,
    )


class VectorIndex:
    def __init__(self, client: QdrantClient, collection: str, vector_size: int, distance: str = "Cosine"):
        self.client = client
        self.collection = collection
        self.vector_size = vector_size
        self.distance = distance
        self._ready = False

    def ensure_collection(self) -> None:
        if self._ready:
            return
        if self.client.collection_exists(collection_name=self.collection):
            logger.info("Qdrant collection '%s' already exists.", self.collection)
        else:
            self.client.create_collection(
                collection_name=self.collection,
                vectors_config=rest_models.VectorParams(
                    size=self.vector_size, distance=rest_models.Distance(self.distance)
                ),
            )
            logger.info("Created qdrant collection '%s' with vector size %s", self.collection, self.vector_size)
        self._ready = True

    def _upsert(self, points: List[rest_models.PointStruct]) -> None:
        self.ensure_collection()
        for start in range(0, len(points), settings.embed_batch):
            self.client.upsert(collection_name=self.collection, points=points[start:start + settings.embed_batch])

    async def upsert_run(
        self,
        document_id: int,
        owner_id: Optional[str],
        run_id: str,
        model: str,
        chunks: Sequence,
        vectors: Sequence[Sequence[float]],
    ) -> None:
        if len(chunks) != len(vectors):
            raise ValueError(f"chunk/embedding mismatch: {len(chunks)} vs {len(vectors)}")
        points = [
            rest_models.PointStruct(
                id=point_id(run_id, chunk.index),
                vector=list(vec),
                payload={
                    "document_id": document_id,
                    "owner_id": owner_id,
                    "run_id": run_id,
                    "model": model,
                    "chunk_index": chunk.index,
                    "text": chunk.text,
                    "start_pos": chunk.start,
                    "end_pos": chunk.end,
                },
            )
            for chunk, vec in zip(chunks, vectors)
        ]
        if points:
            await asyncio.to_thread(self._upsert, points)

    def _delete(self, selector: rest_models.Filter) -> None:
        self.ensure_collection()
        self.client.delete(
            collection_name=self.collection,
            points_selector=rest_models.FilterSelector(filter=selector),
        )

    async def delete_run(self, document_id: int, run_id: str) -> None:
        selector = rest_models.Filter(
            must=[
                rest_models.FieldCondition(key="document_id", match=rest_models.MatchValue(value=document_id)),
                rest_models.FieldCondition(key="run_id", match=rest_models.MatchValue(value=run_id)),
            ]
        )
        await asyncio.to_thread(self._delete, selector)

    async def delete_stale_runs(self, document_id: int, keep_run_id: Optional[str]) -> None:
        """Drop every point of ``document_id`` not belonging to ``keep_run_id`` (all of them if None)."""
        await asyncio.to_thread(self._delete, _document_filter(document_id, keep_run_id))

    async def delete_documents(self, document_ids: Iterable[int]) -> None:
        ids = list(document_ids)
        if not ids:
            return
        selector = rest_models.Filter(
            must=[rest_models.FieldCondition(key="document_id", match=rest_models.MatchAny(any=ids))]
        )
        await asyncio.to_thread(self._delete, selector)

    def _count(self, selector: rest_models.Filter) -> int:
        self.ensure_collection()
        return self.client.count(collection_name=self.collection, count_filter=selector, exact=True).count

    async def count(self, document_id: int, run_id: Optional[str] = None) -> int:
        must = [rest_models.FieldCondition(key="document_id", match=rest_models.MatchValue(value=document_id))]
        if run_id is not None:
            must.append(rest_models.FieldCondition(key="run_id", match=rest_models.MatchValue(value=run_id)))
        return await asyncio.to_thread(self._count, rest_models.Filter(must=must))

    async def ping(self, timeout: float = 2.0) -> bool:
        await asyncio.wait_for(asyncio.to_thread(self.client.get_collections), timeout=timeout)
        return True


class NullVectorIndex:
    """Used when VECTOR_INDEX_ENABLED is off; the SQL chunk table is the only copy."""

    async def upsert_run(self, document_id, owner_id, run_id, model, chunks, vectors):
        return None

    async def delete_run(self, document_id, run_id):
        return None

    async def delete_stale_runs(self, document_id, keep_run_id):
        return None

    async def delete_documents(self, document_ids):
        return None

    async def count(self, document_id, run_id=None):
        return 0

    async def ping(self, timeout: float = 2.0):
        return True


def get_qdrant_client() -> QdrantClient:
    global _client
    if _client is None:
        with _lock:
            if _client is None:
                _client = QdrantClient(url=settings.qdrant_url, timeout=30)
    return _client


def get_vector_index():
    if not settings.vector_index_enabled:
        return NullVectorIndex()
    return VectorIndex(get_qdrant_client(), settings.qdrant_collection, settings.embedding_dimensions)
