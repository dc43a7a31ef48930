# docembed/schemas.py
"""Pydantic shapes that cross a process or HTTP boundary."""
from datetime import datetime
from typing import Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from docembed.lifecycle import EmbeddingStatus
from docembed.models import DocumentCategory


# ---- job payloads ----
class DocumentEmbeddingJob(BaseModel):
    kind: Literal["document_embedding"] = "document_embedding"
    document_id: int
    owner_id: str
    force: bool = False


# each job kind gets its own model; handlers dispatch on ``kind``
JOB_KINDS: Dict[str, Type[BaseModel]] = {
    "document_embedding": DocumentEmbeddingJob,
}


def parse_job(data: dict) -> BaseModel:
    kind = data.get("kind")
    model = JOB_KINDS.get(kind)
    if model is None:
        raise ValueError(f"unknown job kind: {kind!r}")
    return model.model_validate(data)


# ---- documents ----
class DocumentPatch(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    content: Optional[str] = None
    category: Optional[DocumentCategory] = None
    source_url: Optional[str] = None


class EmbeddingStatusView(BaseModel):
    document_id: int
    status: EmbeddingStatus
    progress: int = Field(ge=0, le=100)
    chunks_count: int
    model: Optional[str] = None
    last_embedded_at: Optional[datetime] = None
    error: Optional[str] = None


class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    file_type: Optional[str] = None
    category: DocumentCategory
    embedded: bool
    embedding_status: EmbeddingStatus
    embedding_progress: int
    embedding_model: Optional[str] = None
    chunks_count: int
    last_embedded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class DocumentListItem(DocumentOut):
    # rows actually present in the chunk table, batched per page
    embedding_count: int = 0


class DocumentPage(BaseModel):
    items: List[DocumentListItem]
    total_count: int
    page: int
    page_size: int


class DocumentStats(BaseModel):
    total: int = 0
    embedded: int = 0
    pending: int = 0
    processing: int = 0
    failed: int = 0
    chunks: int = 0


class ChunkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    chunk_index: int
    chunk_text: str
    start_pos: Optional[int] = None
    end_pos: Optional[int] = None
    model: str


# ---- collections ----
class CollectionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    parent_id: Optional[int] = None
    color: Optional[str] = None
    icon: Optional[str] = None


class CollectionRename(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class CollectionOrder(BaseModel):
    id: int
    order_idx: int


class CollectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    parent_id: Optional[int] = None
    order_idx: int
    color: Optional[str] = None
    icon: Optional[str] = None
    document_count: int = 0


# ---- HTTP request bodies ----
class EmbedRequest(BaseModel):
    force: bool = False


class BatchDeleteRequest(BaseModel):
    document_ids: List[int] = Field(min_length=1)


class CollectionReorder(BaseModel):
    items: List[CollectionOrder] = Field(min_length=1)


# ---- HTTP responses ----
class SubmitOut(BaseModel):
    document_id: int
    job_id: Optional[str] = None
    status: EmbeddingStatus
    already_embedded: bool = False
    chunks_count: Optional[int] = None


class UploadOut(BaseModel):
    document: DocumentOut
    job_id: Optional[str] = None


class DeleteOut(BaseModel):
    deleted_ids: List[int]
    cleanup_errors: int = 0
