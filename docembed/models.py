# docembed/models.py
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import declarative_base

from docembed.lifecycle import EmbeddingStatus

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class DocumentCategory(str, enum.Enum):
    GENERAL = "general"
    PRODUCTS = "products"
    OFFERS = "offers"
    BRAND = "brand"
    AUDIENCE = "audience"
    COMPETITORS = "competitors"
    CONTENT = "content"


class StorageProvider(str, enum.Enum):
    LOCAL = "local"
    MINIO = "minio"


def _enum(enum_cls, name):
    # store the .value strings, not the member names
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e], native_enum=False)


class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=True, index=True)  # null only for orphaned legacy rows
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default="")
    file_type = Column(String, nullable=True)
    category = Column(_enum(DocumentCategory, "document_category"), nullable=False, default=DocumentCategory.GENERAL)
    source_url = Column(Text, nullable=True)

    storage_provider = Column(_enum(StorageProvider, "storage_provider"), nullable=True)
    storage_key = Column(Text, nullable=True)

    embedding_status = Column(
        _enum(EmbeddingStatus, "embedding_status"), nullable=False, default=EmbeddingStatus.PENDING, index=True
    )
    embedding_progress = Column(Integer, nullable=False, default=0)  # percent
    embedding_model = Column(String, nullable=True)
    embedding_error = Column(Text, nullable=True)
    chunks_count = Column(Integer, nullable=False, default=0)
    last_embedded_at = Column(TIMESTAMP(timezone=True), nullable=True)

    # single-flight claim: id of the job allowed to write embedding state
    claim_token = Column(String, nullable=True)
    claimed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    # job id of the vector generation currently served to readers
    embedding_run_id = Column(String, nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index("documents_owner_category_idx", "owner_id", "category"),
        Index("documents_storage_key_idx", "storage_key"),
    )

    @hybrid_property
    def embedded(self):
        return self.embedding_status == EmbeddingStatus.COMPLETED

    def __repr__(self):
        return f"<Document id={self.id} status={self.embedding_status} chunks={self.chunks_count}>"


class DocumentEmbedding(Base):
    """One chunk of a document and its vector."""

    __tablename__ = "document_embeddings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False, default=0)
    chunk_text = Column(Text, nullable=False)
    start_pos = Column(Integer, nullable=True)
    end_pos = Column(Integer, nullable=True)
    embedding = Column(JSON, nullable=False)
    model = Column(String, nullable=False)
    run_id = Column(String, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("document_embeddings_document_chunk_idx", "document_id", "chunk_index"),)


class DocumentCollection(Base):
    __tablename__ = "document_collections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    parent_id = Column(Integer, ForeignKey("document_collections.id", ondelete="CASCADE"), nullable=True, index=True)
    order_idx = Column(Integer, nullable=False, default=0)
    color = Column(String, nullable=True)  # hex badge colour, e.g. "#a3e635"
    icon = Column(String, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(TIMESTAMP(timezone=True), nullable=True)


class DocumentCollectionItem(Base):
    __tablename__ = "document_collection_items"

    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True)
    collection_id = Column(Integer, ForeignKey("document_collections.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow, nullable=False)
