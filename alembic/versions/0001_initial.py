"""documents, chunk rows and collections

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

CATEGORIES = ("general", "products", "offers", "brand", "audience", "competitors", "content")
STATUSES = ("pending", "processing", "completed", "failed")
PROVIDERS = ("local", "minio")


def _enum(values, name):
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade():
    op.create_table(
        "documents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("file_type", sa.String(), nullable=True),
        sa.Column("category", _enum(CATEGORIES, "document_category"), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("storage_provider", _enum(PROVIDERS, "storage_provider"), nullable=True),
        sa.Column("storage_key", sa.Text(), nullable=True),
        sa.Column("embedding_status", _enum(STATUSES, "embedding_status"), nullable=False),
        sa.Column("embedding_progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("embedding_model", sa.String(), nullable=True),
        sa.Column("embedding_error", sa.Text(), nullable=True),
        sa.Column("chunks_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_embedded_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("embedding_run_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_documents_owner_id", "documents", ["owner_id"])
    op.create_index("ix_documents_embedding_status", "documents", ["embedding_status"])
    op.create_index("documents_owner_category_idx", "documents", ["owner_id", "category"])
    op.create_index("documents_storage_key_idx", "documents", ["storage_key"])

    op.create_table(
        "document_embeddings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("start_pos", sa.Integer(), nullable=True),
        sa.Column("end_pos", sa.Integer(), nullable=True),
        sa.Column("embedding", sa.JSON(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_document_embeddings_document_id", "document_embeddings", ["document_id"])
    op.create_index("document_embeddings_document_chunk_idx", "document_embeddings", ["document_id", "chunk_index"])

    op.create_table(
        "document_collections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("document_collections.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("order_idx", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("color", sa.String(), nullable=True),
        sa.Column("icon", sa.String(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_document_collections_owner_id", "document_collections", ["owner_id"])
    op.create_index("ix_document_collections_parent_id", "document_collections", ["parent_id"])

    op.create_table(
        "document_collection_items",
        sa.Column(
            "document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column(
            "collection_id",
            sa.Integer(),
            sa.ForeignKey("document_collections.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )


def downgrade():
    op.drop_table("document_collection_items")
    op.drop_index("ix_document_collections_parent_id", table_name="document_collections")
    op.drop_index("ix_document_collections_owner_id", table_name="document_collections")
    op.drop_table("document_collections")
    op.drop_index("document_embeddings_document_chunk_idx", table_name="document_embeddings")
    op.drop_index("ix_document_embeddings_document_id", table_name="document_embeddings")
    op.drop_table("document_embeddings")
    op.drop_index("documents_storage_key_idx", table_name="documents")
    op.drop_index("documents_owner_category_idx", table_name="documents")
    op.drop_index("ix_documents_embedding_status", table_name="documents")
    op.drop_index("ix_documents_owner_id", table_name="documents")
    op.drop_table("documents")
