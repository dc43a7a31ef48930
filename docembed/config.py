# docembed/config.py
import logging
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # DB
    database_url: str = Field("postgresql+asyncpg://localhost:5432/docembed")

    # Queue / Redis
    redis_url: str = Field("redis://localhost:6379/0")
    queue_name: str = Field("embedding_jobs")
    worker_concurrency: int = Field(4)
    job_max_attempts: int = Field(3)
    retry_backoff_base: float = Field(2.0)   # seconds, doubled per attempt
    retry_backoff_max: float = Field(300.0)
    claim_ttl_seconds: int = Field(30 * 60)  # processing claims older than this are considered abandoned
    stale_claim_sweep_interval: float = Field(60.0)
    # move jobs left unacknowledged by a crashed worker back to ready; only safe with a single worker process
    requeue_unacked_on_start: bool = Field(False)

    # Embedding provider (OpenAI-compatible /embeddings endpoint)
    embedding_base_url: str = Field("https://api.deepinfra.com/v1/openai")
    embedding_api_token: str = Field("")
    embedding_model: str = Field("BAAI/bge-large-en-v1.5")
    embedding_dimensions: int = Field(1024)
    embed_batch: int = Field(64)
    embed_timeout: float = Field(30.0)
    embed_http_retries: int = Field(2)

    # Chunking (characters)
    chunk_size: int = Field(4000)
    chunk_overlap: int = Field(600)

    # Vector DB
    qdrant_url: str = Field("http://localhost:6333")
    qdrant_collection: str = Field("document_chunks")
    vector_index_enabled: bool = Field(True)

    # Uploads / storage
    upload_dir: str = Field(".data")
    max_upload_size: int = Field(50 * 1024 * 1024)
    allowed_extensions: List[str] = Field([".pdf", ".txt", ".md"])
    default_storage_provider: str = Field("local")

    # MinIO
    minio_endpoint: Optional[str] = Field(None)
    minio_access_key: Optional[str] = Field(None)
    minio_secret_key: Optional[str] = Field(None)
    minio_bucket: str = Field("documents")
    minio_secure: bool = Field(False)

    # Deleting a document with no owner hands it to the caller instead of refusing
    adopt_orphaned_documents: bool = Field(False)

    # HTTP
    cors_origins: List[str] = Field(["*"])
    log_level: str = Field("INFO")
    prometheus_enabled: bool = Field(True)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("allowed_extensions", "cors_origins", mode="before")
    def _split_csv(cls, v):
        """
        Allows list settings as comma-separated strings in env, or as a list.
        Example: ALLOWED_EXTENSIONS='.pdf,.txt'
        """
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("default_storage_provider", mode="before")
    def _normalize_provider(cls, v):
        v = str(v or "local").strip().lower()
        if v not in ("local", "minio"):
            raise ValueError("DEFAULT_STORAGE_PROVIDER must be 'local' or 'minio'")
        return v

    @field_validator(
        "embedding_dimensions", "embed_batch", "chunk_size", "worker_concurrency", "job_max_attempts",
        mode="before",
    )
    def _positive_int(cls, v, info):
        """
        Accepts the env value as string or int and ensures it's a positive int.
        """
        if isinstance(v, str) and v.strip().isdigit():
            v = int(v)
        if not isinstance(v, int) or v <= 0:
            raise ValueError(f"{info.field_name.upper()} must be a positive integer")
        return v


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic root handler for processes that are not run under uvicorn."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
