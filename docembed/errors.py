# docembed/errors.py
"""Error taxonomy shared by the record store, worker, orchestration and cleanup paths."""


class PipelineError(Exception):
    """Base class for every error raised by docembed."""


class NotFound(PipelineError):
    """Document or collection is absent, soft-deleted, or not owned by the caller."""


class AlreadyInFlight(PipelineError):
    """An embedding claim is already held for the document."""

    def __init__(self, document_id: int):
        super().__init__(f"document {document_id} is already being processed")
        self.document_id = document_id


class AlreadyEmbedded(PipelineError):
    """Non-forced submission for a document whose current content is already embedded."""

    def __init__(self, document_id: int, chunks_count: int):
        super().__init__(f"document {document_id} is already embedded")
        self.document_id = document_id
        self.chunks_count = chunks_count


class TransientProviderError(PipelineError):
    """Embedding model or storage temporarily unavailable; safe to retry."""


class PermanentContentError(PipelineError):
    """Content cannot be chunked or embedded; retrying will not help."""


class CollectionNameConflict(PipelineError):
    """A sibling collection with the same name already exists."""


class StorageError(PipelineError):
    """Base class for storage provider failures."""


class StorageNotFoundError(StorageError):
    pass


class StorageIOError(StorageError):
    pass


class StorageCleanupError(StorageError):
    """Best-effort blob deletion failed. Logged by the owner of the delete, never raised to callers."""

    def __init__(self, key: str, provider: str, cause: Exception):
        super().__init__(f"failed to delete {provider}:{key}: {cause}")
        self.key = key
        self.provider = provider
        self.cause = cause
