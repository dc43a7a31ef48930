# docembed/cleanup.py
"""
Document deletion.

Order, single or batch: resolve storage keys -> delete chunk rows ->
delete collection memberships -> delete document rows (one transaction) ->
drop vector index points -> best-effort blob deletion grouped by provider.
Nothing after the commit can undo it: blob and index failures are logged and
reported, never raised.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update

from docembed.config import settings
from docembed.errors import NotFound, StorageCleanupError, StorageIOError
from docembed.metrics import storage_cleanup_errors_total
from docembed.models import Document, DocumentCollectionItem, DocumentEmbedding, StorageProvider
from docembed.storage import DeleteOutcome, StorageBackend, get_storage
from docembed.vector_index import NullVectorIndex

logger = logging.getLogger(__name__)


@dataclass
class DeletionReport:
    deleted_ids: List[int] = field(default_factory=list)
    cleanup_errors: List[StorageCleanupError] = field(default_factory=list)
    adopted_ids: List[int] = field(default_factory=list)


class DeletionCoordinator:
    def __init__(
        self,
        session_factory,
        vector_index=None,
        storage_for: Callable[[StorageProvider], StorageBackend] = get_storage,
        adopt_orphans: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.vector_index = vector_index or NullVectorIndex()
        self.storage_for = storage_for
        self.adopt_orphans = settings.adopt_orphaned_documents if adopt_orphans is None else adopt_orphans

    async def delete_document(self, document_id: int, owner_id: str) -> DeletionReport:
        report = await self.delete_documents([document_id], owner_id)
        if not report.deleted_ids:
            raise NotFound(f"document {document_id} not found")
        return report

    async def clear_documents(self, owner_id: str) -> DeletionReport:
        """Delete every document the owner has."""
        async with self.session_factory() as session:
            ids = (await session.scalars(select(Document.id).where(Document.owner_id == owner_id))).all()
        return await self.delete_documents(ids, owner_id)

    async def delete_documents(self, document_ids: Iterable[int], owner_id: str) -> DeletionReport:
        """
        Delete the caller's documents among ``document_ids``. Ids that do not
        exist or belong to someone else are skipped.
        """
        ids = list(dict.fromkeys(document_ids))
        report = DeletionReport()
        if not ids:
            return report

        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(Document.id, Document.owner_id, Document.storage_provider, Document.storage_key).where(
                        Document.id.in_(ids)
                    )
                )
            ).all()

            targets = []
            for row in rows:
                if row.owner_id == owner_id:
                    targets.append(row)
                elif row.owner_id is None and self.adopt_orphans:
                    # changes effective access control: an unowned record becomes the caller's
                    logger.warning("Adopting orphaned document %s for owner %s before deleting it", row.id, owner_id)
                    report.adopted_ids.append(row.id)
                    targets.append(row)
                elif row.owner_id is None:
                    logger.warning("Refusing to delete orphaned document %s requested by %s", row.id, owner_id)
            if not targets:
                return report

            target_ids = [row.id for row in targets]
            if report.adopted_ids:
                await session.execute(
                    update(Document)
                    .where(Document.id.in_(report.adopted_ids), Document.owner_id.is_(None))
                    .values(owner_id=owner_id)
                    .execution_options(synchronize_session=False)
                )
            await session.execute(delete(DocumentEmbedding).where(DocumentEmbedding.document_id.in_(target_ids)))
            await session.execute(
                delete(DocumentCollectionItem).where(DocumentCollectionItem.document_id.in_(target_ids))
            )
            await session.execute(delete(Document).where(Document.id.in_(target_ids)))
            await session.commit()

        report.deleted_ids = target_ids
        logger.info("Deleted %d documents for owner %s", len(target_ids), owner_id)

        try:
            await self.vector_index.delete_documents(target_ids)
        except Exception:
            # the records are gone, so the points can no longer be matched to a live run
            logger.exception("Failed to delete vector index points for documents %s", target_ids)

        blobs: Dict[StorageProvider, List[str]] = defaultdict(list)
        for row in targets:
            if row.storage_key:
                blobs[StorageProvider(row.storage_provider or StorageProvider.LOCAL)].append(row.storage_key)
        for provider, keys in blobs.items():
            for outcome in await self._delete_blobs(provider, keys):
                if outcome.ok:
                    continue
                if outcome.not_found:
                    logger.debug("Blob %s:%s was already gone", provider.value, outcome.key)
                    continue
                # logged and discarded: the records are deleted whatever happens to the blob
                err = StorageCleanupError(outcome.key, provider.value, outcome.error)
                storage_cleanup_errors_total.labels(provider=provider.value).inc()
                logger.warning("Storage cleanup failed: %s", err)
                report.cleanup_errors.append(err)
        return report

    async def _delete_blobs(self, provider: StorageProvider, keys: List[str]) -> List[DeleteOutcome]:
        try:
            backend = self.storage_for(provider)
        except Exception as e:
            return [DeleteOutcome(k, False, StorageIOError(f"no {provider.value} backend: {e}")) for k in keys]

        if backend.supports_bulk_delete:
            try:
                return await backend.delete_files(keys)
            except Exception as e:
                logger.warning("Bulk delete on %s raised (%s); falling back to per-key deletes", provider.value, e)

        outcomes = []
        for key in keys:
            try:
                outcomes.append(await backend.delete_file(key))
            except Exception as e:
                outcomes.append(DeleteOutcome(key, False, StorageIOError(str(e))))
        return outcomes
