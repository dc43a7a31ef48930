# docembed/main.py
import logging
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from docembed import collection_graph, documents
from docembed.cleanup import DeletionCoordinator
from docembed.config import settings
from docembed.db import close_engine, get_async_session, get_session_factory, init_models
from docembed.errors import (
    AlreadyEmbedded,
    AlreadyInFlight,
    CollectionNameConflict,
    NotFound,
    PermanentContentError,
    StorageError,
)
from docembed.extract import extract_text, file_type_for
from docembed.jobs import JobOrchestrator
from docembed.lifecycle import EmbeddingStatus
from docembed.metrics import uploads_total
from docembed.models import DocumentCategory, StorageProvider
from docembed.queue import JobQueue, RedisJobQueue
from docembed.schemas import (
    BatchDeleteRequest,
    ChunkOut,
    CollectionCreate,
    CollectionOut,
    CollectionRename,
    CollectionReorder,
    DeleteOut,
    DocumentOut,
    DocumentPage,
    DocumentPatch,
    DocumentStats,
    EmbeddingStatusView,
    EmbedRequest,
    SubmitOut,
    UploadOut,
)
from docembed.storage import generate_storage_key, get_storage
from docembed.vector_index import get_vector_index

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="docembed", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_queue: Optional[JobQueue] = None
_vector_index = None


# ---------- dependencies ----------
def get_owner_id(x_owner_id: str = Header(...)) -> str:
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing owner")
    return owner_id


def get_queue() -> JobQueue:
    global _queue
    if _queue is None:
        _queue = RedisJobQueue.from_url(settings.redis_url, name=settings.queue_name)
    return _queue


def get_index():
    global _vector_index
    if _vector_index is None:
        _vector_index = get_vector_index()
    return _vector_index


def get_orchestrator(
    factory=Depends(get_session_factory), queue: JobQueue = Depends(get_queue)
) -> JobOrchestrator:
    return JobOrchestrator(factory, queue)


def get_coordinator(factory=Depends(get_session_factory), index=Depends(get_index)) -> DeletionCoordinator:
    return DeletionCoordinator(factory, index)


# ---------- lifecycle ----------
@app.on_event("startup")
async def startup():
    # development convenience; deployments run alembic migrations
    await init_models()


@app.on_event("shutdown")
async def shutdown():
    global _queue
    if _queue is not None:
        try:
            await _queue.close()
        except Exception:
            logger.exception("Failed to close queue on shutdown")
        _queue = None
    await close_engine()


# ---------- error mapping ----------
@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(AlreadyInFlight)
@app.exception_handler(AlreadyEmbedded)
@app.exception_handler(CollectionNameConflict)
async def conflict_handler(request: Request, exc: Exception):
    return JSONResponse({"detail": str(exc)}, status_code=409)


@app.exception_handler(PermanentContentError)
async def unprocessable_handler(request: Request, exc: PermanentContentError):
    return JSONResponse({"detail": str(exc)}, status_code=422)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


# ---------- service ----------
@app.get("/healthz")
async def healthz(
    session: AsyncSession = Depends(get_async_session),
    queue: JobQueue = Depends(get_queue),
    index=Depends(get_index),
):
    ok = {"database": False, "queue": False, "vector_index": False}
    try:
        await session.execute(text("SELECT 1"))
        ok["database"] = True
    except Exception:
        logger.exception("Database health check failed")
    try:
        ok["queue"] = await queue.ping()
    except Exception:
        logger.exception("Queue health check failed")
    try:
        ok["vector_index"] = await index.ping()
    except Exception:
        logger.exception("Vector index health check failed")
    status = 200 if all(ok.values()) else 503
    return JSONResponse(ok, status_code=status)


@app.get("/metrics")
def metrics():
    if not settings.prometheus_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------- documents ----------
async def _read_upload(file: UploadFile, max_size: int) -> bytes:
    parts = []
    written = 0
    while True:
        chunk = await file.read(1024 * 64)
        if not chunk:
            break
        written += len(chunk)
        if written > max_size:
            raise HTTPException(status_code=413, detail="Payload too large")
        parts.append(chunk)
    return b"".join(parts)


@app.post("/documents/upload", status_code=201, response_model=UploadOut)
async def upload_document(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    category: DocumentCategory = Form(DocumentCategory.GENERAL),
    collection_id: Optional[int] = Form(None),
    storage_provider: Optional[StorageProvider] = Form(None),
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_async_session),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    uploads_total.inc()
    filename = Path(file.filename or "uploaded").name
    ext = Path(filename).suffix.lower()
    if settings.allowed_extensions and ext not in settings.allowed_extensions:
        raise HTTPException(status_code=400, detail="Invalid file extension")

    data = await _read_upload(file, settings.max_upload_size)
    content = extract_text(filename, data)
    if collection_id is not None:
        await collection_graph.get_collection(session, collection_id, owner_id)

    provider = StorageProvider(storage_provider or settings.default_storage_provider)
    key = generate_storage_key(owner_id, filename)
    try:
        backend = get_storage(provider)
        await backend.put_file(key, data, file.content_type or "application/octet-stream")
    except StorageError:
        logger.exception("Failed to store upload %s", filename)
        raise HTTPException(status_code=502, detail="Failed to store file")

    try:
        doc = await documents.create_document(
            session,
            owner_id,
            title or Path(filename).stem,
            content,
            category,
            file_type_for(filename),
            storage_provider=provider,
            storage_key=key,
        )
    except Exception:
        await session.rollback()
        outcome = await backend.delete_file(key)
        if not outcome.ok:
            logger.warning("Could not remove blob %s after failed insert: %s", key, outcome.error)
        raise

    if collection_id is not None:
        await collection_graph.add_membership(session, doc.id, collection_id, owner_id)

    job_id = None
    try:
        job_id = (await orchestrator.submit(doc.id, owner_id)).job_id
    except Exception:
        # the document exists and can be re-submitted from the UI
        logger.exception("Failed to submit embedding job for uploaded document %s", doc.id)
    await session.refresh(doc)
    return UploadOut(document=DocumentOut.model_validate(doc), job_id=job_id)


@app.get("/documents", response_model=DocumentPage)
async def list_documents(
    collection_id: Optional[int] = None,
    category: Optional[DocumentCategory] = None,
    search: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_async_session),
):
    return await documents.list_documents(
        session,
        owner_id,
        collection_id=collection_id,
        category=category,
        search=search,
        page=page,
        page_size=page_size,
    )


@app.get("/documents/stats", response_model=DocumentStats)
async def document_stats(owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)):
    return await documents.get_document_stats(session, owner_id)


@app.delete("/documents", response_model=DeleteOut)
async def clear_documents(
    owner_id: str = Depends(get_owner_id), coordinator: DeletionCoordinator = Depends(get_coordinator)
):
    report = await coordinator.clear_documents(owner_id)
    return DeleteOut(deleted_ids=report.deleted_ids, cleanup_errors=len(report.cleanup_errors))


@app.post("/documents/batch-delete", response_model=DeleteOut)
async def batch_delete(
    body: BatchDeleteRequest,
    owner_id: str = Depends(get_owner_id),
    coordinator: DeletionCoordinator = Depends(get_coordinator),
):
    report = await coordinator.delete_documents(body.document_ids, owner_id)
    return DeleteOut(deleted_ids=report.deleted_ids, cleanup_errors=len(report.cleanup_errors))


@app.get("/documents/{document_id}", response_model=DocumentOut)
async def get_document(
    document_id: int, owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    return await documents.get_document(session, document_id, owner_id)


@app.patch("/documents/{document_id}", response_model=DocumentOut)
async def patch_document(
    document_id: int,
    body: DocumentPatch,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_async_session),
    index=Depends(get_index),
):
    result = await documents.update_content(session, document_id, owner_id, body, vector_index=index)
    return result.document


@app.delete("/documents/{document_id}", response_model=DeleteOut)
async def delete_document(
    document_id: int,
    owner_id: str = Depends(get_owner_id),
    coordinator: DeletionCoordinator = Depends(get_coordinator),
):
    report = await coordinator.delete_document(document_id, owner_id)
    return DeleteOut(deleted_ids=report.deleted_ids, cleanup_errors=len(report.cleanup_errors))


@app.post("/documents/{document_id}/embed", status_code=202, response_model=SubmitOut)
async def embed_document(
    document_id: int,
    body: Optional[EmbedRequest] = None,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    force = body.force if body is not None else False
    try:
        result = await orchestrator.submit(document_id, owner_id, force=force)
    except AlreadyEmbedded as e:
        return JSONResponse(
            SubmitOut(
                document_id=document_id,
                status=EmbeddingStatus.COMPLETED,
                already_embedded=True,
                chunks_count=e.chunks_count,
            ).model_dump(mode="json"),
            status_code=200,
        )
    return SubmitOut(document_id=result.document_id, job_id=result.job_id, status=result.status)


@app.get("/documents/{document_id}/embedding-status", response_model=EmbeddingStatusView)
async def embedding_status(
    document_id: int, owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    return await documents.get_embedding_status(session, document_id, owner_id)


@app.get("/documents/{document_id}/chunks", response_model=List[ChunkOut])
async def document_chunks(
    document_id: int, owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    return await documents.list_chunks(session, document_id, owner_id)


@app.get("/documents/{document_id}/collections", response_model=List[CollectionOut])
async def document_collections(
    document_id: int, owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    return await collection_graph.list_document_collections(session, document_id, owner_id)


# ---------- collections ----------
@app.post("/collections", status_code=201, response_model=CollectionOut)
async def create_collection(
    body: CollectionCreate, owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    try:
        coll = await collection_graph.create_collection(
            session, owner_id, body.name, parent_id=body.parent_id, color=body.color, icon=body.icon
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CollectionOut.model_validate(coll)


@app.get("/collections", response_model=List[CollectionOut])
async def list_root_collections(
    owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    return await collection_graph.list_roots(session, owner_id)


@app.post("/collections/reorder", status_code=204)
async def reorder_collections(
    body: CollectionReorder, owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    await collection_graph.reorder_collections(session, owner_id, [(i.id, i.order_idx) for i in body.items])
    return Response(status_code=204)


@app.get("/collections/{collection_id}/children", response_model=List[CollectionOut])
async def list_child_collections(
    collection_id: int, owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    return await collection_graph.list_children(session, collection_id, owner_id)


@app.patch("/collections/{collection_id}", response_model=CollectionOut)
async def rename_collection(
    collection_id: int,
    body: CollectionRename,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_async_session),
):
    try:
        coll = await collection_graph.rename_collection(session, collection_id, owner_id, body.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CollectionOut.model_validate(coll)


@app.delete("/collections/{collection_id}")
async def delete_collection(
    collection_id: int, owner_id: str = Depends(get_owner_id), session: AsyncSession = Depends(get_async_session)
):
    removed = await collection_graph.delete_collection(session, collection_id, owner_id)
    return {"id": collection_id, "memberships_removed": removed}


@app.put("/collections/{collection_id}/documents/{document_id}")
async def add_to_collection(
    collection_id: int,
    document_id: int,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_async_session),
):
    created = await collection_graph.add_membership(session, document_id, collection_id, owner_id)
    return {"collection_id": collection_id, "document_id": document_id, "created": created}


@app.delete("/collections/{collection_id}/documents/{document_id}")
async def remove_from_collection(
    collection_id: int,
    document_id: int,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_async_session),
):
    removed = await collection_graph.remove_membership(session, document_id, collection_id, owner_id)
    return {"collection_id": collection_id, "document_id": document_id, "removed": removed}
