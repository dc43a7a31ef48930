# docembed/storage.py
"""Object storage for uploaded originals.

Every backend satisfies the same contract; callers only pick which backend to
build, from a document's ``storage_provider``. Deletes never raise: they return
``DeleteOutcome`` values and the caller decides what a failure means.
"""
import asyncio
import io
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

import aiofiles
import aiofiles.os
from minio import Minio
from minio.deleteobjects import DeleteObject
from minio.error import S3Error

from docembed.config import settings
from docembed.errors import StorageError, StorageIOError, StorageNotFoundError
from docembed.models import StorageProvider

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class DeleteOutcome:
    key: str
    ok: bool
    error: Optional[StorageError] = None

    @property
    def not_found(self) -> bool:
        return isinstance(self.error, StorageNotFoundError)


def generate_storage_key(owner_id: str, filename: str, prefix: str = "documents") -> str:
    name = _SAFE_NAME.sub("_", os.path.basename(filename or "upload")).strip("._") or "upload"
    return f"{prefix}/{owner_id}/{int(time.time() * 1000)}-{uuid4().hex[:8]}-{name}"


class StorageBackend(ABC):
    provider: StorageProvider
    supports_bulk_delete = False

    @abstractmethod
    async def put_file(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store ``data`` under ``key`` and return the key."""

    @abstractmethod
    async def read_file(self, key: str) -> bytes:
        """Raises StorageNotFoundError / StorageIOError."""

    @abstractmethod
    async def delete_file(self, key: str) -> DeleteOutcome:
        ...

    async def delete_files(self, keys: Sequence[str]) -> List[DeleteOutcome]:
        return [await self.delete_file(key) for key in keys]


class LocalStorage(StorageBackend):
    provider = StorageProvider.LOCAL

    def __init__(self, base_dir: str):
        self.base_dir = os.path.abspath(base_dir)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.base_dir, key))
        if os.path.commonpath([path, self.base_dir]) != self.base_dir:
            raise StorageIOError(f"storage key escapes base directory: {key}")
        return path

    async def put_file(self, key, data, content_type="application/octet-stream"):
        path = self._path(key)
        try:
            await aiofiles.os.makedirs(os.path.dirname(path), exist_ok=True)
            async with aiofiles.open(path, "wb") as out:
                await out.write(data)
        except OSError as e:
            raise StorageIOError(f"failed to write {key}: {e}") from e
        return key

    async def read_file(self, key):
        path = self._path(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise StorageNotFoundError(key) from e
        except OSError as e:
            raise StorageIOError(f"failed to read {key}: {e}") from e

    async def delete_file(self, key):
        try:
            await aiofiles.os.remove(self._path(key))
        except FileNotFoundError:
            return DeleteOutcome(key, False, StorageNotFoundError(key))
        except StorageError as e:
            return DeleteOutcome(key, False, e)
        except OSError as e:
            return DeleteOutcome(key, False, StorageIOError(f"failed to delete {key}: {e}"))
        return DeleteOutcome(key, True)


class MinioStorage(StorageBackend):
    provider = StorageProvider.MINIO
    supports_bulk_delete = True

    def __init__(self, client: Minio, bucket: str):
        self.client = client
        self.bucket = bucket
        self._bucket_checked = False

    def _ensure_bucket(self):
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(bucket_name=self.bucket):
            self.client.make_bucket(bucket_name=self.bucket)
            logger.info("Created bucket %s", self.bucket)
        self._bucket_checked = True

    def _put(self, key, data, content_type):
        self._ensure_bucket()
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=key,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    async def put_file(self, key, data, content_type="application/octet-stream"):
        try:
            await asyncio.to_thread(self._put, key, data, content_type)
        except S3Error as e:
            raise StorageIOError(f"failed to upload {key}: {e}") from e
        return key

    def _get(self, key):
        resp = self.client.get_object(bucket_name=self.bucket, object_name=key)
        try:
            return resp.read()
        finally:
            resp.close()
            resp.release_conn()

    async def read_file(self, key):
        try:
            return await asyncio.to_thread(self._get, key)
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                raise StorageNotFoundError(key) from e
            raise StorageIOError(f"failed to read {key}: {e}") from e

    async def delete_file(self, key):
        try:
            await asyncio.to_thread(self.client.remove_object, bucket_name=self.bucket, object_name=key)
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                return DeleteOutcome(key, False, StorageNotFoundError(key))
            return DeleteOutcome(key, False, StorageIOError(f"failed to delete {key}: {e}"))
        except OSError as e:
            return DeleteOutcome(key, False, StorageIOError(f"failed to delete {key}: {e}"))
        return DeleteOutcome(key, True)

    def _remove_many(self, keys):
        # remove_objects is lazy; the error iterator must be drained for the request to run
        errors = self.client.remove_objects(
            bucket_name=self.bucket,
            delete_object_list=[DeleteObject(k) for k in keys],
        )
        return {err.name: err for err in errors}

    async def delete_files(self, keys):
        if not keys:
            return []
        try:
            failed = await asyncio.to_thread(self._remove_many, list(keys))
        except (S3Error, OSError) as e:
            logger.warning("Bulk delete of %d objects failed (%s); falling back to per-key deletes", len(keys), e)
            return await super().delete_files(keys)
        outcomes = []
        for key in keys:
            err = failed.get(key)
            if err is None:
                outcomes.append(DeleteOutcome(key, True))
            else:
                outcomes.append(DeleteOutcome(key, False, StorageIOError(f"failed to delete {key}: {err.message}")))
        return outcomes


_backends: Dict[StorageProvider, StorageBackend] = {}


def build_minio_client() -> Minio:
    if not settings.minio_endpoint:
        raise StorageIOError("MINIO_ENDPOINT is not configured")
    return Minio(
        endpoint=settings.minio_endpoint,
        access_key=settings.minio_access_key,
        secret_key=settings.minio_secret_key,
        secure=settings.minio_secure,
    )


def get_storage(provider) -> StorageBackend:
    """Return the backend for a document's ``storage_provider`` (legacy rows with none are local)."""
    provider = StorageProvider(provider or StorageProvider.LOCAL)
    backend = _backends.get(provider)
    if backend is None:
        if provider is StorageProvider.MINIO:
            backend = MinioStorage(build_minio_client(), settings.minio_bucket)
        else:
            backend = LocalStorage(settings.upload_dir)
        _backends[provider] = backend
    return backend


def register_storage(backend: StorageBackend) -> None:
    """Install a pre-built backend for its provider (tests, custom wiring)."""
    _backends[backend.provider] = backend


def reset_storage() -> None:
    _backends.clear()
