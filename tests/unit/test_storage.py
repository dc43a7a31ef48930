"""Storage backends: local filesystem via aiofiles, MinIO against a mocked client."""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from docembed.config import settings
from docembed.errors import StorageIOError, StorageNotFoundError
from docembed.models import StorageProvider
from docembed.storage import (
    LocalStorage,
    MinioStorage,
    generate_storage_key,
    get_storage,
    register_storage,
)


def test_local_put_read_delete(tmp_path) -> None:
    storage = LocalStorage(str(tmp_path))

    async def scenario():
        key = await storage.put_file("documents/u1/a.txt", b"hello")
        assert (tmp_path / "documents" / "u1" / "a.txt").read_bytes() == b"hello"
        assert await storage.read_file(key) == b"hello"

        outcome = await storage.delete_file(key)
        assert outcome.ok
        again = await storage.delete_file(key)
        assert not again.ok and again.not_found

        with pytest.raises(StorageNotFoundError):
            await storage.read_file(key)

    asyncio.run(scenario())


def test_local_rejects_keys_outside_base(tmp_path) -> None:
    storage = LocalStorage(str(tmp_path / "uploads"))

    async def scenario():
        with pytest.raises(StorageIOError):
            await storage.put_file("../escape.txt", b"x")
        outcome = await storage.delete_file("../../etc/passwd")
        assert not outcome.ok and not outcome.not_found

    asyncio.run(scenario())


def test_generate_storage_key_is_safe_and_unique() -> None:
    a = generate_storage_key("u1", "../My Report (final).pdf")
    b = generate_storage_key("u1", "../My Report (final).pdf")
    assert a != b
    assert a.startswith("documents/u1/")
    assert a.endswith("-My_Report_final_.pdf")
    assert ".." not in a
    assert generate_storage_key("u1", "").endswith("-upload")


def _minio(client=None):
    client = client or MagicMock()
    client.bucket_exists.return_value = True
    return MinioStorage(client, "docs"), client


def test_minio_put_creates_bucket_once() -> None:
    client = MagicMock()
    client.bucket_exists.return_value = False
    storage = MinioStorage(client, "docs")

    async def scenario():
        await storage.put_file("k1", b"abc", "text/plain")
        await storage.put_file("k2", b"defg")

    asyncio.run(scenario())
    client.make_bucket.assert_called_once_with(bucket_name="docs")
    assert client.put_object.call_count == 2
    kwargs = client.put_object.call_args_list[0].kwargs
    assert (kwargs["bucket_name"], kwargs["object_name"], kwargs["length"]) == ("docs", "k1", 3)
    assert kwargs["content_type"] == "text/plain"


def test_minio_read_releases_connection() -> None:
    storage, client = _minio()
    response = MagicMock()
    response.read.return_value = b"payload"
    client.get_object.return_value = response

    assert asyncio.run(storage.read_file("k")) == b"payload"
    response.close.assert_called_once()
    response.release_conn.assert_called_once()


def test_minio_delete_single() -> None:
    storage, client = _minio()
    outcome = asyncio.run(storage.delete_file("k"))
    assert outcome.ok
    client.remove_object.assert_called_once_with(bucket_name="docs", object_name="k")


def test_minio_delete_network_error_is_an_outcome() -> None:
    storage, client = _minio()
    client.remove_object.side_effect = OSError("connection reset")
    outcome = asyncio.run(storage.delete_file("k"))
    assert not outcome.ok
    assert isinstance(outcome.error, StorageIOError)


def test_minio_bulk_delete_reports_per_key_errors() -> None:
    storage, client = _minio()
    client.remove_objects.return_value = iter([SimpleNamespace(name="b", message="AccessDenied")])

    outcomes = asyncio.run(storage.delete_files(["a", "b", "c"]))
    assert [o.ok for o in outcomes] == [True, False, True]
    assert "AccessDenied" in str(outcomes[1].error)
    client.remove_objects.assert_called_once()
    client.remove_object.assert_not_called()


def test_minio_bulk_delete_falls_back_to_single_deletes() -> None:
    storage, client = _minio()
    client.remove_objects.side_effect = OSError("connection reset")

    outcomes = asyncio.run(storage.delete_files(["a", "b"]))
    assert [o.ok for o in outcomes] == [True, True]
    assert client.remove_object.call_count == 2


def test_registry_returns_registered_backend(tmp_path) -> None:
    local = LocalStorage(str(tmp_path))
    register_storage(local)
    assert get_storage("local") is local
    assert get_storage(None) is local


def test_registry_builds_local_backend_by_default() -> None:
    backend = get_storage(StorageProvider.LOCAL)
    assert isinstance(backend, LocalStorage)
    assert get_storage(StorageProvider.LOCAL) is backend


def test_minio_backend_requires_endpoint(monkeypatch) -> None:
    monkeypatch.setattr(settings, "minio_endpoint", None)
    with pytest.raises(StorageIOError):
        get_storage(StorageProvider.MINIO)
