"""Unit tests for the SQLite + filesystem store."""

import sqlite3
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from trove.core.exceptions import AlreadyExistsError, NotFoundError, StoreAuthorizationError, StoreError
from trove.store.connection import DatabaseConnection
from trove.store.local import LocalVaultStore

VAULT = "a" * 64
OTHER = "b" * 64
BLOB = VAULT + "/" + "c" * 64


@pytest.fixture
def local(tmp_path):
    store = LocalVaultStore(tmp_path)
    yield store
    store.db.close()


# ==============================================================================
# Vault rows
# ==============================================================================

def test_layout_created(local, tmp_path):
    assert (tmp_path / "trove.db").exists()
    assert (tmp_path / "blobs").is_dir()
    assert local.db.get_version() == 1


def test_construction_completes_in_time(tmp_path):
    built = []
    worker = threading.Thread(target=lambda: built.append(LocalVaultStore(tmp_path / "fresh")), daemon=True)
    worker.start()
    worker.join(timeout=10)

    assert not worker.is_alive(), "schema initialization blocked"
    assert built[0].db.get_version() == 1
    built[0].db.close()


def test_initialize_is_idempotent(tmp_path):
    db = DatabaseConnection(tmp_path / "again.db")
    db.initialize()
    db.initialize()
    assert db.get_version() == 1
    db.close()


@pytest.mark.asyncio
async def test_insert_and_fetch_vault(local):
    burn = datetime(2027, 1, 1, tzinfo=timezone.utc)
    await local.insert_vault(VAULT, b"cipher", burn, 100)
    record = await local.open(VAULT).fetch_vault()
    assert record.vault_id == VAULT
    assert record.manifest_cipher == b"cipher"
    assert record.burn_at == burn
    assert record.storage_used == 0
    assert record.storage_limit == 100


@pytest.mark.asyncio
async def test_insert_duplicate_vault(local):
    await local.insert_vault(VAULT, b"x", None, 1)
    with pytest.raises(AlreadyExistsError):
        await local.insert_vault(VAULT, b"y", None, 1)


@pytest.mark.asyncio
async def test_other_vault_is_invisible(local):
    await local.insert_vault(VAULT, b"x", None, 1)
    other = local.open(OTHER)
    with pytest.raises(NotFoundError):
        await other.fetch_vault()
    with pytest.raises(NotFoundError):
        await other.update_vault(storage_used=5)


@pytest.mark.asyncio
async def test_update_vault_columns(local):
    await local.insert_vault(VAULT, b"x", None, 1)
    client = local.open(VAULT)
    await client.update_vault(manifest_cipher=b"new", storage_used=42)
    record = await client.fetch_vault()
    assert record.manifest_cipher == b"new"
    assert record.storage_used == 42
    await client.update_vault()


@pytest.mark.asyncio
async def test_storage_grants(local):
    await local.insert_vault(VAULT, b"x", None, 1)
    await local.insert_storage_grant(VAULT, "free-1", 500)
    await local.insert_storage_grant(VAULT, "bought-1", 700)
    assert sorted(await local.open(VAULT).list_storage_grants()) == [500, 700]
    assert await local.open(OTHER).list_storage_grants() == []


@pytest.mark.asyncio
async def test_storage_grant_for_missing_vault(local):
    with pytest.raises(StoreError):
        await local.insert_storage_grant(OTHER, "free", 1)


@pytest.mark.asyncio
async def test_delete_vault_removes_rows_and_blobs(local, tmp_path):
    await local.insert_vault(VAULT, b"x", None, 1)
    client = local.open(VAULT)
    await client.create_upload("f1", 2)
    await client.put_blob(BLOB, b"data")
    await client.delete_vault()
    with pytest.raises(NotFoundError):
        await client.fetch_vault()
    assert await client.list_uploads() == []
    assert not (tmp_path / "blobs" / VAULT).exists()


# ==============================================================================
# Upload records
# ==============================================================================

@pytest.mark.asyncio
async def test_upload_record_lifecycle(local):
    await local.insert_vault(VAULT, b"x", None, 1)
    client = local.open(VAULT)
    record = await client.create_upload("f1", 3)
    assert record.received_chunks == set()

    await client.append_received_chunk("f1", 2)
    await client.append_received_chunk("f1", 0)
    await client.append_received_chunk("f1", 2)

    fetched = await client.get_upload("f1")
    assert fetched.received_chunks == {0, 2}
    assert fetched.missing_chunks == [1]
    assert [r.file_uid for r in await client.list_uploads()] == ["f1"]

    await client.delete_upload("f1")
    assert await client.get_upload("f1") is None


@pytest.mark.asyncio
async def test_append_without_record_is_noop(local):
    await local.insert_vault(VAULT, b"x", None, 1)
    await local.open(VAULT).append_received_chunk("missing", 0)


@pytest.mark.asyncio
async def test_upload_record_requires_existing_vault(local):
    with pytest.raises(StoreAuthorizationError):
        await local.open(OTHER).create_upload("f1", 1)


@pytest.mark.asyncio
async def test_upload_records_scoped_to_vault(local):
    await local.insert_vault(VAULT, b"x", None, 1)
    await local.insert_vault(OTHER, b"x", None, 1)
    await local.open(VAULT).create_upload("f1", 1)
    assert await local.open(OTHER).get_upload("f1") is None
    assert await local.open(OTHER).list_uploads() == []


# ==============================================================================
# Blobs
# ==============================================================================

@pytest.mark.asyncio
async def test_blob_put_get_delete(local):
    client = local.open(VAULT)
    await client.put_blob(BLOB, b"payload")
    assert await client.get_blob(BLOB) == b"payload"
    await client.delete_blobs([BLOB, VAULT + "/" + "d" * 64])
    with pytest.raises(NotFoundError):
        await client.get_blob(BLOB)


@pytest.mark.asyncio
async def test_blob_put_rejects_existing(local, tmp_path):
    client = local.open(VAULT)
    await client.put_blob(BLOB, b"first")
    with pytest.raises(AlreadyExistsError):
        await client.put_blob(BLOB, b"second")
    assert await client.get_blob(BLOB) == b"first"
    assert [p.name for p in (tmp_path / "blobs" / VAULT).iterdir()] == ["c" * 64]


@pytest.mark.asyncio
async def test_blob_outside_vault_rejected(local):
    client = local.open(VAULT)
    with pytest.raises(StoreAuthorizationError):
        await client.put_blob(OTHER + "/" + "c" * 64, b"x")
    with pytest.raises(StoreAuthorizationError):
        await client.get_blob("../" + BLOB)


@pytest.mark.asyncio
async def test_blob_name_validated(local):
    with pytest.raises(StoreError):
        await local.open(VAULT).put_blob(VAULT + "/../../etc", b"x")


# ==============================================================================
# Driver and disk errors
# ==============================================================================

@pytest.mark.asyncio
async def test_database_error_on_update_is_store_error(local):
    await local.insert_vault(VAULT, b"cipher", None, 100)
    with patch.object(DatabaseConnection, "execute", side_effect=sqlite3.OperationalError("database is locked")):
        with pytest.raises(StoreError, match="database is locked"):
            await local.open(VAULT).update_vault(storage_used=5)


@pytest.mark.asyncio
async def test_database_error_on_fetch_is_store_error(local):
    with patch.object(DatabaseConnection, "fetch_one", side_effect=sqlite3.OperationalError("disk I/O error")):
        with pytest.raises(StoreError):
            await local.open(VAULT).fetch_vault()
        with pytest.raises(StoreError):
            await local.open(VAULT).get_upload("f1")


@pytest.mark.asyncio
async def test_disk_error_on_blob_write_is_store_error(local):
    with patch("trove.store.local.os.link", side_effect=PermissionError("read-only file system")):
        with pytest.raises(StoreError, match="read-only"):
            await local.open(VAULT).put_blob(BLOB, b"payload")


@pytest.mark.asyncio
async def test_disk_error_on_blob_delete_is_store_error(local):
    client = local.open(VAULT)
    await client.put_blob(BLOB, b"payload")
    with patch("pathlib.Path.unlink", side_effect=PermissionError("busy")):
        with pytest.raises(StoreError):
            await client.delete_blobs([BLOB])
