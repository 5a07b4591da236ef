"""Unit tests for the hosted REST store, driven through httpx.MockTransport."""

import json

import httpx
import pytest

from trove.core.exceptions import AlreadyExistsError, NotFoundError, StoreAuthorizationError, StoreError
from trove.store.rest import VAULT_HEADER, RestVaultStore, bytea_to_bytes, bytes_to_bytea

VAULT = "a" * 64
BLOB = VAULT + "/" + "c" * 64


class Backend:
    """Records requests and answers them with canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def last(self):
        return self.requests[-1]


def make_store(*responses):
    backend = Backend(*responses)
    store = RestVaultStore("https://db.example/", "anon-key", transport=httpx.MockTransport(backend))
    return store, backend


def vault_row(**overrides):
    row = {
        "uid": VAULT,
        "manifest_cipher": bytes_to_bytea(b"cipher"),
        "burn_at": "2027-01-01T00:00:00Z",
        "storage_used": 10,
        "storage_limit": 100,
        "created_at": "2026-01-01T00:00:00Z",
    }
    row.update(overrides)
    return row


def test_bytea_helpers():
    assert bytes_to_bytea(b"\x01\xff") == "\\x01ff"
    assert bytea_to_bytes("\\x01ff") == b"\x01\xff"
    assert bytea_to_bytes("01ff") == b"\x01\xff"


# ==============================================================================
# Unauthenticated writes
# ==============================================================================

@pytest.mark.asyncio
async def test_insert_vault_request():
    store, backend = make_store(httpx.Response(201))
    await store.insert_vault(VAULT, b"cipher", None, 500)

    request = backend.last
    assert request.method == "POST"
    assert request.url.path == "/rest/v1/vaults"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer anon-key"
    assert VAULT_HEADER not in request.headers
    assert json.loads(request.content) == {
        "uid": VAULT,
        "manifest_cipher": "\\x636970686572",
        "burn_at": None,
        "storage_limit": 500,
    }


@pytest.mark.asyncio
async def test_insert_vault_conflict():
    store, _ = make_store(httpx.Response(409, json={"message": "duplicate key"}))
    with pytest.raises(AlreadyExistsError):
        await store.insert_vault(VAULT, b"cipher", None, 500)


@pytest.mark.asyncio
async def test_insert_storage_grant_request():
    store, backend = make_store(httpx.Response(201))
    await store.insert_storage_grant(VAULT, "free-aaaa", 500)
    assert backend.last.url.path == "/rest/v1/storage_transacts"
    body = json.loads(backend.last.content)
    assert body["vault_uid"] == VAULT
    assert body["storage_bytes"] == 500


# ==============================================================================
# Vault handle
# ==============================================================================

@pytest.mark.asyncio
async def test_fetch_vault_sends_vault_header():
    store, backend = make_store(httpx.Response(200, json=[vault_row()]))
    record = await store.open(VAULT).fetch_vault()

    assert backend.last.headers[VAULT_HEADER] == VAULT
    assert backend.last.url.params["uid"] == f"eq.{VAULT}"
    assert record.manifest_cipher == b"cipher"
    assert record.burn_at.year == 2027
    assert record.storage_used == 10
    assert record.storage_limit == 100


@pytest.mark.asyncio
async def test_fetch_vault_hidden_row():
    store, _ = make_store(httpx.Response(200, json=[]))
    with pytest.raises(NotFoundError):
        await store.open(VAULT).fetch_vault()


@pytest.mark.asyncio
async def test_unauthorized_maps_to_authorization_error():
    store, _ = make_store(httpx.Response(401, json={"message": "JWT invalid"}))
    with pytest.raises(StoreAuthorizationError):
        await store.open(VAULT).fetch_vault()


@pytest.mark.asyncio
async def test_network_error_maps_to_store_error():
    store, _ = make_store(httpx.ConnectError("unreachable"))
    with pytest.raises(StoreError):
        await store.open(VAULT).fetch_vault()


@pytest.mark.asyncio
async def test_server_error_maps_to_store_error():
    store, _ = make_store(httpx.Response(503, text="down"))
    with pytest.raises(StoreError) as info:
        await store.open(VAULT).fetch_vault()
    assert type(info.value) is StoreError


@pytest.mark.asyncio
async def test_update_vault_sends_only_given_columns():
    store, backend = make_store(httpx.Response(200, json=[vault_row()]))
    await store.open(VAULT).update_vault(storage_used=42)
    assert backend.last.method == "PATCH"
    assert json.loads(backend.last.content) == {"storage_used": 42}
    assert backend.last.headers["Prefer"] == "return=representation"


@pytest.mark.asyncio
async def test_update_vault_zero_rows():
    store, _ = make_store(httpx.Response(200, json=[]))
    with pytest.raises(NotFoundError):
        await store.open(VAULT).update_vault(manifest_cipher=b"x")


@pytest.mark.asyncio
async def test_update_vault_without_columns_sends_nothing():
    store, backend = make_store()
    await store.open(VAULT).update_vault()
    assert backend.requests == []


@pytest.mark.asyncio
async def test_list_storage_grants():
    store, _ = make_store(httpx.Response(200, json=[{"storage_bytes": 5}, {"storage_bytes": 7}]))
    assert await store.open(VAULT).list_storage_grants() == [5, 7]


# ==============================================================================
# Upload records
# ==============================================================================

@pytest.mark.asyncio
async def test_create_upload_and_append():
    row = {"upload_id": "u1", "vault_uid": VAULT, "file_uid": "f1", "total_chunks": 3, "received_chunks": []}
    store, backend = make_store(httpx.Response(201, json=[row]), httpx.Response(204))
    client = store.open(VAULT)

    record = await client.create_upload("f1", 3)
    assert record.upload_id == "u1"
    assert record.total_chunks == 3

    await client.append_received_chunk("f1", 2)
    assert backend.last.url.path == "/rest/v1/rpc/append_received_chunk"
    assert json.loads(backend.last.content) == {"p_file_uid": "f1", "p_chunk_index": 2}


@pytest.mark.asyncio
async def test_get_and_list_uploads():
    row = {"upload_id": "u1", "vault_uid": VAULT, "file_uid": "f1", "total_chunks": 3, "received_chunks": [0, 1]}
    store, _ = make_store(
        httpx.Response(200, json=[row]),
        httpx.Response(200, json=[]),
        httpx.Response(200, json=[row]),
    )
    client = store.open(VAULT)
    assert (await client.get_upload("f1")).missing_chunks == [2]
    assert await client.get_upload("f2") is None
    assert [r.file_uid for r in await client.list_uploads()] == ["f1"]


# ==============================================================================
# Blobs
# ==============================================================================

@pytest.mark.asyncio
async def test_put_blob_request():
    store, backend = make_store(httpx.Response(200, json={"Key": BLOB}))
    await store.open(VAULT).put_blob(BLOB, b"data")
    request = backend.last
    assert request.url.path == f"/storage/v1/object/vault_files/{BLOB}"
    assert request.headers["x-upsert"] == "false"
    assert request.content == b"data"


@pytest.mark.asyncio
async def test_put_blob_duplicate():
    store, _ = make_store(httpx.Response(400, json={"error": "Duplicate", "message": "The resource already exists"}))
    with pytest.raises(AlreadyExistsError):
        await store.open(VAULT).put_blob(BLOB, b"data")


@pytest.mark.asyncio
async def test_get_blob():
    store, _ = make_store(httpx.Response(200, content=b"cipher"), httpx.Response(400, json={"error": "not_found"}))
    client = store.open(VAULT)
    assert await client.get_blob(BLOB) == b"cipher"
    with pytest.raises(NotFoundError):
        await client.get_blob(BLOB)


@pytest.mark.asyncio
async def test_delete_blobs_batches_paths():
    store, backend = make_store(httpx.Response(200, json=[]))
    other = VAULT + "/" + "d" * 64
    await store.open(VAULT).delete_blobs([BLOB, other])
    assert backend.last.method == "DELETE"
    assert backend.last.url.path == "/storage/v1/object/vault_files"
    assert json.loads(backend.last.content) == {"prefixes": [BLOB, other]}


@pytest.mark.asyncio
async def test_blob_outside_vault_rejected_before_request():
    store, backend = make_store()
    with pytest.raises(StoreAuthorizationError):
        await store.open(VAULT).put_blob("b" * 64 + "/x", b"data")
    with pytest.raises(StoreAuthorizationError):
        await store.open(VAULT).delete_blobs(["b" * 64 + "/x"])
    assert backend.requests == []
