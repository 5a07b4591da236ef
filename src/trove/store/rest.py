"""
Hosted store: PostgREST tables plus an object storage bucket, over httpx.

Tables ``vaults``, ``uploads`` and ``storage_transacts`` sit behind row-level
security that compares each row's vault id with the ``x-vault-uid`` request
header. Inserts into ``vaults`` and ``storage_transacts`` are allowed without
the header so a vault can be created before anything is authenticated.

Chunk blobs live in the ``vault_files`` bucket under ``{vault_id}/{chunk_id}``
and are uploaded with upsert disabled.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .base import VaultClient, VaultStore
from ..core.exceptions import AlreadyExistsError, NotFoundError, StoreAuthorizationError, StoreError
from ..core.models import UploadRecord, VaultRecord
from ..config import STORAGE_BUCKET

logger = logging.getLogger(__name__)

VAULT_HEADER = "x-vault-uid"

TABLE_VAULTS = "vaults"
TABLE_UPLOADS = "uploads"
TABLE_STORAGE_TRANSACTS = "storage_transacts"
RPC_APPEND_CHUNK = "append_received_chunk"


def bytes_to_bytea(data: bytes) -> str:
    return "\\x" + bytes(data).hex()


def bytea_to_bytes(value: str) -> bytes:
    # PostgREST renders BYTEA as "\x<hex>"
    if value.startswith("\\x"):
        value = value[2:]
    return bytes.fromhex(value)


def _parse_timestamp(value):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable timestamp from store: %r", value)
        return None


def _raise_for_status(response: httpx.Response, context: str) -> None:
    if response.status_code < 400:
        return
    body = response.text
    message = f"{context}: HTTP {response.status_code}"
    status = response.status_code
    if status in (401, 403):
        raise StoreAuthorizationError(message)
    if status == 404:
        raise NotFoundError(message)
    if status == 409 or (status == 400 and ("Duplicate" in body or "already exists" in body)):
        raise AlreadyExistsError(message)
    if status == 400 and ("not_found" in body or "Object not found" in body):
        raise NotFoundError(message)
    logger.debug("%s failed with body %s", context, body[:200])
    raise StoreError(message)


class _RestBase:
    """Shared request plumbing for the store and its vault handles."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def _request(self, method: str, url: str, context: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise StoreError(f"{context}: network error: {e}") from e
        _raise_for_status(response, context)
        return response


class RestVaultStore(_RestBase, VaultStore):
    """Hosted backend entry point."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        bucket: str = STORAGE_BUCKET,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.bucket = bucket
        self.timeout = timeout
        self._transport = transport
        super().__init__(self._make_client())

    def _make_client(self, extra_headers: Optional[Dict[str, str]] = None) -> httpx.AsyncClient:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.anon_key}",
        }
        headers.update(extra_headers or {})
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def insert_vault(self, vault_id, manifest_cipher, burn_at, storage_limit) -> None:
        await self._request(
            "POST",
            f"/rest/v1/{TABLE_VAULTS}",
            "vault insert",
            json={
                "uid": vault_id,
                "manifest_cipher": bytes_to_bytea(manifest_cipher),
                "burn_at": burn_at.isoformat() if burn_at else None,
                "storage_limit": storage_limit,
            },
            headers={"Prefer": "return=minimal"},
        )

    async def insert_storage_grant(self, vault_id, transaction_uid, storage_bytes) -> None:
        await self._request(
            "POST",
            f"/rest/v1/{TABLE_STORAGE_TRANSACTS}",
            "storage grant insert",
            json={
                "transaction_uid": transaction_uid,
                "vault_uid": vault_id,
                "storage_bytes": storage_bytes,
                "previous_transact": None,
            },
            headers={"Prefer": "return=minimal"},
        )

    def open(self, vault_id: str) -> "RestVaultClient":
        return RestVaultClient(self, vault_id, self._make_client({VAULT_HEADER: vault_id}))

    async def aclose(self) -> None:
        await self._client.aclose()


class RestVaultClient(_RestBase, VaultClient):
    """Handle that sends the vault id as the ``x-vault-uid`` header."""

    def __init__(self, store: RestVaultStore, vault_id: str, client: httpx.AsyncClient):
        VaultClient.__init__(self, vault_id)
        _RestBase.__init__(self, client)
        self.store = store

    @property
    def _vault_filter(self) -> Dict[str, str]:
        return {"uid": f"eq.{self.vault_id}"}

    # ------------------------------------------------------------------
    # Vault row
    # ------------------------------------------------------------------

    async def fetch_vault(self) -> VaultRecord:
        response = await self._request(
            "GET",
            f"/rest/v1/{TABLE_VAULTS}",
            "vault fetch",
            params={**self._vault_filter, "select": "*"},
        )
        rows = response.json()
        if not rows:
            raise NotFoundError("vault not found")
        row = rows[0]
        return VaultRecord(
            vault_id=row["uid"],
            manifest_cipher=bytea_to_bytes(row["manifest_cipher"]),
            burn_at=_parse_timestamp(row.get("burn_at")),
            storage_used=row.get("storage_used") or 0,
            storage_limit=row.get("storage_limit") or 0,
            created_at=row.get("created_at"),
        )

    async def update_vault(self, *, manifest_cipher=None, storage_used=None, storage_limit=None) -> None:
        body: Dict[str, Any] = {}
        if manifest_cipher is not None:
            body["manifest_cipher"] = bytes_to_bytea(manifest_cipher)
        if storage_used is not None:
            body["storage_used"] = int(storage_used)
        if storage_limit is not None:
            body["storage_limit"] = int(storage_limit)
        if not body:
            return
        response = await self._request(
            "PATCH",
            f"/rest/v1/{TABLE_VAULTS}",
            "vault update",
            params=self._vault_filter,
            json=body,
            headers={"Prefer": "return=representation"},
        )
        # RLS hides foreign rows, so a rejected update looks like zero rows
        if not response.json():
            raise NotFoundError("vault not found")

    async def delete_vault(self) -> None:
        await self._request("DELETE", f"/rest/v1/{TABLE_VAULTS}", "vault delete", params=self._vault_filter)

    async def list_storage_grants(self) -> List[int]:
        response = await self._request(
            "GET",
            f"/rest/v1/{TABLE_STORAGE_TRANSACTS}",
            "storage grants fetch",
            params={"vault_uid": f"eq.{self.vault_id}", "select": "storage_bytes"},
        )
        return [row.get("storage_bytes") or 0 for row in response.json()]

    # ------------------------------------------------------------------
    # Upload records
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_upload(row) -> UploadRecord:
        return UploadRecord(
            upload_id=row["upload_id"],
            vault_id=row["vault_uid"],
            file_uid=row["file_uid"],
            total_chunks=row["total_chunks"],
            received_chunks=row.get("received_chunks") or [],
            created_at=row.get("created_at"),
        )

    async def create_upload(self, file_uid: str, total_chunks: int) -> UploadRecord:
        response = await self._request(
            "POST",
            f"/rest/v1/{TABLE_UPLOADS}",
            "upload record insert",
            json={
                "vault_uid": self.vault_id,
                "file_uid": file_uid,
                "total_chunks": total_chunks,
                "received_chunks": [],
            },
            headers={"Prefer": "return=representation"},
        )
        rows = response.json()
        if not rows:
            raise StoreError("upload record insert returned no row")
        return self._row_to_upload(rows[0])

    async def append_received_chunk(self, file_uid: str, chunk_index: int) -> None:
        await self._request(
            "POST",
            f"/rest/v1/rpc/{RPC_APPEND_CHUNK}",
            "append received chunk",
            json={"p_file_uid": file_uid, "p_chunk_index": chunk_index},
        )

    async def get_upload(self, file_uid: str) -> Optional[UploadRecord]:
        response = await self._request(
            "GET",
            f"/rest/v1/{TABLE_UPLOADS}",
            "upload record fetch",
            params={"file_uid": f"eq.{file_uid}", "select": "*", "limit": "1"},
        )
        rows = response.json()
        return self._row_to_upload(rows[0]) if rows else None

    async def list_uploads(self) -> List[UploadRecord]:
        response = await self._request(
            "GET",
            f"/rest/v1/{TABLE_UPLOADS}",
            "upload records fetch",
            params={"vault_uid": f"eq.{self.vault_id}", "select": "*", "order": "created_at"},
        )
        return [self._row_to_upload(row) for row in response.json()]

    async def delete_upload(self, file_uid: str) -> None:
        await self._request(
            "DELETE",
            f"/rest/v1/{TABLE_UPLOADS}",
            "upload record delete",
            params={"file_uid": f"eq.{file_uid}"},
        )

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def _object_url(self, path: str) -> str:
        if not path.startswith(self.vault_id + "/"):
            raise StoreAuthorizationError("blob path outside of the presented vault")
        return f"/storage/v1/object/{self.store.bucket}/{path}"

    async def put_blob(self, path: str, data: bytes) -> None:
        await self._request(
            "POST",
            self._object_url(path),
            "blob upload",
            content=bytes(data),
            headers={"Content-Type": "application/octet-stream", "x-upsert": "false"},
        )

    async def get_blob(self, path: str) -> bytes:
        response = await self._request("GET", self._object_url(path), "blob download")
        return response.content

    async def delete_blobs(self, paths: Iterable[str]) -> None:
        paths = list(paths)
        if not paths:
            return
        for path in paths:
            self._object_url(path)
        await self._request(
            "DELETE",
            f"/storage/v1/object/{self.store.bucket}",
            "blob batch delete",
            json={"prefixes": paths},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
