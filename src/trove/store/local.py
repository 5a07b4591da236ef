"""
Local store: vault rows in SQLite, chunk blobs on the filesystem.

Structure Map for reference:
==============================
 - <storage_root>/
      - trove.db
      - blobs/
          - {vault_id}/
              - {chunk_id}
==============================

Every authorized query is scoped to the vault id the handle presents, the
same rule the hosted backend enforces with row-level security: rows of other
vaults are simply not visible. Blocking SQLite and file I/O runs on worker
threads so the event loop keeps scheduling other transfers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import sqlite3
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from .base import VaultClient, VaultStore
from .connection import DatabaseConnection
from ..core.exceptions import AlreadyExistsError, NotFoundError, StoreAuthorizationError, StoreError
from ..core.models import UploadRecord, VaultRecord, new_uid

logger = logging.getLogger(__name__)

_BLOB_NAME = re.compile(r"^[0-9a-f]{1,128}$")


async def _offload(context: str, func, *args):
    """Run blocking store work on a thread; driver and disk errors become StoreError."""
    try:
        return await asyncio.to_thread(func, *args)
    except StoreError:
        raise
    except sqlite3.Error as e:
        raise StoreError(f"{context}: database error: {e}") from e
    except OSError as e:
        raise StoreError(f"{context}: I/O error: {e}") from e


def _row_to_upload(row) -> UploadRecord:
    return UploadRecord(
        upload_id=row["upload_id"],
        vault_id=row["vault_uid"],
        file_uid=row["file_uid"],
        total_chunks=row["total_chunks"],
        received_chunks=json.loads(row["received_chunks"] or "[]"),
        created_at=row.get("created_at"),
    )


class LocalVaultStore(VaultStore):
    """SQLite + filesystem implementation of the store contract."""

    def __init__(self, root_path: Optional[str | Path] = None):
        self.root = Path(root_path).expanduser() if root_path else Path.home() / ".trove"
        self.root.mkdir(parents=True, exist_ok=True)
        self.blob_root = self.root / "blobs"
        self.blob_root.mkdir(parents=True, exist_ok=True)
        self.db = DatabaseConnection(self.root / "trove.db")
        self.db.initialize()

    # ------------------------------------------------------------------
    # Unauthenticated writes
    # ------------------------------------------------------------------

    def _insert_vault(self, vault_id, manifest_cipher, burn_at, storage_limit):
        try:
            self.db.execute(
                "INSERT INTO vaults (uid, manifest_cipher, burn_at, storage_used, storage_limit) "
                "VALUES (?, ?, ?, 0, ?)",
                (vault_id, bytes(manifest_cipher), burn_at.isoformat() if burn_at else None, storage_limit),
            )
        except sqlite3.IntegrityError as e:
            raise AlreadyExistsError("vault already exists") from e
        except sqlite3.Error as e:
            raise StoreError(f"vault insert failed: {e}") from e

    async def insert_vault(self, vault_id, manifest_cipher, burn_at, storage_limit) -> None:
        await _offload("vault insert", self._insert_vault, vault_id, manifest_cipher, burn_at, storage_limit)

    def _insert_storage_grant(self, vault_id, transaction_uid, storage_bytes):
        try:
            self.db.execute(
                "INSERT INTO storage_transacts (id, transaction_uid, vault_uid, storage_bytes) "
                "VALUES (?, ?, ?, ?)",
                (new_uid(), transaction_uid, vault_id, storage_bytes),
            )
        except sqlite3.IntegrityError as e:
            raise StoreError(f"storage grant rejected: {e}") from e
        except sqlite3.Error as e:
            raise StoreError(f"storage grant insert failed: {e}") from e

    async def insert_storage_grant(self, vault_id, transaction_uid, storage_bytes) -> None:
        await _offload("storage grant insert", self._insert_storage_grant, vault_id, transaction_uid, storage_bytes)

    def open(self, vault_id: str) -> "LocalVaultClient":
        return LocalVaultClient(self, vault_id)

    async def aclose(self) -> None:
        self.db.close()


class LocalVaultClient(VaultClient):
    """Handle scoped to one vault of a :class:`LocalVaultStore`."""

    def __init__(self, store: LocalVaultStore, vault_id: str):
        super().__init__(vault_id)
        self.store = store

    @property
    def db(self) -> DatabaseConnection:
        return self.store.db

    # ------------------------------------------------------------------
    # Vault row
    # ------------------------------------------------------------------

    def _fetch_vault(self) -> VaultRecord:
        row = self.db.fetch_one("SELECT * FROM vaults WHERE uid = ?", (self.vault_id,))
        if row is None:
            raise NotFoundError("vault not found")
        burn_at = datetime.fromisoformat(row["burn_at"]) if row["burn_at"] else None
        return VaultRecord(
            vault_id=row["uid"],
            manifest_cipher=bytes(row["manifest_cipher"]),
            burn_at=burn_at,
            storage_used=row["storage_used"] or 0,
            storage_limit=row["storage_limit"] or 0,
            created_at=row["created_at"],
        )

    async def fetch_vault(self) -> VaultRecord:
        return await _offload("vault fetch", self._fetch_vault)

    def _update_vault(self, columns):
        if not columns:
            return
        assignments = ", ".join(f"{name} = ?" for name in columns)
        params = tuple(columns.values()) + (self.vault_id,)
        count = self.db.execute(f"UPDATE vaults SET {assignments} WHERE uid = ?", params)
        if count == 0:
            raise NotFoundError("vault not found")

    async def update_vault(self, *, manifest_cipher=None, storage_used=None, storage_limit=None) -> None:
        columns = {}
        if manifest_cipher is not None:
            columns["manifest_cipher"] = bytes(manifest_cipher)
        if storage_used is not None:
            columns["storage_used"] = int(storage_used)
        if storage_limit is not None:
            columns["storage_limit"] = int(storage_limit)
        await _offload("vault update", self._update_vault, columns)

    def _delete_vault(self):
        count = self.db.execute("DELETE FROM vaults WHERE uid = ?", (self.vault_id,))
        if count == 0:
            raise NotFoundError("vault not found")
        shutil.rmtree(self.store.blob_root / self.vault_id, ignore_errors=True)

    async def delete_vault(self) -> None:
        await _offload("vault delete", self._delete_vault)

    async def list_storage_grants(self) -> List[int]:
        rows = await _offload(
            "storage grants fetch",
            self.db.fetch_all,
            "SELECT storage_bytes FROM storage_transacts WHERE vault_uid = ?",
            (self.vault_id,),
        )
        return [row["storage_bytes"] for row in rows]

    # ------------------------------------------------------------------
    # Upload records
    # ------------------------------------------------------------------

    def _create_upload(self, file_uid, total_chunks) -> UploadRecord:
        upload_id = new_uid()
        try:
            self.db.execute(
                "INSERT INTO uploads (upload_id, vault_uid, file_uid, total_chunks, received_chunks) "
                "VALUES (?, ?, ?, ?, '[]')",
                (upload_id, self.vault_id, file_uid, total_chunks),
            )
        except sqlite3.IntegrityError as e:
            # the foreign key fails when the presented vault does not exist
            raise StoreAuthorizationError("upload record rejected") from e
        return UploadRecord(upload_id, self.vault_id, file_uid, total_chunks)

    async def create_upload(self, file_uid: str, total_chunks: int) -> UploadRecord:
        return await _offload("upload record insert", self._create_upload, file_uid, total_chunks)

    def _append_received_chunk(self, file_uid, chunk_index):
        with self.db.get_transaction_context() as cur:
            cur.execute(
                "SELECT upload_id, received_chunks FROM uploads WHERE vault_uid = ? AND file_uid = ?",
                (self.vault_id, file_uid),
            )
            for row in cur.fetchall():
                received = json.loads(row["received_chunks"] or "[]")
                if chunk_index in received:
                    continue
                received.append(chunk_index)
                cur.execute(
                    "UPDATE uploads SET received_chunks = ? WHERE upload_id = ?",
                    (json.dumps(received), row["upload_id"]),
                )

    async def append_received_chunk(self, file_uid: str, chunk_index: int) -> None:
        await _offload("append received chunk", self._append_received_chunk, file_uid, chunk_index)

    async def get_upload(self, file_uid: str) -> Optional[UploadRecord]:
        row = await _offload(
            "upload record fetch",
            self.db.fetch_one,
            "SELECT * FROM uploads WHERE vault_uid = ? AND file_uid = ? ORDER BY created_at LIMIT 1",
            (self.vault_id, file_uid),
        )
        return _row_to_upload(row) if row else None

    async def list_uploads(self) -> List[UploadRecord]:
        rows = await _offload(
            "upload records fetch",
            self.db.fetch_all,
            "SELECT * FROM uploads WHERE vault_uid = ? ORDER BY created_at",
            (self.vault_id,),
        )
        return [_row_to_upload(row) for row in rows]

    async def delete_upload(self, file_uid: str) -> None:
        await _offload(
            "upload record delete",
            self.db.execute,
            "DELETE FROM uploads WHERE vault_uid = ? AND file_uid = ?",
            (self.vault_id, file_uid),
        )

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def _blob_path(self, path: str) -> Path:
        parts = path.split("/")
        if len(parts) != 2 or parts[0] != self.vault_id:
            raise StoreAuthorizationError("blob path outside of the presented vault")
        if not _BLOB_NAME.match(parts[1]):
            raise StoreError(f"invalid blob name: {parts[1]!r}")
        return self.store.blob_root / parts[0] / parts[1]

    def _put_blob(self, path, data):
        destination = self._blob_path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        # write aside, then hard-link into place: link() refuses existing targets
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            try:
                os.link(tmp_name, destination)
            except FileExistsError as e:
                raise AlreadyExistsError(f"blob already exists: {path}") from e
        finally:
            os.unlink(tmp_name)

    async def put_blob(self, path: str, data: bytes) -> None:
        await _offload("blob upload", self._put_blob, path, bytes(data))

    def _get_blob(self, path):
        source = self._blob_path(path)
        try:
            with open(source, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"blob not found: {path}") from e

    async def get_blob(self, path: str) -> bytes:
        return await _offload("blob download", self._get_blob, path)

    def _delete_blobs(self, paths):
        for path in paths:
            try:
                self._blob_path(path).unlink()
            except FileNotFoundError:
                continue

    async def delete_blobs(self, paths: Iterable[str]) -> None:
        await _offload("blob delete", self._delete_blobs, list(paths))
