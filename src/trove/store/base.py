"""
Contract of the external row/blob store.

Two kinds of access exist:

- :class:`VaultStore` exposes the *unauthenticated* writes used while
  creating a vault (vault row insert, initial storage grant) and opens
  handles.
- :class:`VaultClient` is a handle bound to one vault id, which it presents
  as a bearer credential on every call. Rows and blobs outside that vault are
  invisible to it.

All methods are coroutines. Implementations raise the store errors from
:mod:`trove.core.exceptions`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from ..core.models import UploadRecord, VaultRecord


class VaultClient(ABC):
    """Handle authorized for exactly one vault."""

    def __init__(self, vault_id: str):
        self.vault_id = vault_id

    # vault row ---------------------------------------------------------

    @abstractmethod
    async def fetch_vault(self) -> VaultRecord:
        """Return the vault row; NotFoundError when absent or not visible."""

    @abstractmethod
    async def update_vault(
        self,
        *,
        manifest_cipher: Optional[bytes] = None,
        storage_used: Optional[int] = None,
        storage_limit: Optional[int] = None,
    ) -> None:
        """Replace the given columns of the vault row."""

    @abstractmethod
    async def delete_vault(self) -> None:
        """Delete the vault row (and, through the store, its dependent rows)."""

    @abstractmethod
    async def list_storage_grants(self) -> List[int]:
        """Byte amounts of every storage grant recorded for this vault."""

    # upload records ----------------------------------------------------

    @abstractmethod
    async def create_upload(self, file_uid: str, total_chunks: int) -> UploadRecord:
        """Create a resumability record with no received chunks."""

    @abstractmethod
    async def append_received_chunk(self, file_uid: str, chunk_index: int) -> None:
        """Atomically add ``chunk_index`` to the record if it is not there yet."""

    @abstractmethod
    async def get_upload(self, file_uid: str) -> Optional[UploadRecord]:
        """The record for ``file_uid`` or None."""

    @abstractmethod
    async def list_uploads(self) -> List[UploadRecord]:
        """Every unfinished upload record of this vault."""

    @abstractmethod
    async def delete_upload(self, file_uid: str) -> None:
        """Delete the record for ``file_uid``; missing records are ignored."""

    # blobs -------------------------------------------------------------

    @abstractmethod
    async def put_blob(self, path: str, data: bytes) -> None:
        """Store ``data`` at ``path``; AlreadyExistsError if the path is taken."""

    @abstractmethod
    async def get_blob(self, path: str) -> bytes:
        """Return the blob at ``path``; NotFoundError if missing."""

    @abstractmethod
    async def delete_blobs(self, paths: Iterable[str]) -> None:
        """Delete every listed blob; missing ones are ignored."""

    async def aclose(self) -> None:
        """Release transport resources held by this handle."""
        return None


class VaultStore(ABC):
    """Entry point to a store backend."""

    @abstractmethod
    async def insert_vault(
        self,
        vault_id: str,
        manifest_cipher: bytes,
        burn_at: Optional[datetime],
        storage_limit: int,
    ) -> None:
        """Unauthenticated insert of a new vault row; AlreadyExistsError on a taken id."""

    @abstractmethod
    async def insert_storage_grant(self, vault_id: str, transaction_uid: str, storage_bytes: int) -> None:
        """Unauthenticated insert of a storage grant row."""

    @abstractmethod
    def open(self, vault_id: str) -> VaultClient:
        """Return a handle that presents ``vault_id`` as its credential."""

    async def aclose(self) -> None:
        return None
