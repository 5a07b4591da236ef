"""
Upload orchestration: queue, concurrency caps, retries, cancellation, resume.

Each queued :class:`UploadItem` moves ``pending -> uploading -> completed``
or ``-> error``; cancellation removes it from the queue instead. At most
``max_concurrent_uploads`` items upload at once, and each uploading item runs
``max_concurrent_chunks`` workers pulling chunk indices from a shared queue.

A file becomes visible in the manifest only after every one of its chunks is
stored and recorded. A failed item keeps its upload record at the store so it
can be resumed later with :meth:`UploadOrchestrator.enqueue_resume`.

Must be driven from inside a running event loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from . import events
from .events import TransferEvents
from ..config import TroveConfig
from ..core.chunks import calculate_chunk_count, encrypt_chunk, get_chunk_path, read_chunk
from ..core.exceptions import (
    AlreadyExistsError,
    StoreAuthorizationError,
    StoreError,
    TransferCancelledError,
    TransferError,
)
from ..core.manifest import Manifest, create_file_entry, create_folder
from ..core.models import UploadItem, UploadRecord, UploadSource, UploadStatus, new_uid
from ..security.session import LockReason, Session
from ..store.base import VaultClient

logger = logging.getLogger(__name__)

FileLike = Union[UploadSource, str, os.PathLike]


class UploadOrchestrator:
    """Upload queue bound to one unlocked :class:`Session`."""

    def __init__(self, session: Session, config: Optional[TroveConfig] = None):
        self.session = session
        self.config = config or session.config
        self.events = TransferEvents()
        self._items: Dict[str, UploadItem] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancelled: Set[str] = set()
        self._resume_ids: Set[str] = set()
        self._finalizing: Set[str] = set()
        self._bytes_sent: Dict[str, int] = {}
        session.add_lock_listener(self._on_lock)

    # ------------------------------------------------------------------
    # Queue view
    # ------------------------------------------------------------------

    @property
    def items(self) -> Tuple[UploadItem, ...]:
        """Read-only snapshot of the queue in enqueue order."""
        return tuple(self._items.values())

    def get(self, item_id: str) -> Optional[UploadItem]:
        return self._items.get(item_id)

    def active_count(self) -> int:
        return sum(1 for item in self._items.values() if item.status is UploadStatus.UPLOADING)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, files: Iterable[FileLike], parent_id: Optional[str] = None) -> List[UploadItem]:
        """Queue local files for upload into ``parent_id`` (None = root)."""
        self.session.touch()
        queued = []
        for f in files:
            source = f if isinstance(f, UploadSource) else UploadSource(f)
            total = calculate_chunk_count(source.size, self.config.chunk_size)
            item = UploadItem(source, new_uid(), parent_id, total)
            self._items[item.id] = item
            queued.append(item)
            logger.debug("Queued %s (%d bytes, %d chunks)", source.name, source.size, total)
        self._pump()
        return queued

    async def enqueue_directory(self, path: Union[str, os.PathLike], parent_id: Optional[str] = None) -> List[UploadItem]:
        """
        Mirror a local directory tree into the vault.

        One manifest mutation creates the top folder (collision-safe name) and
        every subfolder; then each file is queued under its folder.
        """
        root = Path(path)
        if not root.is_dir():
            raise NotADirectoryError(str(root))

        directories: List[Path] = []
        files: Dict[Path, List[Path]] = {}
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            rel = Path(dirpath).relative_to(root)
            if rel != Path("."):
                directories.append(rel)
            files[rel] = [Path(dirpath) / name for name in sorted(filenames)]

        folder_ids: Dict[Path, str] = {}

        def add_tree(manifest: Manifest) -> Manifest:
            folder_ids.clear()
            top = create_folder(manifest.get_unique_name(root.name, parent_id, True), parent_id)
            manifest = manifest.add_entry(top)
            folder_ids[Path(".")] = top.id
            for rel in directories:
                parent = folder_ids[rel.parent]
                folder = create_folder(manifest.get_unique_name(rel.name, parent, True), parent)
                manifest = manifest.add_entry(folder)
                folder_ids[rel] = folder.id
            return manifest

        await self.session.apply_manifest_mutation(add_tree)
        logger.info("Created %d folders for %s", len(folder_ids), root.name)

        queued: List[UploadItem] = []
        for rel, paths in files.items():
            if paths:
                queued.extend(self.enqueue(paths, folder_ids[rel]))
        return queued

    async def list_resumable(self) -> List[UploadRecord]:
        """Upload records left at the store by failed or abandoned uploads."""
        return await self.session.client.list_uploads()

    def enqueue_resume(self, source: FileLike, record: UploadRecord, parent_id: Optional[str] = None) -> UploadItem:
        """Queue ``source`` to finish ``record``, uploading only its missing chunks."""
        source = source if isinstance(source, UploadSource) else UploadSource(source)
        total = calculate_chunk_count(source.size, self.config.chunk_size)
        if total != record.total_chunks:
            raise TransferError(
                f"{source.name} has {total} chunks but the upload record expects {record.total_chunks}"
            )
        item = UploadItem(source, record.file_uid, parent_id, total, skip_chunks=record.received_chunks)
        item.chunks_uploaded = len(item.skip_chunks)
        self._items[item.id] = item
        self._resume_ids.add(item.id)
        logger.info("Resuming %s: %d of %d chunks missing", source.name, len(record.missing_chunks), total)
        self._pump()
        return item

    # ------------------------------------------------------------------
    # Cancel / clear
    # ------------------------------------------------------------------

    def cancel(self, item_id: str) -> bool:
        """
        Cancel a pending or uploading item.

        A pending item is dropped at once. An uploading item is flagged; its
        workers observe the flag before their next attempt or backoff sleep.
        Returns False once every chunk is stored and the item is being added
        to the manifest, since it will complete regardless.
        """
        item = self._items.get(item_id)
        if item is None:
            return False
        if item.status is UploadStatus.PENDING:
            del self._items[item_id]
            if item_id in self._resume_ids:
                self._resume_ids.discard(item_id)
                asyncio.get_running_loop().create_task(self._discard_record(item))
            logger.info("Upload of %s cancelled before it started", item.source.name)
            self.events.emit(events.CANCELLED, item)
            return True
        if item.status is UploadStatus.UPLOADING and item_id not in self._finalizing:
            self._cancelled.add(item_id)
            return True
        return False

    def clear_completed(self) -> int:
        done = [i for i, item in self._items.items() if item.status is UploadStatus.COMPLETED]
        for item_id in done:
            del self._items[item_id]
        return len(done)

    async def join(self) -> None:
        """Wait until nothing is uploading or waiting to upload."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def close(self) -> None:
        self.session.remove_lock_listener(self._on_lock)

    def _on_lock(self, reason: LockReason) -> None:
        # abandon, not drain: records and stored chunks are left behind
        tasks, self._tasks = list(self._tasks.values()), {}
        for task in tasks:
            task.cancel()
        if self._items:
            logger.info("Abandoned %d uploads (%s)", len(self._items), reason.value)
        self._items.clear()
        self._cancelled.clear()
        self._resume_ids.clear()
        self._finalizing.clear()
        self._bytes_sent.clear()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        if not self.session.is_unlocked:
            return
        active = self.active_count()
        loop = asyncio.get_running_loop()
        for item in list(self._items.values()):
            if active >= self.config.max_concurrent_uploads:
                break
            if item.status is not UploadStatus.PENDING:
                continue
            item.status = UploadStatus.UPLOADING
            item.started_at = time.monotonic()
            self._tasks[item.id] = loop.create_task(self._run_item(item))
            active += 1

    async def _run_item(self, item: UploadItem) -> None:
        try:
            await self._upload(item)
        except TransferCancelledError:
            await self._finish_cancelled(item)
        except Exception as e:
            item.status = UploadStatus.ERROR
            item.error = str(e)
            logger.error("Upload of %s failed: %s", item.source.name, e)
            self.events.emit(events.FAILED, item)
        finally:
            self._tasks.pop(item.id, None)
            self._cancelled.discard(item.id)
            self._resume_ids.discard(item.id)
            self._finalizing.discard(item.id)
            self._bytes_sent.pop(item.id, None)
            self._pump()

    def _check_cancelled(self, item: UploadItem) -> None:
        if item.id in self._cancelled:
            raise TransferCancelledError(item.id)

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    async def _upload(self, item: UploadItem) -> None:
        client = self.session.client
        vault_id = self.session.vault_id
        pepper = self.session.chunk_path_pepper
        logger.info("Uploading %s (%d chunks)", item.source.name, item.total_chunks)

        record = await client.get_upload(item.file_uid) if item.id in self._resume_ids else None
        if record is None:
            await client.create_upload(item.file_uid, item.total_chunks)

        pending = deque(i for i in range(item.total_chunks) if i not in item.skip_chunks)
        failures: List[Exception] = []

        async def worker():
            while pending and not failures:
                index = pending.popleft()
                try:
                    await self._upload_chunk(item, client, vault_id, pepper, index)
                except Exception as e:
                    failures.append(e)
                    return

        workers = min(self.config.max_concurrent_chunks, len(pending))
        await asyncio.gather(*(worker() for _ in range(workers)))
        if failures:
            raise failures[0]

        self._check_cancelled(item)
        self._finalizing.add(item.id)
        await self._complete(item, client)

    async def _upload_chunk(self, item: UploadItem, client: VaultClient, vault_id: str, pepper, index: int) -> None:
        path = get_chunk_path(vault_id, item.file_uid, index, pepper)
        max_retries = self.config.max_retries

        for attempt in range(1, max_retries + 1):
            self._check_cancelled(item)
            try:
                plaintext = await asyncio.to_thread(
                    read_chunk, item.source.path, index, self.config.chunk_size
                )
            except OSError as e:
                raise TransferError(f"Cannot read {item.source.name}: {e}") from e

            try:
                blob = encrypt_chunk(plaintext, self.session.encryption_key)
                try:
                    await client.put_blob(path, blob)
                except AlreadyExistsError:
                    # stored by an earlier attempt whose response was lost
                    logger.debug("Chunk %d of %s already stored", index, item.source.name)
                await client.append_received_chunk(item.file_uid, index)
                break
            except StoreAuthorizationError as e:
                raise TransferError(f"Chunk {index} rejected: {e}") from e
            except StoreError as e:
                if attempt >= max_retries:
                    raise TransferError(f"Chunk {index} failed after {max_retries} attempts: {e}") from e
                logger.warning(
                    "Chunk %d of %s failed (attempt %d/%d): %s",
                    index, item.source.name, attempt, max_retries, e,
                )
                self._check_cancelled(item)
                await asyncio.sleep(self.config.retry_delay * attempt)

        self._record_progress(item, len(plaintext))

    def _record_progress(self, item: UploadItem, sent: int) -> None:
        item.chunks_uploaded += 1
        total_sent = self._bytes_sent.get(item.id, 0) + sent
        self._bytes_sent[item.id] = total_sent
        elapsed = time.monotonic() - (item.started_at or time.monotonic())
        if elapsed > 0:
            item.speed = total_sent / elapsed
        self.events.emit(events.PROGRESS, item)

    async def _complete(self, item: UploadItem, client: VaultClient) -> None:
        source = item.source
        added = []

        def add_file(manifest: Manifest) -> Manifest:
            parent = item.parent_id
            if parent is not None and (manifest.get(parent) is None or not manifest.get(parent).is_folder):
                logger.warning("Target folder of %s is gone; placing it at the root", source.name)
                parent = None
            entry = create_file_entry(
                manifest.get_unique_name(source.name, parent, False),
                parent,
                item.file_uid,
                source.size,
                item.total_chunks,
                source.mime_type,
            )
            added.append(entry)
            return manifest.add_entry(entry)

        await self.session.apply_manifest_mutation(add_file)
        await self.session.update_storage_used(source.size)

        try:
            await client.delete_upload(item.file_uid)
        except StoreError as e:
            logger.warning("Could not delete upload record of %s: %s", source.name, e)

        item.status = UploadStatus.COMPLETED
        item.chunks_uploaded = item.total_chunks
        logger.info("Uploaded %s as %s", source.name, added[0].name)
        self.events.emit(events.COMPLETED, item)

    async def _finish_cancelled(self, item: UploadItem) -> None:
        await self._discard_record(item)
        self._items.pop(item.id, None)
        logger.info("Upload of %s cancelled", item.source.name)
        self.events.emit(events.CANCELLED, item)

    async def _discard_record(self, item: UploadItem) -> None:
        try:
            await self.session.client.delete_upload(item.file_uid)
        except StoreError as e:
            logger.warning("Could not delete upload record of %s: %s", item.source.name, e)
