"""
Download orchestration.

Chunks are fetched and decrypted strictly one at a time in ascending index
order; reassembly depends on that order since chunk blobs carry no index of
their own. Any fetch or decryption failure aborts the whole file, without
retry.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from . import events
from .events import TransferEvents
from ..core.chunks import concatenate_chunks, decrypt_chunk, get_chunk_path
from ..core.exceptions import AuthenticationError, StoreError, TransferError
from ..core.models import DEFAULT_MIME_TYPE, DownloadProgress, DownloadResult, DownloadStatus, ManifestEntry
from ..security.session import LockReason, Session

logger = logging.getLogger(__name__)


class DownloadOrchestrator:
    def __init__(self, session: Session):
        self.session = session
        self.events = TransferEvents()
        self._downloads: Dict[str, DownloadProgress] = {}
        session.add_lock_listener(self._on_lock)

    @property
    def downloads(self) -> Tuple[DownloadProgress, ...]:
        """Read-only snapshot of download state in request order."""
        return tuple(self._downloads.values())

    def get(self, file_id: str) -> Optional[DownloadProgress]:
        return self._downloads.get(file_id)

    def clear_finished(self) -> int:
        finished = [
            file_id for file_id, state in self._downloads.items()
            if state.status in (DownloadStatus.COMPLETED, DownloadStatus.ERROR)
        ]
        for file_id in finished:
            del self._downloads[file_id]
        return len(finished)

    def close(self) -> None:
        self.session.remove_lock_listener(self._on_lock)

    def _on_lock(self, reason: LockReason) -> None:
        self._downloads.clear()

    def _set(self, state: DownloadProgress, status: DownloadStatus, progress: int) -> None:
        state.status = status
        state.progress = progress
        self.events.emit(events.PROGRESS, state)

    async def download_file(self, entry: ManifestEntry) -> DownloadResult:
        """Fetch, decrypt and reassemble the file described by ``entry``."""
        if not entry.is_file:
            raise TransferError(f"{entry.name} is not a file")

        self.session.touch()
        client = self.session.client
        vault_id = self.session.vault_id
        pepper = self.session.chunk_path_pepper

        state = DownloadProgress(entry.id, entry.name)
        self._downloads[entry.id] = state
        total = entry.chunk_count or 0
        logger.info("Downloading %s (%d chunks)", entry.name, total)

        chunks: List[bytes] = []
        try:
            for index in range(total):
                self._set(state, DownloadStatus.DOWNLOADING, round(index / total * 100))
                blob = await client.get_blob(get_chunk_path(vault_id, entry.file_uid, index, pepper))

                self._set(state, DownloadStatus.DECRYPTING, round((index + 0.5) / total * 100))
                chunks.append(decrypt_chunk(blob, self.session.encryption_key))
        except (StoreError, AuthenticationError) as e:
            state.status = DownloadStatus.ERROR
            state.error = str(e)
            logger.error("Download of %s failed at chunk %d: %s", entry.name, len(chunks), e)
            self.events.emit(events.FAILED, state)
            raise TransferError(f"Download of {entry.name} failed: {e}") from e

        data = concatenate_chunks(chunks)
        if entry.size is not None and len(data) != entry.size:
            state.status = DownloadStatus.ERROR
            state.error = "size mismatch"
            self.events.emit(events.FAILED, state)
            raise TransferError(f"{entry.name}: expected {entry.size} bytes, got {len(data)}")

        state.status = DownloadStatus.COMPLETED
        state.progress = 100
        logger.info("Downloaded %s (%d bytes)", entry.name, len(data))
        self.events.emit(events.COMPLETED, state)
        return DownloadResult(entry, data, entry.mime_type or DEFAULT_MIME_TYPE)
