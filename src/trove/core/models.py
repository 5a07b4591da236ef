"""
Base data models for the manifest, transfers and store rows
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
import mimetypes
import uuid

from .exceptions import ManifestError

DEFAULT_MIME_TYPE = "application/octet-stream"


class EntryKind(Enum):
    FILE = "file"
    FOLDER = "folder"


class UploadStatus(Enum):
    # Lifecycle of a client-side upload item
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"


class DownloadStatus(Enum):
    DOWNLOADING = "downloading"
    DECRYPTING = "decrypting"
    COMPLETED = "completed"
    ERROR = "error"


class BurnPolicy(Enum):
    # Time-to-live after which the hosted sweep deletes the vault
    HOURS_24 = "24h"
    DAYS_7 = "7d"
    DAYS_30 = "30d"
    DAYS_90 = "90d"
    YEAR_1 = "1y"
    NEVER = "never"

    @property
    def delta(self):
        return _BURN_DELTAS[self]

    def burn_at(self, now=None):
        """Return the UTC deletion timestamp for this policy, or None for NEVER."""
        if self is BurnPolicy.NEVER:
            return None
        now = now or datetime.now(timezone.utc)
        if self is BurnPolicy.YEAR_1:
            try:
                return now.replace(year=now.year + 1)
            except ValueError:
                # Feb 29 -> Mar 1
                return now.replace(year=now.year + 1, month=3, day=1)
        return now + self.delta


_BURN_DELTAS = {
    BurnPolicy.HOURS_24: timedelta(hours=24),
    BurnPolicy.DAYS_7: timedelta(days=7),
    BurnPolicy.DAYS_30: timedelta(days=30),
    BurnPolicy.DAYS_90: timedelta(days=90),
    BurnPolicy.YEAR_1: timedelta(days=365),
    BurnPolicy.NEVER: None,
}


def new_uid():
    return str(uuid.uuid4())


def utcnow_iso():
    return datetime.now(timezone.utc).isoformat()


class ManifestEntry:
    """
        One node of the vault's file/folder forest.

        Entries are treated as immutable values; use ``replace`` to derive a
        changed copy.
    """

    __slots__ = (
        'id',
        'name',
        'kind',
        'parent',
        'created_at',
        'file_uid',
        'size',
        'chunk_count',
        'mime_type',
    )

    def __init__(self, id, name, kind, parent=None, created_at=None, file_uid=None,
                 size=None, chunk_count=None, mime_type=None):
        self.id = id
        self.name = name
        self.kind = EntryKind(kind)
        self.parent = parent
        self.created_at = created_at or utcnow_iso()
        self.file_uid = file_uid
        self.size = size
        self.chunk_count = chunk_count
        self.mime_type = mime_type

    @property
    def is_file(self):
        return self.kind is EntryKind.FILE

    @property
    def is_folder(self):
        return self.kind is EntryKind.FOLDER

    def replace(self, **changes):
        values = {name: getattr(self, name) for name in self.__slots__}
        values.update(changes)
        return ManifestEntry(**values)

    def to_dict(self):
        data = {
            'id': self.id,
            'name': self.name,
            'type': self.kind.value,
            'parent': self.parent,
            'created_at': self.created_at,
        }
        if self.is_file:
            data.update({
                'file_uid': self.file_uid,
                'size': self.size,
                'chunk_count': self.chunk_count,
                'mime_type': self.mime_type,
            })
        return data

    def __repr__(self):
        return f"ManifestEntry(id={self.id!r}, name={self.name!r}, kind={self.kind.value})"

    def __eq__(self, other):
        if not isinstance(other, ManifestEntry):
            return NotImplemented
        return all(getattr(self, n) == getattr(other, n) for n in self.__slots__)

    def __hash__(self):
        return hash(self.id)


def create_entry_from_dict(data):
    """
        Create a ManifestEntry from its JSON form
    """
    try:
        return ManifestEntry(
            id=data['id'],
            name=data['name'],
            kind=data['type'],
            parent=data.get('parent'),
            created_at=data.get('created_at'),
            file_uid=data.get('file_uid'),
            size=data.get('size'),
            chunk_count=data.get('chunk_count'),
            mime_type=data.get('mime_type'),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ManifestError(f"Malformed manifest entry: {e}") from e


class UploadSource:
    """
        A local file queued for upload: the "file handle" of an upload item
    """

    __slots__ = ('path', 'name', 'size', 'mime_type')

    def __init__(self, path, name=None, size=None, mime_type=None):
        self.path = Path(path)
        self.name = name or self.path.name
        self.size = self.path.stat().st_size if size is None else size
        self.mime_type = mime_type or mimetypes.guess_type(self.name)[0] or DEFAULT_MIME_TYPE

    def __repr__(self):
        return f"UploadSource(name={self.name!r}, size={self.size})"


class UploadItem:
    """
        Client-local state of one queued upload
    """

    __slots__ = ('id', 'source', 'file_uid', 'parent_id', 'status', 'chunks_uploaded',
                 'total_chunks', 'speed', 'error', 'started_at', 'skip_chunks')

    def __init__(self, source, file_uid, parent_id, total_chunks, id=None, skip_chunks=None):
        self.id = id or new_uid()
        self.source = source
        self.file_uid = file_uid
        self.parent_id = parent_id
        self.status = UploadStatus.PENDING
        self.chunks_uploaded = 0
        self.total_chunks = total_chunks
        self.speed = 0.0
        self.error = None
        self.started_at = None
        # indices already stored by an earlier attempt (resume)
        self.skip_chunks = frozenset(skip_chunks or ())

    @property
    def progress(self):
        if not self.total_chunks:
            return 100 if self.status is UploadStatus.COMPLETED else 0
        return round(self.chunks_uploaded / self.total_chunks * 100)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.source.name,
            'size': self.source.size,
            'file_uid': self.file_uid,
            'parent_id': self.parent_id,
            'status': self.status.value,
            'progress': self.progress,
            'chunks_uploaded': self.chunks_uploaded,
            'total_chunks': self.total_chunks,
            'speed': self.speed,
            'error': self.error,
        }

    def __repr__(self):
        return f"UploadItem(id={self.id!r}, name={self.source.name!r}, status={self.status.value})"


class UploadRecord:
    """
        Store-side resumability record for an upload in progress
    """

    __slots__ = ('upload_id', 'vault_id', 'file_uid', 'total_chunks', 'received_chunks', 'created_at')

    def __init__(self, upload_id, vault_id, file_uid, total_chunks, received_chunks=None, created_at=None):
        self.upload_id = upload_id
        self.vault_id = vault_id
        self.file_uid = file_uid
        self.total_chunks = total_chunks
        self.received_chunks = set(received_chunks or ())
        self.created_at = created_at

    @property
    def missing_chunks(self):
        return sorted(set(range(self.total_chunks)) - self.received_chunks)

    def __repr__(self):
        return (f"UploadRecord(file_uid={self.file_uid!r}, "
                f"received={len(self.received_chunks)}/{self.total_chunks})")


class VaultRecord:
    """
        The vault row as seen through an authorized handle
    """

    __slots__ = ('vault_id', 'manifest_cipher', 'burn_at', 'storage_used', 'storage_limit', 'created_at')

    def __init__(self, vault_id, manifest_cipher, burn_at=None, storage_used=0, storage_limit=0, created_at=None):
        self.vault_id = vault_id
        self.manifest_cipher = manifest_cipher
        self.burn_at = burn_at
        self.storage_used = storage_used
        self.storage_limit = storage_limit
        self.created_at = created_at

    def __repr__(self):
        return f"VaultRecord(vault_id={self.vault_id[:16]!r}..., storage_used={self.storage_used})"


class DownloadProgress:
    """
        Live state of a download, keyed by manifest entry id
    """

    __slots__ = ('file_id', 'file_name', 'progress', 'status', 'error')

    def __init__(self, file_id, file_name):
        self.file_id = file_id
        self.file_name = file_name
        self.progress = 0
        self.status = DownloadStatus.DOWNLOADING
        self.error = None

    def to_dict(self):
        return {
            'file_id': self.file_id,
            'file_name': self.file_name,
            'progress': self.progress,
            'status': self.status.value,
            'error': self.error,
        }


class DownloadResult:
    """
        Decrypted file handed to the presentation layer
    """

    __slots__ = ('entry', 'data', 'mime_type')

    def __init__(self, entry, data, mime_type):
        self.entry = entry
        self.data = data
        self.mime_type = mime_type

    @property
    def name(self):
        return self.entry.name

    def save(self, destination):
        """Write the plaintext to ``destination`` (a file path) and return it."""
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        with open(destination, "wb") as f:
            f.write(self.data)
        return destination
