"""
The vault manifest: an in-memory forest of file and folder entries.

Every operation here is pure and synchronous. Mutators return a new
:class:`Manifest` and never touch the receiver; persisting the result
(encrypt + full-document replace) is the session's job.

Serialized form::

    {"chunk_path_pepper": "<64 hex chars>", "entries": [ {...}, ... ]}

Manifests written before the pepper existed are a bare JSON list of entries;
they load with ``chunk_path_pepper=None``.
"""

from __future__ import annotations

import json
import locale
from collections import defaultdict
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from nacl.utils import random as random_bytes

from .exceptions import ManifestError
from .models import EntryKind, ManifestEntry, create_entry_from_dict, new_uid, utcnow_iso
from ..config import MAX_FILE_NAME_LENGTH

PEPPER_SIZE = 32
ROOT_CRUMB_NAME = "My Vault"


class Crumb(NamedTuple):
    id: Optional[str]
    name: str


def truncate_name(name: str, limit: int = MAX_FILE_NAME_LENGTH) -> str:
    """Cap a name at ``limit`` characters, keeping a short file extension."""
    if len(name) <= limit:
        return name

    last_dot = name.rfind(".")
    if last_dot > 0 and last_dot > len(name) - 10:
        ext = name[last_dot:]
        return name[: limit - len(ext) - 3] + "..." + ext

    return name[: limit - 3] + "..."


def split_extension(name: str) -> Tuple[str, str]:
    last_dot = name.rfind(".")
    if last_dot > 0:
        return name[:last_dot], name[last_dot:]
    return name, ""


def create_folder(name: str, parent: Optional[str]) -> ManifestEntry:
    return ManifestEntry(
        id=new_uid(),
        name=truncate_name(name),
        kind=EntryKind.FOLDER,
        parent=parent,
        created_at=utcnow_iso(),
    )


def create_file_entry(
    name: str,
    parent: Optional[str],
    file_uid: str,
    size: int,
    chunk_count: int,
    mime_type: str,
) -> ManifestEntry:
    return ManifestEntry(
        id=new_uid(),
        name=truncate_name(name),
        kind=EntryKind.FILE,
        parent=parent,
        created_at=utcnow_iso(),
        file_uid=file_uid,
        size=size,
        chunk_count=chunk_count,
        mime_type=mime_type,
    )


def _sort_key(entry: ManifestEntry):
    # folders first, then locale order, raw name breaks ties
    return (
        0 if entry.is_folder else 1,
        locale.strxfrm(entry.name.casefold()),
        entry.name,
    )


class Manifest:
    """Immutable snapshot of a vault's entries plus its chunk path pepper."""

    __slots__ = ("_entries", "_by_id", "chunk_path_pepper")

    def __init__(self, entries: Iterable[ManifestEntry] = (), chunk_path_pepper: Optional[bytes] = None):
        self._entries: Tuple[ManifestEntry, ...] = tuple(entries)
        self._by_id: Dict[str, ManifestEntry] = {e.id: e for e in self._entries}
        if len(self._by_id) != len(self._entries):
            raise ManifestError("Duplicate entry ids in manifest")
        if chunk_path_pepper is not None and len(chunk_path_pepper) != PEPPER_SIZE:
            raise ManifestError(f"chunk path pepper must be {PEPPER_SIZE} bytes")
        self.chunk_path_pepper = chunk_path_pepper

    @classmethod
    def new(cls) -> "Manifest":
        """Empty manifest for a freshly created vault, with a random pepper."""
        return cls((), random_bytes(PEPPER_SIZE))

    def _derive(self, entries: Iterable[ManifestEntry]) -> "Manifest":
        return Manifest(entries, self.chunk_path_pepper)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def entries(self) -> Tuple[ManifestEntry, ...]:
        return self._entries

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def __contains__(self, entry_id):
        return entry_id in self._by_id

    def __eq__(self, other):
        if not isinstance(other, Manifest):
            return NotImplemented
        return self._entries == other._entries and self.chunk_path_pepper == other.chunk_path_pepper

    def __repr__(self):
        return f"Manifest(files={self.file_count()}, folders={self.folder_count()})"

    def get(self, entry_id: str) -> Optional[ManifestEntry]:
        return self._by_id.get(entry_id)

    def children_index(self) -> Dict[Optional[str], List[ManifestEntry]]:
        """Map every parent id to its direct children, built in one pass."""
        index: Dict[Optional[str], List[ManifestEntry]] = defaultdict(list)
        for entry in self._entries:
            index[entry.parent].append(entry)
        return index

    def total_size(self) -> int:
        return sum(e.size or 0 for e in self._entries if e.is_file)

    def file_count(self) -> int:
        return sum(1 for e in self._entries if e.is_file)

    def folder_count(self) -> int:
        return sum(1 for e in self._entries if e.is_folder)

    # ------------------------------------------------------------------
    # Mutations (return new manifests)
    # ------------------------------------------------------------------

    def add_entry(self, entry: ManifestEntry) -> "Manifest":
        return self.add_entries([entry])

    def add_entries(self, entries: Iterable[ManifestEntry]) -> "Manifest":
        """Append entries; re-adding an identical entry is a no-op."""
        added = []
        seen = dict(self._by_id)
        for entry in entries:
            existing = seen.get(entry.id)
            if existing is not None:
                if existing != entry:
                    raise ManifestError(f"Entry id {entry.id} already present with different fields")
                continue
            seen[entry.id] = entry
            added.append(entry)
        if not added:
            return self
        return self._derive(self._entries + tuple(added))

    def remove_entry(self, entry_id: str) -> Tuple["Manifest", List[ManifestEntry]]:
        return self.remove_entries([entry_id])

    def remove_entries(self, entry_ids: Iterable[str]) -> Tuple["Manifest", List[ManifestEntry]]:
        """
        Remove entries and, for folders, all their descendants.

        Returns the new manifest and the removed *file* entries so the caller
        can delete their blobs and release their quota. Unknown ids are skipped.
        """
        children = self.children_index()
        doomed = set()
        removed_files: List[ManifestEntry] = []

        for entry_id in entry_ids:
            entry = self._by_id.get(entry_id)
            if entry is None or entry.id in doomed:
                continue
            stack = [entry]
            while stack:
                current = stack.pop()
                if current.id in doomed:
                    continue
                doomed.add(current.id)
                if current.is_file:
                    removed_files.append(current)
                else:
                    stack.extend(children.get(current.id, ()))

        if not doomed:
            return self, []
        return self._derive(e for e in self._entries if e.id not in doomed), removed_files

    def get_files_in_entry(self, entry_id: str) -> List[ManifestEntry]:
        """File entries a removal of ``entry_id`` would delete."""
        _, files = self.remove_entries([entry_id])
        return files

    def rename_entry(self, entry_id: str, new_name: str) -> "Manifest":
        if entry_id not in self._by_id:
            return self
        name = truncate_name(new_name)
        return self._derive(e.replace(name=name) if e.id == entry_id else e for e in self._entries)

    def move_entry(self, entry_id: str, new_parent_id: Optional[str]) -> "Manifest":
        if entry_id not in self._by_id:
            return self
        return self._derive(e.replace(parent=new_parent_id) if e.id == entry_id else e for e in self._entries)

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def name_exists_in_folder(self, name: str, parent_id: Optional[str], exclude_id: Optional[str] = None) -> bool:
        """Case-insensitive sibling name check."""
        wanted = name.casefold()
        return any(
            e.parent == parent_id and e.name.casefold() == wanted and e.id != exclude_id
            for e in self._entries
        )

    def get_unique_name(
        self,
        name: str,
        parent_id: Optional[str],
        is_folder: bool,
        exclude_id: Optional[str] = None,
    ) -> str:
        """Return ``name``, or ``name (n)`` for the first free n; files keep their extension."""
        name = truncate_name(name)
        if not self.name_exists_in_folder(name, parent_id, exclude_id):
            return name

        base, ext = (name, "") if is_folder else split_extension(name)
        counter = 1
        while True:
            suffix = f" ({counter})"
            room = max(MAX_FILE_NAME_LENGTH - len(suffix) - len(ext), 0)
            candidate = f"{base[:room]}{suffix}{ext}"
            if not self.name_exists_in_folder(candidate, parent_id, exclude_id):
                return candidate
            counter += 1

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def get_entries_in_folder(self, folder_id: Optional[str]) -> List[ManifestEntry]:
        """Direct children of ``folder_id`` (None = root): folders first, then by name."""
        return sorted((e for e in self._entries if e.parent == folder_id), key=_sort_key)

    def get_breadcrumb_path(self, folder_id: Optional[str]) -> List[Crumb]:
        """Root crumb followed by each folder down to ``folder_id``."""
        folders: List[ManifestEntry] = []
        seen = set()
        current = folder_id
        while current is not None and current not in seen:
            seen.add(current)
            folder = self._by_id.get(current)
            if folder is None or not folder.is_folder:
                break
            folders.append(folder)
            current = folder.parent

        return [Crumb(None, ROOT_CRUMB_NAME)] + [Crumb(f.id, f.name) for f in reversed(folders)]

    def is_descendant_of(self, entry_id: str, ancestor_id: str) -> bool:
        # Walks parent pointers; the visited set guards against malformed cycles.
        seen = set()
        entry = self._by_id.get(entry_id)
        while entry is not None and entry.parent is not None and entry.id not in seen:
            if entry.parent == ancestor_id:
                return True
            seen.add(entry.id)
            entry = self._by_id.get(entry.parent)
        return False

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self):
        return {
            "chunk_path_pepper": self.chunk_path_pepper.hex() if self.chunk_path_pepper else None,
            "entries": [e.to_dict() for e in self._entries],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")

    @classmethod
    def from_json(cls, raw) -> "Manifest":
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = bytes(raw).decode("utf-8")
            data = json.loads(raw)
        except ValueError as e:
            raise ManifestError(f"Manifest is not valid JSON: {e}") from e

        if isinstance(data, list):
            return cls([create_entry_from_dict(d) for d in data], None)
        if not isinstance(data, dict) or not isinstance(data.get("entries", []), list):
            raise ManifestError("Manifest must be an object with an entries list")

        pepper_hex = data.get("chunk_path_pepper")
        try:
            pepper = bytes.fromhex(pepper_hex) if pepper_hex else None
        except (TypeError, ValueError) as e:
            raise ManifestError("Malformed chunk path pepper") from e

        return cls([create_entry_from_dict(d) for d in data.get("entries", [])], pepper)
