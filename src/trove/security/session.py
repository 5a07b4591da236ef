"""In-memory session holding one unlocked vault's key material.

A :class:`Session` walks an explicit state table::

    LOCKED -> UNLOCKING -> UNLOCKED -> LOCKED
    LOCKED -> CREATING  -> UNLOCKED

At most one session per process may be UNLOCKED. The session owns the
encryption key, the vault handle (through a :class:`HandleRegistry`) and the
:class:`ManifestWriter`, the single writer every manifest mutation goes
through. Logout, idle timeout and network loss all lock synchronously: the key
is zeroed, handles are dropped and in-flight transfers are abandoned.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from enum import Enum
from typing import Callable, ClassVar, Dict, List, NamedTuple, Optional

from . import aead
from .kdf import Identity, derive_identity, wipe
from ..config import TroveConfig
from ..core.chunks import get_file_chunk_paths
from ..core.exceptions import (
    AlreadyExistsError,
    AuthenticationError,
    ManifestError,
    ManifestPersistError,
    SessionStateError,
    StoreError,
    VaultExistsError,
    VaultInaccessibleError,
)
from ..core.manifest import Manifest, create_folder
from ..core.models import BurnPolicy, ManifestEntry
from ..logging_config import redact_vault_id
from ..store.base import VaultClient, VaultStore

logger = logging.getLogger(__name__)

Mutation = Callable[[Manifest], Manifest]


class SessionState(Enum):
    LOCKED = "locked"
    CREATING = "creating"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"


class LockReason(Enum):
    LOGOUT = "logout"
    IDLE = "idle"
    NETWORK_LOSS = "network_loss"


_TRANSITIONS = {
    SessionState.LOCKED: {SessionState.CREATING, SessionState.UNLOCKING},
    SessionState.CREATING: {SessionState.UNLOCKED, SessionState.LOCKED},
    SessionState.UNLOCKING: {SessionState.UNLOCKED, SessionState.LOCKED},
    SessionState.UNLOCKED: {SessionState.LOCKED},
}


class IdleStatus(NamedTuple):
    warning: bool
    remaining_seconds: int


class HandleRegistry:
    """Vault handles opened by a session, keyed by vault id."""

    def __init__(self):
        self._handles: Dict[str, VaultClient] = {}

    def register(self, client: VaultClient) -> VaultClient:
        self._handles[client.vault_id] = client
        return client

    def get(self, vault_id: str) -> Optional[VaultClient]:
        return self._handles.get(vault_id)

    def __len__(self):
        return len(self._handles)

    def close_all(self) -> None:
        """Drop every handle; transport cleanup is scheduled if a loop is running."""
        handles, self._handles = list(self._handles.values()), {}
        for handle in handles:
            _schedule_close(handle)


def _schedule_close(client: VaultClient) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    loop.create_task(client.aclose())


class _Job:
    __slots__ = ("mutation", "future")

    def __init__(self, mutation, future):
        self.mutation = mutation
        self.future = future


class ManifestWriter:
    """
    Single-writer actor for the manifest.

    Mutations are queued in an inbox and applied one at a time by one worker
    task: each job sees the manifest produced by the previous job, then the
    result is encrypted and written to the store as a whole document. A job
    whose write fails leaves the current manifest untouched.
    """

    def __init__(self, client: VaultClient, key_provider: Callable[[], bytearray], manifest: Manifest):
        self._client = client
        self._key_provider = key_provider
        self.manifest = manifest
        self._inbox: "asyncio.Queue[_Job]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    def start(self) -> "ManifestWriter":
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(self._run())
        return self

    async def submit(self, mutation: Mutation) -> Manifest:
        """Queue ``mutation`` and wait for the manifest it produced."""
        if self._closed:
            raise SessionStateError("Vault is locked")
        future = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_Job(mutation, future))
        return await future

    async def _run(self) -> None:
        while True:
            job = await self._inbox.get()
            try:
                if job.future.done():
                    continue
                try:
                    result = await self._apply(job.mutation)
                except asyncio.CancelledError:
                    if not job.future.done():
                        job.future.set_exception(SessionStateError("Vault was locked during manifest update"))
                    raise
                except Exception as e:
                    if not job.future.done():
                        job.future.set_exception(e)
                else:
                    if not job.future.done():
                        job.future.set_result(result)
            finally:
                self._inbox.task_done()

    async def _apply(self, mutation: Mutation) -> Manifest:
        current = self.manifest
        updated = mutation(current)
        if not isinstance(updated, Manifest):
            raise ManifestError("manifest mutation must return a Manifest")
        if updated is current:
            return current

        cipher = aead.encrypt(updated.to_bytes(), self._key_provider())
        try:
            await self._client.update_vault(manifest_cipher=cipher)
        except StoreError as e:
            logger.error("Manifest update failed: %s", e)
            raise ManifestPersistError("Failed to save vault manifest") from e

        self.manifest = updated
        logger.debug(
            "Manifest updated: %d entries (%d files, %d folders)",
            len(updated), updated.file_count(), updated.folder_count(),
        )
        return updated

    def stop(self) -> None:
        """Cancel the worker and fail every queued job."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        while not self._inbox.empty():
            job = self._inbox.get_nowait()
            if not job.future.done():
                job.future.set_exception(SessionStateError("Vault is locked"))
            self._inbox.task_done()


class Session:
    """The single live vault session of this process."""

    _active: ClassVar[Optional["Session"]] = None

    def __init__(self, store: VaultStore, config: Optional[TroveConfig] = None, clock=time.monotonic):
        self.store = store
        self.config = config or TroveConfig()
        self._clock = clock
        self._state = SessionState.LOCKED
        self._generation = 0
        self._key: Optional[bytearray] = None
        self._vault_id: Optional[str] = None
        self._handles = HandleRegistry()
        self._writer: Optional[ManifestWriter] = None
        self._lock_listeners: List[Callable[[LockReason], None]] = []
        self._storage_lock = asyncio.Lock()
        self.burn_at = None
        self.storage_used = 0
        self.storage_limit = 0
        self._last_activity = clock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @classmethod
    def active(cls) -> Optional["Session"]:
        return cls._active

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_unlocked(self) -> bool:
        return self._state is SessionState.UNLOCKED

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise SessionStateError(f"Cannot go from {self._state.value} to {target.value}")
        logger.debug("Session %s -> %s", self._state.value, target.value)
        self._state = target

    def _require_unlocked(self) -> None:
        if self._state is not SessionState.UNLOCKED:
            raise SessionStateError("Vault is locked")

    @property
    def vault_id(self) -> str:
        self._require_unlocked()
        return self._vault_id

    @property
    def encryption_key(self) -> bytearray:
        self._require_unlocked()
        return self._key

    @property
    def client(self) -> VaultClient:
        self._require_unlocked()
        return self._handles.get(self._vault_id)

    @property
    def manifest(self) -> Manifest:
        """Last manifest the store accepted: the displayed truth."""
        self._require_unlocked()
        return self._writer.manifest

    @property
    def chunk_path_pepper(self) -> Optional[bytes]:
        return self.manifest.chunk_path_pepper

    def add_lock_listener(self, callback: Callable[[LockReason], None]) -> None:
        self._lock_listeners.append(callback)

    def remove_lock_listener(self, callback: Callable[[LockReason], None]) -> None:
        if callback in self._lock_listeners:
            self._lock_listeners.remove(callback)

    # ------------------------------------------------------------------
    # Create / unlock
    # ------------------------------------------------------------------

    def _begin(self, target: SessionState) -> int:
        other = Session._active
        if other is not None and other is not self and other.is_unlocked:
            raise SessionStateError("Another vault session is already unlocked in this process")
        self._transition(target)
        self._generation += 1
        return self._generation

    def _still_current(self, generation: int) -> None:
        # logout() during create/unlock bumps the generation
        if generation != self._generation:
            raise SessionStateError("Session was locked while opening the vault")

    def _abort(self, generation: int) -> None:
        if generation == self._generation and self._state is not SessionState.LOCKED:
            self._state = SessionState.LOCKED

    async def create(self, seed_phrase: str, burn_policy: BurnPolicy = BurnPolicy.NEVER) -> None:
        """
        Create a new vault from ``seed_phrase`` and unlock it.

        Both the vault row and the initial storage grant go through the
        store's unauthenticated insert path.
        """
        generation = self._begin(SessionState.CREATING)
        identity: Optional[Identity] = None
        try:
            identity = await asyncio.to_thread(derive_identity, seed_phrase)
            self._still_current(generation)

            manifest = Manifest.new()
            cipher = aead.encrypt(manifest.to_bytes(), identity.encryption_key)
            burn_at = burn_policy.burn_at()
            limit = self.config.free_storage_bytes

            try:
                await self.store.insert_vault(identity.vault_id, cipher, burn_at, limit)
            except AlreadyExistsError as e:
                raise VaultExistsError("A vault with this seed phrase already exists") from e
            self._still_current(generation)

            try:
                await self.store.insert_storage_grant(
                    identity.vault_id, f"free-{identity.vault_id[:16]}", limit
                )
            except StoreError as e:
                logger.warning("Free storage grant failed for %s: %s", redact_vault_id(identity.vault_id), e)
            self._still_current(generation)

            logger.info(
                "Vault %s created (burn_at=%s, storage_limit=%d)",
                redact_vault_id(identity.vault_id), burn_at, limit,
            )
            self.burn_at = burn_at
            self.storage_used = 0
            self.storage_limit = limit
            self._activate(identity, self.store.open(identity.vault_id), manifest)
        except BaseException:
            if identity is not None:
                identity.wipe()
            self._abort(generation)
            raise

    async def unlock(self, seed_phrase: str) -> None:
        """
        Derive keys from ``seed_phrase``, fetch and decrypt the vault manifest.

        Not found, rejected credential, store failure and failed decryption
        all raise the same :class:`VaultInaccessibleError`.
        """
        generation = self._begin(SessionState.UNLOCKING)
        identity: Optional[Identity] = None
        client: Optional[VaultClient] = None
        try:
            identity = await asyncio.to_thread(derive_identity, seed_phrase)
            self._still_current(generation)

            client = self.store.open(identity.vault_id)
            try:
                record = await client.fetch_vault()
                manifest = Manifest.from_json(aead.decrypt(record.manifest_cipher, identity.encryption_key))
            except (StoreError, AuthenticationError, ManifestError) as e:
                logger.debug("Unlock failed: %s", type(e).__name__)
                raise VaultInaccessibleError() from None
            self._still_current(generation)

            self.burn_at = record.burn_at
            self.storage_used = record.storage_used
            self.storage_limit = record.storage_limit
            self._activate(identity, client, manifest)
            logger.info(
                "Vault %s unlocked: %d files, %d folders",
                redact_vault_id(identity.vault_id), manifest.file_count(), manifest.folder_count(),
            )
        except BaseException:
            if identity is not None:
                identity.wipe()
            if client is not None and not self.is_unlocked:
                _schedule_close(client)
            self._abort(generation)
            raise

    def _activate(self, identity: Identity, client: VaultClient, manifest: Manifest) -> None:
        other = Session._active
        if other is not None and other is not self and other.is_unlocked:
            raise SessionStateError("Another vault session is already unlocked in this process")
        self._key = identity.encryption_key
        self._vault_id = identity.vault_id
        self._handles.register(client)
        self._writer = ManifestWriter(client, self._current_key, manifest).start()
        self._transition(SessionState.UNLOCKED)
        Session._active = self
        self.touch()

    def _current_key(self) -> bytearray:
        if self._key is None:
            raise SessionStateError("Vault is locked")
        return self._key

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    def logout(self, reason: LockReason = LockReason.LOGOUT) -> None:
        """Zero the key, drop handles and lock; never waits for transfers."""
        if self._state is SessionState.LOCKED:
            return
        was_unlocked = self.is_unlocked
        vault_id = self._vault_id

        self._generation += 1
        wipe(self._key)
        self._key = None
        if self._writer is not None:
            self._writer.stop()
            self._writer = None
        self._handles.close_all()
        self._vault_id = None
        self.burn_at = None
        self.storage_used = 0
        self.storage_limit = 0
        self._state = SessionState.LOCKED
        if Session._active is self:
            Session._active = None

        if was_unlocked:
            logger.info("Vault %s locked (%s), keys wiped", redact_vault_id(vault_id), reason.value)
            for callback in list(self._lock_listeners):
                callback(reason)

    def idle_timeout(self) -> None:
        self.logout(LockReason.IDLE)

    def network_loss(self) -> None:
        self.logout(LockReason.NETWORK_LOSS)

    # ------------------------------------------------------------------
    # Idle tracking
    # ------------------------------------------------------------------

    def touch(self, now: Optional[float] = None) -> None:
        """Record user activity."""
        self._last_activity = self._clock() if now is None else now

    def idle_status(self, now: Optional[float] = None) -> IdleStatus:
        now = self._clock() if now is None else now
        idle = now - self._last_activity
        if idle >= self.config.idle_warning:
            remaining = max(0, math.ceil(self.config.idle_timeout - idle))
            return IdleStatus(True, remaining)
        return IdleStatus(False, 0)

    def check_idle(self, now: Optional[float] = None) -> bool:
        """Lock once the idle timeout has elapsed; returns True if it locked."""
        if not self.is_unlocked:
            return False
        now = self._clock() if now is None else now
        if now - self._last_activity >= self.config.idle_timeout:
            self.idle_timeout()
            return True
        return False

    async def run_idle_watchdog(self, interval: float = 1.0) -> None:
        while self.is_unlocked:
            if self.check_idle():
                return
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Manifest mutations
    # ------------------------------------------------------------------

    async def apply_manifest_mutation(self, mutation: Mutation) -> Manifest:
        """Run ``mutation`` through the single writer and persist its result."""
        self._require_unlocked()
        self.touch()
        return await self._writer.submit(mutation)

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> ManifestEntry:
        name = name.strip()
        if not name:
            raise ManifestError("Folder name must not be empty")
        created: List[ManifestEntry] = []

        def mutate(manifest: Manifest) -> Manifest:
            _require_folder(manifest, parent_id)
            folder = create_folder(manifest.get_unique_name(name, parent_id, True), parent_id)
            created.append(folder)
            return manifest.add_entry(folder)

        await self.apply_manifest_mutation(mutate)
        return created[0]

    async def rename_entry(self, entry_id: str, new_name: str) -> str:
        new_name = new_name.strip()
        if not new_name:
            raise ManifestError("Name must not be empty")
        final: List[str] = []

        def mutate(manifest: Manifest) -> Manifest:
            entry = _require_entry(manifest, entry_id)
            unique = manifest.get_unique_name(new_name, entry.parent, entry.is_folder, exclude_id=entry_id)
            final.append(unique)
            return manifest.rename_entry(entry_id, unique)

        await self.apply_manifest_mutation(mutate)
        return final[0]

    async def move_entry(self, entry_id: str, new_parent_id: Optional[str]) -> None:
        def mutate(manifest: Manifest) -> Manifest:
            entry = _require_entry(manifest, entry_id)
            _require_folder(manifest, new_parent_id)
            if entry.parent == new_parent_id:
                return manifest
            if new_parent_id is not None and entry.is_folder and (
                new_parent_id == entry_id or manifest.is_descendant_of(new_parent_id, entry_id)
            ):
                raise ManifestError("Cannot move a folder into itself")
            unique = manifest.get_unique_name(entry.name, new_parent_id, entry.is_folder, exclude_id=entry_id)
            moved = manifest.move_entry(entry_id, new_parent_id)
            return moved.rename_entry(entry_id, unique) if unique != entry.name else moved

        await self.apply_manifest_mutation(mutate)

    async def delete_entries(self, entry_ids: List[str]) -> List[ManifestEntry]:
        """
        Remove entries (folders recursively), then delete the removed files'
        chunk blobs and release their bytes from ``storage_used``.
        """
        removed: List[ManifestEntry] = []
        pepper: List[Optional[bytes]] = []

        def mutate(manifest: Manifest) -> Manifest:
            updated, files = manifest.remove_entries(entry_ids)
            removed.extend(files)
            pepper.append(manifest.chunk_path_pepper)
            return updated

        await self.apply_manifest_mutation(mutate)

        vault_id, client = self.vault_id, self.client
        paths = []
        for entry in removed:
            if entry.file_uid and entry.chunk_count:
                paths.extend(get_file_chunk_paths(vault_id, entry.file_uid, entry.chunk_count, pepper[0]))
        if paths:
            try:
                await client.delete_blobs(paths)
            except StoreError as e:
                logger.warning("Blob cleanup failed for %d chunks: %s", len(paths), e)

        freed = sum(e.size or 0 for e in removed)
        if freed:
            await self.update_storage_used(-freed)
        logger.info("Deleted %d entries, %d files, %d bytes freed", len(entry_ids), len(removed), freed)
        return removed

    # ------------------------------------------------------------------
    # Storage accounting
    # ------------------------------------------------------------------

    async def update_storage_used(self, delta: int) -> None:
        """Apply ``delta`` and persist the new total, one write at a time."""
        self._require_unlocked()
        async with self._storage_lock:
            self._require_unlocked()
            self.storage_used = max(0, self.storage_used + delta)
            try:
                await self.client.update_vault(storage_used=self.storage_used)
            except StoreError as e:
                logger.error("Failed to update storage_used: %s", e)

    async def refresh_storage_limit(self) -> int:
        """Recompute ``storage_limit`` as the sum of the vault's storage grants."""
        self._require_unlocked()
        grants = await self.client.list_storage_grants()
        limit = sum(grants) if grants else self.storage_limit
        if limit != self.storage_limit:
            await self.client.update_vault(storage_limit=limit)
            self.storage_limit = limit
        return limit


def _require_entry(manifest: Manifest, entry_id: str) -> ManifestEntry:
    entry = manifest.get(entry_id)
    if entry is None:
        raise ManifestError(f"No such entry: {entry_id}")
    return entry


def _require_folder(manifest: Manifest, folder_id: Optional[str]) -> None:
    if folder_id is None:
        return
    folder = manifest.get(folder_id)
    if folder is None or not folder.is_folder:
        raise ManifestError(f"No such folder: {folder_id}")
