"""
Chunk addressing and chunk encryption.

A file is split into plaintext chunks of at most ``CHUNK_SIZE`` bytes. Each
chunk is encrypted on its own and stored at::

    {vault_id}/{chunk_id}        chunk_id = BLAKE2b-256(file_uid ":" index)

The hash is keyed with the manifest's chunk path pepper when one exists, so
paths cannot be recomputed from the file uid alone. Chunk blobs are not
self-describing: the manifest's ``chunk_count`` is the only index bookkeeping,
and reassembly depends on iterating indices in ascending order.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Iterable, List, Optional

from nacl.encoding import RawEncoder
from nacl.hash import blake2b

from ..config import CHUNK_SIZE
from ..security import aead

CHUNK_ID_SIZE = 32


def calculate_chunk_count(file_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    if file_size < 0:
        raise ValueError("file size must be non-negative")
    return math.ceil(file_size / chunk_size)


def derive_chunk_id(file_uid: str, chunk_index: int, pepper: Optional[bytes] = None) -> str:
    """Deterministic, hex-encoded chunk id for ``(file_uid, chunk_index)``."""
    if chunk_index < 0:
        raise ValueError("chunk index must be non-negative")
    data = f"{file_uid}:{chunk_index}".encode("utf-8")
    digest = blake2b(data, digest_size=CHUNK_ID_SIZE, key=pepper or b"", encoder=RawEncoder)
    return digest.hex()


def get_chunk_path(vault_id: str, file_uid: str, chunk_index: int, pepper: Optional[bytes] = None) -> str:
    return f"{vault_id}/{derive_chunk_id(file_uid, chunk_index, pepper)}"


def get_file_chunk_paths(vault_id: str, file_uid: str, chunk_count: int, pepper: Optional[bytes] = None) -> List[str]:
    return [get_chunk_path(vault_id, file_uid, i, pepper) for i in range(chunk_count)]


def read_chunk(path: Path | str, chunk_index: int, chunk_size: int = CHUNK_SIZE) -> bytes:
    """Read one plaintext slice of a local file (blocking)."""
    with open(path, "rb") as f:
        f.seek(chunk_index * chunk_size)
        return f.read(chunk_size)


def encrypt_chunk(chunk: bytes, encryption_key: bytes | bytearray) -> bytes:
    return aead.encrypt(chunk, encryption_key)


def decrypt_chunk(encrypted_chunk: bytes, encryption_key: bytes | bytearray) -> bytes:
    return aead.decrypt(encrypted_chunk, encryption_key)


def concatenate_chunks(chunks: Iterable[bytes]) -> bytes:
    return b"".join(chunks)


def get_encrypted_chunk_size(original_size: int) -> int:
    return original_size + aead.OVERHEAD


def calculate_encrypted_size(file_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Total stored bytes for a file once every chunk carries its nonce and tag."""
    count = calculate_chunk_count(file_size, chunk_size)
    return file_size + count * aead.OVERHEAD
