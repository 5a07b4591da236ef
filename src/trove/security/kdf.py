"""Seed phrase -> vault identity.

The master secret comes from Argon2id over the seed phrase and a fixed
application salt. Two BLAKE2b subkeys are split off it with distinct
contexts (libsodium ``crypto_kdf`` layout): subkey 1 is the encryption key,
subkey 2 is hashed once more and hex-encoded into the public vault id.

The salt is fixed because an accountless vault has nowhere to keep a
per-user salt before authentication; security rests on seed entropy.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from argon2.exceptions import Argon2Error
from argon2.low_level import ARGON2_VERSION, Type, hash_secret_raw
from nacl.encoding import RawEncoder
from nacl.exceptions import CryptoError
from nacl.hash import blake2b

from ..core.exceptions import KeyDerivationError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
SALT_LENGTH = 16
FIXED_SALT = b"trove-v1-salt-2026"[:SALT_LENGTH]

# Matches libsodium crypto_pwhash(ALG_ARGON2ID13, opslimit=2, memlimit=16_000_000)
TIME_COST = 2
MEMORY_COST = 16_000_000 // 1024  # KiB
PARALLELISM = 1

CONTEXT_ENCRYPTION_KEY = b"trove_ek"
CONTEXT_VAULT_ID = b"trove_id"
SUBKEY_ENCRYPTION = 1
SUBKEY_IDENTITY = 2


@dataclass
class Identity:
    """Everything a seed phrase yields.

    ``encryption_key`` is a bytearray so the session can zero it in place.
    """

    encryption_key: bytearray = field(repr=False)
    vault_id: str

    def wipe(self) -> None:
        wipe(self.encryption_key)


def wipe(buf: bytearray | None) -> None:
    """Overwrite a mutable buffer with zeros (best effort, CPython copies aside)."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


def derive_master_secret(seed_phrase: str | bytes) -> bytearray:
    """Run Argon2id over the seed phrase with the fixed application salt."""
    if isinstance(seed_phrase, str):
        seed_phrase = seed_phrase.encode("utf-8")
    try:
        raw = hash_secret_raw(
            secret=seed_phrase,
            salt=FIXED_SALT,
            time_cost=TIME_COST,
            memory_cost=MEMORY_COST,
            parallelism=PARALLELISM,
            hash_len=KEY_LENGTH,
            type=Type.ID,
            version=ARGON2_VERSION,
        )
    except Argon2Error as e:
        raise KeyDerivationError(f"Argon2id derivation failed: {e}") from e
    return bytearray(raw)


def derive_subkey(master_secret: bytes | bytearray, subkey_id: int, context: bytes) -> bytearray:
    """
    Derive a 32-byte subkey, byte-compatible with ``crypto_kdf_derive_from_key``.

    BLAKE2b keyed with the master secret over an empty message, the subkey id
    as little-endian salt and the 8-byte context as personalization.
    """
    if len(context) != 8:
        raise KeyDerivationError("KDF context must be exactly 8 bytes")
    if subkey_id < 0:
        raise KeyDerivationError("subkey id must be non-negative")
    try:
        out = blake2b(
            b"",
            digest_size=KEY_LENGTH,
            key=bytes(master_secret),
            salt=subkey_id.to_bytes(8, "little"),
            person=context,
            encoder=RawEncoder,
        )
    except (CryptoError, ValueError, TypeError) as e:
        raise KeyDerivationError(f"subkey derivation failed: {e}") from e
    return bytearray(out)


def vault_id_from_subkey(identity_subkey: bytes | bytearray) -> str:
    # Extra hash keeps the public id one step removed from key material.
    return blake2b(bytes(identity_subkey), digest_size=KEY_LENGTH, encoder=RawEncoder).hex()


def derive_identity(seed_phrase: str | bytes) -> Identity:
    """
    Derive the encryption key and vault id from a seed phrase.

    Any input yields an identity; checking that the phrase is a valid mnemonic
    is the caller's job. The master secret and raw identity subkey are zeroed
    before returning.
    """
    master = derive_master_secret(seed_phrase)
    identity_subkey = None
    try:
        encryption_key = derive_subkey(master, SUBKEY_ENCRYPTION, CONTEXT_ENCRYPTION_KEY)
        identity_subkey = derive_subkey(master, SUBKEY_IDENTITY, CONTEXT_VAULT_ID)
        vault_id = vault_id_from_subkey(identity_subkey)
    finally:
        wipe(master)
        wipe(identity_subkey)

    logger.debug("Derived identity for vault %s...", vault_id[:16])
    return Identity(encryption_key=encryption_key, vault_id=vault_id)
