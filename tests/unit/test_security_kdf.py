"""Unit tests for seed phrase key derivation."""

import hashlib
from unittest.mock import patch

import pytest
from argon2.exceptions import HashingError

from trove.core.exceptions import KeyDerivationError
from trove.core.manifest import Manifest
from trove.security import aead
from trove.security.kdf import (
    CONTEXT_ENCRYPTION_KEY,
    CONTEXT_VAULT_ID,
    FIXED_SALT,
    SUBKEY_ENCRYPTION,
    SUBKEY_IDENTITY,
    derive_identity,
    derive_master_secret,
    derive_subkey,
    vault_id_from_subkey,
    wipe,
)
from trove.security.session import Session

SEED = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
OTHER_SEED = "zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo wrong"


# ==============================================================================
# Master secret & subkeys
# ==============================================================================

def test_fixed_salt_is_16_bytes():
    assert FIXED_SALT == b"trove-v1-salt-20"


def test_master_secret_is_32_bytes_and_stable():
    first = derive_master_secret(SEED)
    second = derive_master_secret(SEED.encode("utf-8"))
    assert isinstance(first, bytearray)
    assert len(first) == 32
    assert first == second


def test_master_secret_argon2_failure_raises_key_derivation_error():
    with patch("trove.security.kdf.hash_secret_raw", side_effect=HashingError("boom")):
        with pytest.raises(KeyDerivationError):
            derive_master_secret(SEED)


def test_subkey_matches_blake2b_kdf_layout():
    """Subkeys follow crypto_kdf: keyed BLAKE2b, id as salt, context as person."""
    master = bytes(range(32))
    expected = hashlib.blake2b(
        b"",
        digest_size=32,
        key=master,
        salt=SUBKEY_ENCRYPTION.to_bytes(8, "little"),
        person=CONTEXT_ENCRYPTION_KEY,
    ).digest()
    assert bytes(derive_subkey(master, SUBKEY_ENCRYPTION, CONTEXT_ENCRYPTION_KEY)) == expected


def test_subkeys_are_domain_separated():
    master = bytes(range(32))
    ek = derive_subkey(master, SUBKEY_ENCRYPTION, CONTEXT_ENCRYPTION_KEY)
    ik = derive_subkey(master, SUBKEY_IDENTITY, CONTEXT_VAULT_ID)
    assert ek != ik
    assert derive_subkey(master, SUBKEY_IDENTITY, CONTEXT_ENCRYPTION_KEY) != ek


def test_subkey_rejects_bad_context():
    with pytest.raises(KeyDerivationError):
        derive_subkey(bytes(32), 1, b"short")


def test_vault_id_is_hash_of_identity_subkey():
    subkey = bytes(range(32))
    assert vault_id_from_subkey(subkey) == hashlib.blake2b(subkey, digest_size=32).hexdigest()


def test_wipe_zeroes_buffer():
    buf = bytearray(b"secret")
    wipe(buf)
    assert buf == bytearray(6)
    wipe(None)


# ==============================================================================
# derive_identity
# ==============================================================================

def test_derive_identity_is_deterministic():
    a = derive_identity(SEED)
    b = derive_identity(SEED)
    assert a.vault_id == b.vault_id
    assert a.encryption_key == b.encryption_key
    assert len(a.vault_id) == 64
    int(a.vault_id, 16)


def test_derive_identity_known_answer():
    # pins Argon2 cost, salt and subkey contexts
    identity = derive_identity(SEED)
    assert identity.vault_id == "2255e36643e3680844944ebd67c822d8d4d5192d419d84dce133c73e33c4760a"


def test_derive_identity_differs_for_distinct_seeds():
    a = derive_identity(SEED)
    b = derive_identity(OTHER_SEED)
    assert a.vault_id != b.vault_id
    assert a.encryption_key != b.encryption_key


def test_derive_identity_composes_primitives():
    identity = derive_identity(SEED)
    master = derive_master_secret(SEED)
    assert identity.encryption_key == derive_subkey(master, SUBKEY_ENCRYPTION, CONTEXT_ENCRYPTION_KEY)
    assert identity.vault_id == vault_id_from_subkey(derive_subkey(master, SUBKEY_IDENTITY, CONTEXT_VAULT_ID))


def test_derive_identity_wipes_master_secret():
    master = bytearray(range(32))
    with patch("trove.security.kdf.derive_master_secret", return_value=master):
        identity = derive_identity(SEED)
    assert master == bytearray(32)
    assert identity.encryption_key != bytearray(32)


def test_identity_repr_hides_key():
    identity = derive_identity(SEED)
    assert identity.encryption_key.hex() not in repr(identity)
    identity.wipe()
    assert identity.encryption_key == bytearray(32)


# ==============================================================================
# Create with the real KDF
# ==============================================================================

@pytest.mark.asyncio
async def test_create_vault_from_known_seed(store, config):
    session = Session(store, config)
    await session.create(SEED)

    assert session.vault_id == derive_identity(SEED).vault_id

    record = await store.open(session.vault_id).fetch_vault()
    manifest = Manifest.from_json(aead.decrypt(record.manifest_cipher, derive_identity(SEED).encryption_key))
    assert len(manifest) == 0
    assert record.burn_at is None
    session.logout()
