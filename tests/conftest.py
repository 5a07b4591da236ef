"""Shared fixtures for the Trove test suite."""

import hashlib
from unittest.mock import patch

import pytest

from trove.config import TroveConfig
from trove.security.kdf import Identity
from trove.security.session import Session
from trove.store.local import LocalVaultStore

TEST_SEED = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"


def fake_identity(seed_phrase):
    """Cheap stand-in for Argon2id: same shape, deterministic per seed."""
    if isinstance(seed_phrase, str):
        seed_phrase = seed_phrase.encode("utf-8")
    key = hashlib.sha256(b"key:" + seed_phrase).digest()
    vault_id = hashlib.sha256(b"id:" + seed_phrase).hexdigest()
    return Identity(encryption_key=bytearray(key), vault_id=vault_id)


@pytest.fixture
def fast_kdf():
    """Patch the session's key derivation with a fast deterministic fake."""
    with patch("trove.security.session.derive_identity", side_effect=fake_identity) as mock:
        yield mock


@pytest.fixture(autouse=True)
def reset_active_session():
    yield
    Session._active = None


@pytest.fixture
def config(tmp_path):
    """Small chunks and no backoff so transfers run instantly."""
    return TroveConfig(chunk_size=1000, retry_delay=0, storage_root=tmp_path / "store")


@pytest.fixture
def store(config):
    store = LocalVaultStore(config.storage_root)
    yield store
    store.db.close()


@pytest.fixture
def open_session(store, config, fast_kdf):
    """Factory: create a vault for a seed and return its unlocked session."""

    async def _open(seed=TEST_SEED):
        session = Session(store, config)
        await session.create(seed)
        return session

    return _open
