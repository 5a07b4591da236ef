"""Unit tests for runtime configuration."""

from pathlib import Path

import pytest

from trove.config import CHUNK_SIZE, FREE_STORAGE_BYTES, TroveConfig, build_store
from trove.store.local import LocalVaultStore
from trove.store.rest import RestVaultStore


def test_defaults():
    config = TroveConfig()
    assert config.chunk_size == CHUNK_SIZE == 10_000_000
    assert config.max_concurrent_uploads == 3
    assert config.max_concurrent_chunks == 3
    assert config.max_retries == 3
    assert config.retry_delay == 1.0
    assert config.idle_timeout == 900
    assert config.idle_warning == 780
    assert config.free_storage_bytes == FREE_STORAGE_BYTES
    assert not config.is_hosted


def test_from_env_coerces_types(tmp_path):
    env = {
        "TROVE_CHUNK_SIZE": "4096",
        "TROVE_RETRY_DELAY": "0.5",
        "TROVE_STORAGE_ROOT": str(tmp_path),
        "TROVE_LOG_LEVEL": "DEBUG",
        "TROVE_UNRELATED": "ignored",
        "TROVE_MAX_RETRIES": "",
    }
    config = TroveConfig.from_env(env)
    assert config.chunk_size == 4096
    assert config.retry_delay == 0.5
    assert config.storage_root == Path(tmp_path)
    assert config.log_level == "DEBUG"
    assert config.max_retries == 3


def test_from_env_overrides_win():
    config = TroveConfig.from_env({"TROVE_CHUNK_SIZE": "4096"}, chunk_size=10)
    assert config.chunk_size == 10


def test_from_env_invalid_number():
    with pytest.raises(ValueError, match="TROVE_CHUNK_SIZE"):
        TroveConfig.from_env({"TROVE_CHUNK_SIZE": "lots"})


@pytest.mark.parametrize("kwargs", [
    {"chunk_size": 0},
    {"max_concurrent_uploads": 0},
    {"max_retries": 0},
    {"idle_warning": 1000, "idle_timeout": 900},
])
def test_validation(kwargs):
    with pytest.raises(ValueError):
        TroveConfig(**kwargs)


def test_build_store_local(tmp_path):
    store = build_store(TroveConfig(storage_root=tmp_path))
    assert isinstance(store, LocalVaultStore)
    assert (tmp_path / "trove.db").exists()
    store.db.close()


def test_build_store_hosted():
    config = TroveConfig(supabase_url="https://example.supabase.co/", supabase_anon_key="anon")
    assert config.is_hosted
    store = build_store(config)
    assert isinstance(store, RestVaultStore)
    assert store.base_url == "https://example.supabase.co"
