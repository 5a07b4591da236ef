"""Security helpers: seed phrase key derivation and blob encryption for Trove.

This package provides:
- Argon2id master secret derivation from a seed phrase (fixed salt)
- BLAKE2b domain-separated subkeys (encryption key, vault id)
- XChaCha20-Poly1305 blob encryption (nonce || ciphertext || tag)

The session lifecycle lives in :mod:`trove.security.session` and is imported
from there directly.
"""

from .kdf import Identity, derive_identity, derive_master_secret, derive_subkey, wipe
from .aead import encrypt, decrypt, encrypt_string, decrypt_to_string

__all__ = [
    "Identity",
    "derive_identity",
    "derive_master_secret",
    "derive_subkey",
    "wipe",
    "encrypt",
    "decrypt",
    "encrypt_string",
    "decrypt_to_string",
]
