"""
XChaCha20-Poly1305 blob encryption.

Blob layout: ``nonce (24 bytes) || ciphertext || tag (16 bytes)``. The nonce
is random per call; the 192-bit nonce space makes random generation safe
without counter bookkeeping. The manifest and every chunk use this format.
"""

from __future__ import annotations

from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_ABYTES,
    crypto_aead_xchacha20poly1305_ietf_KEYBYTES,
    crypto_aead_xchacha20poly1305_ietf_NPUBBYTES,
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError
from nacl.utils import random as random_bytes

from ..core.exceptions import AuthenticationError

NONCE_SIZE = crypto_aead_xchacha20poly1305_ietf_NPUBBYTES  # 24
TAG_SIZE = crypto_aead_xchacha20poly1305_ietf_ABYTES  # 16
KEY_SIZE = crypto_aead_xchacha20poly1305_ietf_KEYBYTES  # 32
OVERHEAD = NONCE_SIZE + TAG_SIZE


def _check_key(key) -> bytes:
    if key is None or len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes")
    return bytes(key)


def encrypt(plaintext: bytes, key: bytes | bytearray) -> bytes:
    """Encrypt ``plaintext`` and return ``nonce || ciphertext || tag``."""
    k = _check_key(key)
    nonce = random_bytes(NONCE_SIZE)
    ct = crypto_aead_xchacha20poly1305_ietf_encrypt(bytes(plaintext), None, nonce, k)
    return nonce + ct


def decrypt(blob: bytes, key: bytes | bytearray) -> bytes:
    """
    Decrypt a blob produced by :func:`encrypt`.

    Wrong key, corruption and tampering all raise the same
    :class:`AuthenticationError`.
    """
    k = _check_key(key)
    if blob is None or len(blob) < OVERHEAD:
        raise AuthenticationError("Invalid ciphertext: too short")
    blob = bytes(blob)
    nonce, ct = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return crypto_aead_xchacha20poly1305_ietf_decrypt(ct, None, nonce, k)
    except CryptoError as e:
        raise AuthenticationError("Decryption failed: invalid key or corrupted data") from e


def encrypt_string(plaintext: str, key: bytes | bytearray) -> bytes:
    return encrypt(plaintext.encode("utf-8"), key)


def decrypt_to_string(blob: bytes, key: bytes | bytearray) -> str:
    return decrypt(blob, key).decode("utf-8")
