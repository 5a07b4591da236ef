"""Unit tests for XChaCha20-Poly1305 blob encryption."""

import os

import pytest

from trove.core.exceptions import AuthenticationError
from trove.security.aead import (
    NONCE_SIZE,
    OVERHEAD,
    TAG_SIZE,
    decrypt,
    decrypt_to_string,
    encrypt,
    encrypt_string,
)


@pytest.fixture
def key():
    return os.urandom(32)


def test_constants():
    assert NONCE_SIZE == 24
    assert TAG_SIZE == 16
    assert OVERHEAD == 40


@pytest.mark.parametrize("plaintext", [b"", b"x", b"hello vault", os.urandom(4096)])
def test_round_trip(key, plaintext):
    blob = encrypt(plaintext, key)
    assert len(blob) == len(plaintext) + OVERHEAD
    assert decrypt(blob, key) == plaintext


def test_bytearray_key_accepted(key):
    assert decrypt(encrypt(b"data", bytearray(key)), key) == b"data"


def test_nonce_is_fresh_per_call(key):
    a = encrypt(b"same", key)
    b = encrypt(b"same", key)
    assert a[:NONCE_SIZE] != b[:NONCE_SIZE]
    assert a != b


def test_every_tag_bit_flip_is_detected(key):
    blob = encrypt(b"integrity matters", key)
    for byte in range(len(blob) - TAG_SIZE, len(blob)):
        for bit in range(8):
            tampered = bytearray(blob)
            tampered[byte] ^= 1 << bit
            with pytest.raises(AuthenticationError):
                decrypt(bytes(tampered), key)


def test_nonce_and_body_tampering_detected(key):
    blob = bytearray(encrypt(b"integrity matters", key))
    blob[0] ^= 0x01
    with pytest.raises(AuthenticationError):
        decrypt(bytes(blob), key)
    blob[0] ^= 0x01
    blob[NONCE_SIZE] ^= 0x80
    with pytest.raises(AuthenticationError):
        decrypt(bytes(blob), key)


def test_wrong_key_fails(key):
    blob = encrypt(b"secret", key)
    with pytest.raises(AuthenticationError):
        decrypt(blob, os.urandom(32))


def test_too_short_blob_fails(key):
    with pytest.raises(AuthenticationError, match="too short"):
        decrypt(b"\x00" * (OVERHEAD - 1), key)


def test_bad_key_length_rejected():
    with pytest.raises(ValueError):
        encrypt(b"data", b"short")


def test_string_helpers(key):
    assert decrypt_to_string(encrypt_string("päss wörd", key), key) == "päss wörd"
