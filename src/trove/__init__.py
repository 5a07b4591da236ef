"""Trove: a zero-knowledge personal storage vault.

A vault's identity and every key are derived from a mnemonic seed phrase on
the client. The storage operator only ever sees ciphertext and an opaque,
deterministic vault identifier.
"""

__version__ = "0.1.0"
