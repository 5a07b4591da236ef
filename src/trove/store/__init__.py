"""Row/blob store backends for Trove.

``base`` defines the contract; ``local`` keeps everything in SQLite and on
disk, ``rest`` talks to the hosted backend over HTTP.
"""

from .base import VaultClient, VaultStore

__all__ = ["VaultClient", "VaultStore"]
