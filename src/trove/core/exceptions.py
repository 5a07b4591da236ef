"""
Exceptions for Trove
Every error raised by the package derives from TroveError so callers have one
general catcher.
"""


class TroveError(Exception):
    # general container for errors
    pass


class KeyDerivationError(TroveError):
    # raised when the KDF primitive itself fails (never on a "wrong" seed)
    pass


class AuthenticationError(TroveError):
    # raised when an AEAD blob is too short or fails its tag check
    pass


class VaultInaccessibleError(TroveError):
    # raised for every unlock failure: not found, rejected, undecryptable

    def __init__(self, message="Unable to access vault"):
        super().__init__(message)


class VaultExistsError(TroveError):
    # raised when creating a vault whose id is already taken
    pass


class SessionStateError(TroveError):
    # raised on an illegal session transition or a locked-session operation
    pass


class ManifestError(TroveError):
    # raised on a malformed manifest or an illegal manifest operation
    pass


class ManifestPersistError(TroveError):
    # raised when the store rejects a manifest write
    pass


class TransferError(TroveError):
    """Chunk transfer failure.

    Transient failures are retried in place; terminal ones fail the item.
    """

    def __init__(self, message, transient=False):
        super().__init__(message)
        self.transient = transient

    @property
    def terminal(self):
        return not self.transient


class TransferCancelledError(TroveError):
    # raised inside a transfer once its cancellation flag is observed
    pass


class StoreError(TroveError):
    # raised if the row/blob store fails in some way
    pass


class NotFoundError(StoreError):
    # raised when a row or blob does not exist (or is not visible)
    pass


class AlreadyExistsError(StoreError):
    # raised on insert of an existing row or put of an existing blob
    pass


class StoreAuthorizationError(StoreError):
    # raised when the presented vault credential does not cover the target
    pass
