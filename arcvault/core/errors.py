"""
ArcVault error taxonomy.

- NotFound: referenced store/record does not exist (not retried)
- ValidationError: malformed spec or patch (not retried)
- StorageError: persistence failure (I/O, timeout, transaction conflict)
- MalformedData: an import snapshot failed to parse or violates invariants
"""

from typing import Any, Optional


class ArcVaultError(Exception):
    """Base class for every error raised by the vault core."""

    code = "arcvault_error"


class NotFound(ArcVaultError):
    """A store or record id does not exist."""

    code = "not_found"

    def __init__(self, kind: str, ident: Any, store_id: Optional[Any] = None):
        self.kind = kind
        self.ident = ident
        self.store_id = store_id
        if store_id is not None:
            message = f"{kind} {ident} not found in store {store_id}"
        else:
            message = f"{kind} {ident} not found"
        super().__init__(message)


class ValidationError(ArcVaultError):
    """A store/record spec or patch is malformed."""

    code = "validation_error"


class StorageError(ArcVaultError):
    """The persistence backend failed."""

    code = "storage_error"


class MalformedData(ArcVaultError):
    """An import snapshot could not be parsed or breaks an invariant."""

    code = "malformed_data"
