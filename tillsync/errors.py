# Errors - exception taxonomy for the TillSync reconciliation core


class TillSyncError(Exception):
    """Base class for all TillSync errors"""


class ValidationError(TillSyncError):
    """Malformed transaction (missing items, total or payment). Never retried."""


class DuplicateError(TillSyncError):
    """Transaction was already applied. Treated as a successful no-op."""

    def __init__(self, message: str, transaction_id: str = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class PersistenceConflict(TillSyncError):
    """Unique constraint hit on insert or update in the document store."""

    def __init__(self, collection: str, key: str):
        super().__init__(f"Unique key {key!r} already exists in {collection}")
        self.collection = collection
        self.key = key


class TransientNetworkError(TillSyncError):
    """Transport failure; the entry stays queued for the next sync pass."""


class NotFoundError(TillSyncError):
    """Requested transaction or till does not exist."""


class TillError(TillSyncError):
    """Till lifecycle violation, e.g. a second OPEN till for a location."""


class CompensationFailure(TillSyncError):
    """A refund side effect (restock, till reversal) failed after the status change."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.message = message
