class StoreError(ValueError):
    """Base class for user-visible store errors."""


class StoreValidationError(StoreError):
    pass


class StoreNotFoundError(StoreError):
    pass


class StoreConflictError(StoreError):
    """A conditional write lost: the stored value no longer matches the caller's view."""


class InvalidTransitionError(StoreError):
    """A lifecycle operation was attempted from a status that does not allow it."""


class StorePermissionError(StoreError):
    pass


class IndexUnavailableError(StoreError):
    """An ordered query needs an index that has not been provisioned.

    Readers recover from this locally; it is never surfaced to a caller.
    """


class TransientStoreError(StoreError):
    """The store could not be reached or was busy. Callers may retry."""
