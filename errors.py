"""Exception types shared across the production log modules."""


class ProductionLogError(Exception):
    """Base class for every error raised by this package."""


class RecordValidationError(ProductionLogError):
    """A stored or imported entry does not match any known record kind."""

    def __init__(self, key, message):
        self.key = key
        super().__init__(f"{key}: {message}")


class SnapshotImportError(ProductionLogError):
    """An import was rejected before anything was written."""


class CacheWriteError(ProductionLogError):
    """The Local Cache refused a write (quota or serialization)."""


class RemoteStoreError(ProductionLogError):
    """A remote document store call failed or the store is not configured."""
