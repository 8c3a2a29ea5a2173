class StorageError(RuntimeError):
    """Raised when a write or read against the sync tables cannot be completed."""
