"""Custom exceptions for convosync."""


class ConvoSyncError(Exception):
    """Base exception for all convosync errors."""


class SyncLockUnavailableError(ConvoSyncError):
    """Raised when another sync already holds the sync lock."""

    def __init__(self, lock_path: str | None = None):
        self.lock_path = lock_path
        super().__init__("Another sync is already running. Please wait for it to complete.")


class StorageError(ConvoSyncError):
    """Raised when a storage operation keeps failing after bounded retries."""

    def __init__(self, operation: str, attempts: int, cause: BaseException):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} failed after {attempts} attempts: {cause}")


class CorruptedStorageError(StorageError):
    """Raised when the database stays unreadable after connection resets."""


class UnknownSourceError(ConvoSyncError):
    """Raised when a requested source has no registered adapter."""

    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        super().__init__(f"Unknown source '{name}'. Available sources: {', '.join(available) or 'none'}")
