"""Exceptions raised by the page store."""


class StorageError(Exception):
    """Base class for all page store errors."""


class OutOfSpaceError(StorageError):
    """No free id or page is left to satisfy an allocation."""

    def __init__(self, message: str = "out of space") -> None:
        super().__init__(message)


class DatabaseAlreadyOpenError(StorageError):
    """The database file is already locked by another open handle."""

    def __init__(self, message: str = "database already open") -> None:
        super().__init__(message)