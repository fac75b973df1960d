"""A file mapped into memory under an exclusive lock, with fsync failure tracking."""

from __future__ import annotations

import errno
import mmap
import os
from typing import BinaryIO

from pagestore.errors import DatabaseAlreadyOpenError, StorageError

_FSYNC_FAILED = "fsync previously failed. Connection closed"


def _lock_exclusive(file: BinaryIO) -> None:
    if os.name == "posix":
        import fcntl

        try:
            fcntl.flock(file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise DatabaseAlreadyOpenError() from exc
    else:
        import portalocker

        try:
            portalocker.lock(
                file, portalocker.LockFlags.EXCLUSIVE | portalocker.LockFlags.NON_BLOCKING
            )
        except portalocker.exceptions.AlreadyLocked as exc:
            raise DatabaseAlreadyOpenError() from exc
        except portalocker.exceptions.LockException as exc:
            raise DatabaseAlreadyOpenError() from exc


def _unlock(file: BinaryIO) -> None:
    if os.name == "posix":
        import fcntl

        fcntl.flock(file.fileno(), fcntl.LOCK_UN)
    else:
        import portalocker

        portalocker.unlock(file)


class MemoryMap:
    """Memory map of a whole file that may grow up to ``max_capacity`` bytes.

    The map takes ownership of ``file``, which must be open for reading and
    writing, and holds an exclusive lock on it until :meth:`close`.
    Views handed out by :meth:`get_memory` and :meth:`get_memory_mut` must be
    released before the map is resized or closed.
    """

    def __init__(self, file: BinaryIO, max_capacity: int) -> None:
        length = self.get_valid_length(file, max_capacity)
        _lock_exclusive(file)
        self._file = file
        self._capacity = max_capacity
        self._len = length
        self._fsync_failed = False
        self._closed = False
        self._mmap = self._map(length)
        try:
            self.flush()
        except BaseException:
            self.close()
            raise

    @staticmethod
    def get_valid_length(file: BinaryIO, max_capacity: int) -> int:
        """Length of ``file``; raises OSError(EFBIG) if it exceeds ``max_capacity``."""
        length = os.fstat(file.fileno()).st_size
        if length > max_capacity:
            raise OSError(errno.EFBIG, os.strerror(errno.EFBIG))
        return length

    @property
    def capacity(self) -> int:
        """Largest length the map may be resized to."""
        return self._capacity

    def _map(self, length: int) -> mmap.mmap | None:
        if length == 0:
            return None
        return mmap.mmap(self._file.fileno(), length)

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("memory map is closed")

    def _check_fsync_failure(self) -> None:
        if self._fsync_failed:
            raise StorageError(_FSYNC_FAILED)

    def __len__(self) -> int:
        return self._len

    def resize(self, new_len: int) -> None:
        """Change the file length to ``new_len`` and remap it."""
        self._check_open()
        if not 0 <= new_len <= self._capacity:
            raise ValueError(f"length {new_len} outside 0..{self._capacity}")
        self._check_fsync_failure()
        if self._mmap is not None:
            try:
                self._mmap.close()
            except BufferError as exc:
                raise StorageError("memory views into the map are still in use") from exc
            self._mmap = None
        os.ftruncate(self._file.fileno(), new_len)
        self._mmap = self._map(new_len)
        self._len = new_len

    def flush(self) -> None:
        """Write all changes durably to disk."""
        self._check_open()
        self._check_fsync_failure()
        try:
            if self._mmap is not None:
                self._mmap.flush()
            os.fsync(self._file.fileno())
        except OSError:
            self._fsync_failed = True
            raise

    def eventual_flush(self) -> None:
        """Write changes back to the file without waiting for the device."""
        self._check_open()
        self._check_fsync_failure()
        try:
            if self._mmap is not None:
                self._mmap.flush()
        except OSError:
            self._fsync_failed = True
            raise

    def _view(self, start: int, end: int) -> memoryview:
        self._check_open()
        if not 0 <= start <= end <= self._len:
            raise IndexError(f"range {start}..{end} outside 0..{self._len}")
        self._check_fsync_failure()
        if self._mmap is None:
            return memoryview(bytearray())
        return memoryview(self._mmap)[start:end]

    def get_memory(self, start: int, end: int) -> memoryview:
        """Read-only view of bytes ``start`` to ``end``."""
        return self._view(start, end).toreadonly()

    def get_memory_mut(self, start: int, end: int) -> memoryview:
        """Writable view of bytes ``start`` to ``end``."""
        return self._view(start, end)

    def close(self) -> None:
        """Unmap, unlock and close the file. Calling it again does nothing."""
        if self._closed:
            return
        if self._mmap is not None:
            try:
                self._mmap.close()
            except BufferError as exc:
                raise StorageError("memory views into the map are still in use") from exc
            self._mmap = None
        self._closed = True
        try:
            _unlock(self._file)
        finally:
            self._file.close()

    def __enter__(self) -> MemoryMap:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()