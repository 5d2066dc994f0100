"""File-write surface used by the media processor.

Paths are always relative, ``/``-separated and rooted at the storage,
so the processor never needs to know where bytes end up.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

import anyio

logger = logging.getLogger("apkgport.media")


class MediaStorageError(Exception):
    """Raised when the storage cannot read or write a path."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


def _relative(path: str) -> PurePosixPath:
    relative = PurePosixPath(path)
    if relative.is_absolute() or ".." in relative.parts:
        raise MediaStorageError(f"Path escapes the media root: {path}", path)
    return relative


class MediaStorage(ABC):
    """Abstract host file surface."""

    @abstractmethod
    async def write(self, path: str, data: bytes) -> None:
        """Write ``data`` to ``path``, creating parent folders."""
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    async def read(self, path: str) -> bytes | None:
        """Return the bytes at ``path`` or None if nothing is stored there."""
        pass


class LocalMediaStorage(MediaStorage):
    """Store media below a directory on the local file system."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def resolve(self, path: str) -> Path:
        return self.root.joinpath(*_relative(path).parts)

    async def write(self, path: str, data: bytes) -> None:
        target = self.resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await anyio.to_thread.run_sync(_write)
        except OSError as exc:
            raise MediaStorageError(f"Failed to write {path}: {exc}", path) from exc
        logger.debug("Wrote %s bytes to %s", len(data), target)

    async def exists(self, path: str) -> bool:
        target = self.resolve(path)
        return await anyio.to_thread.run_sync(target.exists)

    async def read(self, path: str) -> bytes | None:
        target = self.resolve(path)

        def _read() -> bytes | None:
            if not target.is_file():
                return None
            return target.read_bytes()

        try:
            return await anyio.to_thread.run_sync(_read)
        except OSError as exc:
            raise MediaStorageError(f"Failed to read {path}: {exc}", path) from exc


class MemoryMediaStorage(MediaStorage):
    """In-memory storage, mainly for tests and dry runs."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.writes = 0

    async def write(self, path: str, data: bytes) -> None:
        self.files[str(_relative(path))] = bytes(data)
        self.writes += 1

    async def exists(self, path: str) -> bool:
        return str(_relative(path)) in self.files

    async def read(self, path: str) -> bytes | None:
        return self.files.get(str(_relative(path)))


__all__ = [
    "LocalMediaStorage",
    "MediaStorage",
    "MediaStorageError",
    "MemoryMediaStorage",
]
