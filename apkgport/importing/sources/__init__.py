"""Import source base classes.

Sources are responsible for reading a package container and turning it
into the unified :class:`~apkgport.importing.models.PackageData` shape.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from apkgport.importing.models import PackageData


class ImportSource(ABC):
    """Abstract base class for import sources.

    A source is responsible for fetching raw content from some input
    and returning it fully normalized for the rest of the pipeline.
    """

    def __init__(self, source_id: str | None = None) -> None:
        """Initialize the source.

        Args:
            source_id: Optional identifier for this source instance
        """
        self.source_id = source_id

    @abstractmethod
    def fetch(self) -> PackageData:
        """Read and normalize the package.

        Returns:
            PackageData with models, decks, notes and a lazy media bundle

        Raises:
            ImportSourceError: If the package cannot be read
        """
        pass

    @abstractmethod
    def can_fetch(self) -> bool:
        """Check if this source is properly configured and can fetch.

        Returns:
            True if fetch() can be called
        """
        pass


class ImportSourceError(Exception):
    """Exception raised when an import source fails.

    Every subclass is fatal for the import session.
    """

    code = "SOURCE_ERROR"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        """Initialize the error.

        Args:
            message: Error message
            detail: Optional underlying cause, kept for diagnostics
        """
        super().__init__(message)
        self.detail = detail


class PackageError(ImportSourceError):
    """Base class for failures reading a package container."""

    code = "PACKAGE_ERROR"


class CorruptArchiveError(PackageError):
    """The container is not a readable zip archive."""

    code = "CORRUPT_ARCHIVE"


class MissingDatabaseError(PackageError):
    """No known collection database exists in the container."""

    code = "MISSING_DATABASE"


class UnsupportedFormatError(PackageError):
    """The collection database matches no known layout."""

    code = "UNSUPPORTED_FORMAT"


__all__ = [
    "CorruptArchiveError",
    "ImportSource",
    "ImportSourceError",
    "MissingDatabaseError",
    "PackageError",
    "UnsupportedFormatError",
]
