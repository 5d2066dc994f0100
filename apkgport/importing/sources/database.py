"""Read-only access to the collection database embedded in a package."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from apkgport.importing.sources import UnsupportedFormatError

logger = logging.getLogger("apkgport.imports")

SQLITE_HEADER = b"SQLite format 3\x00"

# Column layouts
LAYOUT_INLINE = "inline"  # models/decks as JSON blobs on the col row
LAYOUT_TABLES = "tables"  # notetypes/fields/templates/decks tables

_INLINE_TABLES = {"col", "notes", "cards"}
_TABLE_LAYOUT_TABLES = _INLINE_TABLES | {"notetypes", "fields", "templates", "decks"}


class CollectionDatabase:
    """A collection database opened from raw bytes.

    The bytes are spilled to a private temporary file because SQLite
    needs a real file for random access. Every driver failure is
    reported as :class:`UnsupportedFormatError`.

    Example:
        with CollectionDatabase.open(data) as db:
            rows = db.query("SELECT id, flds FROM notes")
    """

    def __init__(self, path: Path, *, owns_file: bool = False) -> None:
        self.path = path
        self._owns_file = owns_file
        self._engine: Engine | None = create_engine(
            f"sqlite:///{path}", poolclass=NullPool
        )
        self._tables: set[str] | None = None

    @classmethod
    def open(cls, data: bytes) -> CollectionDatabase:
        """Open a database from its bytes."""
        if not data.startswith(SQLITE_HEADER):
            raise UnsupportedFormatError(
                "Collection database is not a SQLite file",
                detail=f"header={data[:16]!r}",
            )

        fd, name = tempfile.mkstemp(prefix="apkgport-", suffix=".db")
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        logger.debug("Spilled collection database to %s (%s bytes)", name, len(data))

        database = cls(Path(name), owns_file=True)
        try:
            database.tables()
        except UnsupportedFormatError:
            database.close()
            raise
        return database

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise UnsupportedFormatError("Collection database is closed")
        return self._engine

    def tables(self) -> set[str]:
        """Return the table names present in the database."""
        if self._tables is None:
            try:
                self._tables = set(inspect(self._require_engine()).get_table_names())
            except SQLAlchemyError as exc:
                raise UnsupportedFormatError(
                    "Collection database could not be read", detail=str(exc)
                ) from exc
        return self._tables

    def has_table(self, name: str) -> bool:
        return name in self.tables()

    def detect_layout(self) -> str:
        """Identify which known schema this database follows."""
        tables = self.tables()
        if _TABLE_LAYOUT_TABLES <= tables:
            return LAYOUT_TABLES
        if _INLINE_TABLES <= tables:
            columns = {
                column["name"]
                for column in inspect(self._require_engine()).get_columns("col")
            }
            if {"models", "decks"} <= columns:
                return LAYOUT_INLINE
        raise UnsupportedFormatError(
            "Collection schema matches no known layout",
            detail=f"tables={sorted(tables)}",
        )

    def query(
        self, statement: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute a read query and return rows as dictionaries."""
        try:
            with self._require_engine().connect() as connection:
                result = connection.execute(text(statement), params or {})
                return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as exc:
            raise UnsupportedFormatError(
                "Collection query failed", detail=f"{statement}: {exc}"
            ) from exc

    def scalar(self, statement: str, params: dict[str, Any] | None = None) -> Any:
        rows = self.query(statement, params)
        if not rows:
            return None
        return next(iter(rows[0].values()))

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        if self._owns_file:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            self._owns_file = False

    def __enter__(self) -> CollectionDatabase:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()


__all__ = ["LAYOUT_INLINE", "LAYOUT_TABLES", "CollectionDatabase"]
