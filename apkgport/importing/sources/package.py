"""Package import source.

Reads a flashcard package (a zip container holding a collection database,
a media index and numerically named media blobs) and normalizes every
known format variant into one :class:`PackageData` shape.
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
import zlib
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import unquote

import zstandard

from apkgport.importing.models import (
    Deck,
    FieldDefinition,
    FormatVariant,
    MediaEncoding,
    Model,
    Note,
    PackageData,
    PackageMetadata,
    Template,
)
from apkgport.importing.sources import (
    CorruptArchiveError,
    ImportSource,
    MissingDatabaseError,
    UnsupportedFormatError,
)
from apkgport.importing.sources.database import LAYOUT_TABLES, CollectionDatabase
from apkgport.importing.sources.protobuf import (
    ProtobufDecodeError,
    decode_message,
    get_int,
    get_message,
    get_string,
)

logger = logging.getLogger("apkgport.imports")

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
MEDIA_INDEX_NAME = "media"
DECK_NAME_SEPARATOR = "\x1f"

# Lookup order matters: newer variants ship a legacy stub next to the real db.
DATABASE_CANDIDATES: tuple[tuple[str, FormatVariant], ...] = (
    ("collection.anki21b", FormatVariant.ANKI21B),
    ("collection.anki21", FormatVariant.ANKI21),
    ("collection.anki2", FormatVariant.ANKI2),
)


def decompress_zstd(data: bytes) -> bytes:
    """Decompress a zstd frame whose content size may be missing."""
    decompressor = zstandard.ZstdDecompressor()
    with decompressor.stream_reader(io.BytesIO(data)) as reader:
        return reader.read()


class MediaBundle:
    """Lazy access to the media blobs of a package.

    Maps original file names to archive members; bytes are only read
    (and decompressed) when a name is requested.
    """

    def __init__(
        self,
        archive: zipfile.ZipFile | None,
        index: Mapping[str, str],
        *,
        compressed: bool = False,
        blobs: Mapping[str, bytes] | None = None,
    ) -> None:
        self._archive = archive
        self._index = dict(index)
        self._compressed = compressed
        self._blobs = dict(blobs or {})

    @classmethod
    def from_mapping(cls, blobs: Mapping[str, bytes]) -> MediaBundle:
        """Build a bundle over in-memory blobs keyed by original name."""
        return cls(None, {name: name for name in blobs}, blobs=blobs)

    def names(self) -> list[str]:
        return list(self._index)

    def _member_for(self, name: str) -> str | None:
        if name in self._index:
            return self._index[name]
        decoded = unquote(name)
        return self._index.get(decoded)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._member_for(name) is not None

    def __len__(self) -> int:
        return len(self._index)

    def read(self, name: str) -> bytes | None:
        """Return the blob for ``name`` or None if the package lacks it."""
        member = self._member_for(name)
        if member is None:
            return None
        if self._archive is None:
            return self._blobs.get(member)
        try:
            data = self._archive.read(member)
        except KeyError:
            return None
        if self._compressed and data.startswith(ZSTD_MAGIC):
            data = decompress_zstd(data)
        return data

    def close(self) -> None:
        if self._archive is not None:
            self._archive.close()
            self._archive = None


class PackageSource(ImportSource):
    """Import source that reads a package file or its bytes.

    Detects the format variant by probing the known database names,
    decodes the media index without extracting blobs, and reads models,
    decks and notes through :class:`CollectionDatabase`.
    """

    def __init__(
        self,
        file: Path | str | bytes,
        *,
        source_id: str | None = None,
    ) -> None:
        """Initialize the package source.

        Args:
            file: Path to the package or its raw bytes
            source_id: Optional identifier for this source
        """
        if isinstance(file, bytes):
            super().__init__(source_id=source_id or "<bytes>")
            self.file_path: Path | None = None
            self._data: bytes | None = file
        else:
            super().__init__(source_id=source_id or str(file))
            self.file_path = Path(file)
            self._data = None

    def can_fetch(self) -> bool:
        if self._data is not None:
            return True
        return self.file_path is not None and self.file_path.is_file()

    def fetch(self) -> PackageData:
        """Parse the package.

        Raises:
            CorruptArchiveError: The container cannot be read
            MissingDatabaseError: No known database file is present
            UnsupportedFormatError: The database matches no known layout
        """
        archive = self._open_archive()
        try:
            metadata = self.detect_format(archive)
            logger.info("Detected package format: %s", metadata.description)

            db_bytes = self._read_member(archive, metadata.db_filename)
            if metadata.compression == "zstd":
                try:
                    db_bytes = decompress_zstd(db_bytes)
                except zstandard.ZstdError as exc:
                    raise CorruptArchiveError(
                        f"Compressed database {metadata.db_filename} is corrupt",
                        detail=str(exc),
                    ) from exc

            with CollectionDatabase.open(db_bytes) as db:
                data = self._read_collection(db, metadata)

            index = self._read_media_index(archive, metadata)
            data.media = MediaBundle(
                archive,
                index,
                compressed=metadata.compression == "zstd",
            )
        except BaseException:
            archive.close()
            raise

        logger.info(
            "Parsed package: %s models, %s decks, %s notes, %s cards, %s media files",
            len(data.models),
            len(data.decks),
            len(data.notes),
            data.metadata.total_cards,
            len(data.media),
        )
        return data

    def _open_archive(self) -> zipfile.ZipFile:
        try:
            if self._data is not None:
                return zipfile.ZipFile(io.BytesIO(self._data))
            if self.file_path is None or not self.file_path.is_file():
                raise CorruptArchiveError(f"Package file not found: {self.file_path}")
            return zipfile.ZipFile(self.file_path)
        except (zipfile.BadZipFile, OSError) as exc:
            raise CorruptArchiveError(
                f"Package is not a readable archive: {self.source_id}",
                detail=str(exc),
            ) from exc

    @staticmethod
    def detect_format(archive: zipfile.ZipFile) -> PackageMetadata:
        """Search the archive for a known database file."""
        names = set(archive.namelist())
        for db_filename, variant in DATABASE_CANDIDATES:
            if db_filename not in names:
                continue
            if variant == FormatVariant.ANKI21B:
                return PackageMetadata(
                    variant=variant,
                    db_filename=db_filename,
                    supported=True,
                    media_encoding=MediaEncoding.PROTOBUF,
                    compression="zstd",
                )
            return PackageMetadata(
                variant=variant,
                db_filename=db_filename,
                supported=True,
                media_encoding=MediaEncoding.JSON,
            )
        raise MissingDatabaseError(
            "Package contains no collection database",
            detail=f"members={sorted(names)[:20]}",
        )

    @staticmethod
    def _read_member(archive: zipfile.ZipFile, name: str) -> bytes:
        try:
            return archive.read(name)
        except KeyError as exc:
            raise MissingDatabaseError(f"Archive member missing: {name}") from exc
        except (zipfile.BadZipFile, zlib.error, OSError) as exc:
            raise CorruptArchiveError(
                f"Archive member {name} is corrupt", detail=str(exc)
            ) from exc

    # -- collection -------------------------------------------------------

    def _read_collection(
        self, db: CollectionDatabase, metadata: PackageMetadata
    ) -> PackageData:
        layout = db.detect_layout()
        if layout == LAYOUT_TABLES:
            models = self._read_models_from_tables(db)
            decks = self._read_decks_from_tables(db)
        else:
            models = self._read_models_from_json(db)
            decks = self._read_decks_from_json(db)

        notes = self._read_notes(db)
        card_decks, total_cards = self._read_card_decks(db)
        for note in notes:
            note.deck_id = card_decks.get(note.id)

        col_rows = db.query("SELECT crt, mod, ver FROM col LIMIT 1")
        if col_rows:
            row = col_rows[0]
            metadata.created = int(row.get("crt") or 0)
            metadata.modified = int(row.get("mod") or 0)
            ver = row.get("ver")
            metadata.schema_version = int(ver) if ver is not None else None
        metadata.total_notes = len(notes)
        metadata.total_cards = total_cards

        return PackageData(metadata=metadata, models=models, decks=decks, notes=notes)

    @staticmethod
    def _load_json_column(db: CollectionDatabase, column: str) -> dict[str, Any]:
        raw = db.scalar(f"SELECT {column} FROM col LIMIT 1")
        if raw is None:
            raise UnsupportedFormatError(f"Collection row has no {column} data")
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            value = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise UnsupportedFormatError(
                f"Collection {column} blob is not valid JSON", detail=str(exc)
            ) from exc
        if not isinstance(value, dict):
            raise UnsupportedFormatError(f"Collection {column} blob is not an object")
        return value

    def _read_models_from_json(self, db: CollectionDatabase) -> dict[int, Model]:
        models: dict[int, Model] = {}
        for key, raw in self._load_json_column(db, "models").items():
            model_id = int(raw.get("id", key))
            fields = [
                FieldDefinition(
                    name=str(fld.get("name", "")),
                    ordinal=int(fld.get("ord", position)),
                    sticky=bool(fld.get("sticky", False)),
                    rtl=bool(fld.get("rtl", False)),
                    font=str(fld.get("font", "Arial")),
                    size=int(fld.get("size", 20)),
                    description=str(fld.get("description", "")),
                )
                for position, fld in enumerate(raw.get("flds") or [])
            ]
            templates = [
                Template(
                    name=str(tmpl.get("name", "")),
                    ordinal=int(tmpl.get("ord", position)),
                    front=str(tmpl.get("qfmt", "")),
                    back=str(tmpl.get("afmt", "")),
                )
                for position, tmpl in enumerate(raw.get("tmpls") or [])
            ]
            models[model_id] = Model(
                id=model_id,
                name=str(raw.get("name", "")),
                type=int(raw.get("type", 0) or 0),
                fields=sorted(fields, key=lambda fld: fld.ordinal),
                templates=sorted(templates, key=lambda tmpl: tmpl.ordinal),
                css=str(raw.get("css", "")),
                sort_field=int(raw.get("sortf", 0) or 0),
            )
        logger.debug("Read %s models from inline JSON", len(models))
        return models

    def _read_decks_from_json(self, db: CollectionDatabase) -> dict[int, Deck]:
        decks: dict[int, Deck] = {}
        for key, raw in self._load_json_column(db, "decks").items():
            deck_id = int(raw.get("id", key))
            decks[deck_id] = Deck(
                id=deck_id,
                name=str(raw.get("name", "")),
                description=str(raw.get("desc", "")),
                dynamic=bool(raw.get("dyn", 0)),
            )
        logger.debug("Read %s decks from inline JSON", len(decks))
        return decks

    def _read_models_from_tables(self, db: CollectionDatabase) -> dict[int, Model]:
        models: dict[int, Model] = {}
        try:
            for row in db.query("SELECT id, name, config FROM notetypes ORDER BY id"):
                config = decode_message(row.get("config"))
                model_id = int(row["id"])
                models[model_id] = Model(
                    id=model_id,
                    name=str(row["name"]),
                    type=get_int(config, 1),
                    css=get_string(config, 3),
                    sort_field=get_int(config, 2),
                )

            for row in db.query(
                "SELECT ntid, ord, name, config FROM fields ORDER BY ntid, ord"
            ):
                model = models.get(int(row["ntid"]))
                if model is None:
                    continue
                config = decode_message(row.get("config"))
                model.fields.append(
                    FieldDefinition(
                        name=str(row["name"]),
                        ordinal=int(row["ord"]),
                        sticky=bool(get_int(config, 1)),
                        rtl=bool(get_int(config, 2)),
                        font=get_string(config, 3) or "Arial",
                        size=get_int(config, 4, 20),
                        description=get_string(config, 5),
                    )
                )

            for row in db.query(
                "SELECT ntid, ord, name, config FROM templates ORDER BY ntid, ord"
            ):
                model = models.get(int(row["ntid"]))
                if model is None:
                    continue
                config = decode_message(row.get("config"))
                model.templates.append(
                    Template(
                        name=str(row["name"]),
                        ordinal=int(row["ord"]),
                        front=get_string(config, 1),
                        back=get_string(config, 2),
                    )
                )
        except ProtobufDecodeError as exc:
            raise UnsupportedFormatError(
                "Note type configuration could not be decoded", detail=str(exc)
            ) from exc

        logger.debug("Read %s models from notetype tables", len(models))
        return models

    def _read_decks_from_tables(self, db: CollectionDatabase) -> dict[int, Deck]:
        decks: dict[int, Deck] = {}
        for row in db.query("SELECT id, name, kind FROM decks ORDER BY id"):
            try:
                kind = decode_message(row.get("kind"))
            except ProtobufDecodeError:
                logger.warning("Undecodable deck kind for deck %s", row["id"])
                kind = {}
            normal = get_message(kind, 1)
            deck_id = int(row["id"])
            decks[deck_id] = Deck(
                id=deck_id,
                name=str(row["name"]).replace(DECK_NAME_SEPARATOR, "::"),
                description=get_string(normal, 4),
                dynamic=2 in kind,
            )
        logger.debug("Read %s decks from deck table", len(decks))
        return decks

    @staticmethod
    def _read_notes(db: CollectionDatabase) -> list[Note]:
        rows = db.query(
            "SELECT id, guid, mid, mod, tags, flds, sfld FROM notes ORDER BY id"
        )
        notes = [
            Note(
                id=int(row["id"]),
                model_id=int(row["mid"]),
                fields=str(row.get("flds") or ""),
                tags=str(row.get("tags") or "").strip(),
                modified=int(row.get("mod") or 0),
                guid=str(row.get("guid") or ""),
                sort_field=str(row.get("sfld") or ""),
            )
            for row in rows
        ]
        if not notes:
            logger.warning("Package contains no notes")
        return notes

    @staticmethod
    def _read_card_decks(db: CollectionDatabase) -> tuple[dict[int, int], int]:
        """Map each note to the deck of its lowest-ordinal card."""
        note_decks: dict[int, int] = {}
        total = 0
        for row in db.query("SELECT nid, did, ord FROM cards ORDER BY nid, ord"):
            total += 1
            note_decks.setdefault(int(row["nid"]), int(row["did"]))
        return note_decks, total

    # -- media ------------------------------------------------------------

    def _read_media_index(
        self, archive: zipfile.ZipFile, metadata: PackageMetadata
    ) -> dict[str, str]:
        """Decode the media index into ``original name -> archive member``."""
        if MEDIA_INDEX_NAME not in archive.namelist():
            logger.warning("Package has no media index")
            return {}

        raw = self._read_member(archive, MEDIA_INDEX_NAME)
        if raw.startswith(ZSTD_MAGIC):
            try:
                raw = decompress_zstd(raw)
            except zstandard.ZstdError as exc:
                raise CorruptArchiveError(
                    "Compressed media index is corrupt", detail=str(exc)
                ) from exc
            metadata.media_encoding = MediaEncoding.PROTOBUF
            return self._decode_indexed_media(raw)

        if not raw.strip():
            return {}
        try:
            mapping = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            # Uncompressed protobuf index
            metadata.media_encoding = MediaEncoding.PROTOBUF
            return self._decode_indexed_media(raw)

        if not isinstance(mapping, dict):
            raise CorruptArchiveError("Media index is not a mapping")
        index: dict[str, str] = {}
        for member, filename in mapping.items():
            index.setdefault(str(filename), str(member))
        return index

    @staticmethod
    def _decode_indexed_media(raw: bytes) -> dict[str, str]:
        index: dict[str, str] = {}
        try:
            entries = decode_message(raw).get(1, [])
            for position, entry_bytes in enumerate(entries):
                if not isinstance(entry_bytes, bytes):
                    continue
                entry = decode_message(entry_bytes)
                name = get_string(entry, 1)
                if not name:
                    continue
                member = get_int(entry, 255, position)
                index.setdefault(name, str(member))
        except ProtobufDecodeError as exc:
            raise CorruptArchiveError(
                "Media index could not be decoded", detail=str(exc)
            ) from exc
        return index


__all__ = ["DATABASE_CANDIDATES", "MediaBundle", "PackageSource", "decompress_zstd"]
