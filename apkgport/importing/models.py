"""Core data models and types for the import pipeline.

These models represent the data structures that flow through the import pipeline
from package source → side resolution → conversion → media → card target.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

FIELD_SEPARATOR = "\x1f"


class FormatVariant(Enum):
    """Known package database layouts."""

    ANKI2 = "anki2"
    ANKI21 = "anki21"
    ANKI21B = "anki21b"


class MediaEncoding(Enum):
    """How the package's media index is stored."""

    JSON = "json"
    PROTOBUF = "protobuf"


class MediaType(Enum):
    """Types of media a field can reference."""

    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"


class FieldSide(Enum):
    """Card face a field's content belongs to."""

    FRONT = "front"
    BACK = "back"
    BOTH = "both"


class Confidence(Enum):
    """How certain a field side resolution is."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MediaFormat(Enum):
    """How resolved media references are written into converted content."""

    WIKILINK = "wikilink"
    MARKDOWN = "markdown"


class ClozeFormat(Enum):
    """Output marker for cloze deletions."""

    HIGHLIGHT = "highlight"
    ANKI = "anki"


class ImportStage(Enum):
    """Stages of an import session, in execution order."""

    PARSING = "parsing"
    ANALYZING = "analyzing"
    CONVERTING = "converting"
    MEDIA = "media"
    BUILDING = "building"
    SAVING = "saving"


@dataclass
class PackageMetadata:
    """Format information and totals for a parsed package."""

    variant: FormatVariant
    db_filename: str
    supported: bool
    media_encoding: MediaEncoding
    compression: str = "none"
    created: int = 0
    modified: int = 0
    schema_version: int | None = None
    total_notes: int = 0
    total_cards: int = 0

    @property
    def description(self) -> str:
        return f"{self.variant.value} ({self.db_filename}, {self.compression})"


@dataclass
class FieldDefinition:
    """A field of a note type.

    ``side`` and ``confidence`` are filled in by the side resolver.
    """

    name: str
    ordinal: int
    sticky: bool = False
    rtl: bool = False
    font: str = "Arial"
    size: int = 20
    description: str = ""
    side: FieldSide | None = None
    confidence: Confidence | None = None


@dataclass
class Template:
    """A card template with front (question) and back (answer) markup."""

    name: str
    ordinal: int
    front: str = ""
    back: str = ""


@dataclass
class Model:
    """A note type: field schema plus card templates."""

    id: int
    name: str
    type: int = 0
    fields: list[FieldDefinition] = field(default_factory=list)
    templates: list[Template] = field(default_factory=list)
    css: str = ""
    sort_field: int = 0

    @property
    def is_cloze(self) -> bool:
        return self.type == 1


@dataclass
class Deck:
    """A deck as stored in the package."""

    id: int
    name: str
    description: str = ""
    dynamic: bool = False


@dataclass
class Note:
    """A note row with its raw, separator-joined field values."""

    id: int
    model_id: int
    fields: str
    tags: str = ""
    modified: int = 0
    guid: str = ""
    sort_field: str = ""
    deck_id: int | None = None

    @property
    def values(self) -> list[str]:
        return self.fields.split(FIELD_SEPARATOR)

    @property
    def tag_list(self) -> list[str]:
        return [tag for tag in self.tags.split() if tag]


@dataclass
class PackageData:
    """Unified in-memory representation of a parsed package.

    Built once per import session. ``media`` reads blobs lazily so that
    only referenced files are ever decompressed.
    """

    metadata: PackageMetadata
    models: dict[int, Model] = field(default_factory=dict)
    decks: dict[int, Deck] = field(default_factory=dict)
    notes: list[Note] = field(default_factory=list)
    media: Any = None

    @property
    def primary_deck(self) -> Deck | None:
        """Return the deck most notes belong to, ignoring the default deck."""
        counts: dict[int, int] = {}
        for note in self.notes:
            if note.deck_id is not None and note.deck_id in self.decks:
                counts[note.deck_id] = counts.get(note.deck_id, 0) + 1
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        for deck_id, _count in ranked:
            if deck_id != 1:
                return self.decks[deck_id]
        named = [deck for deck in self.decks.values() if deck.id != 1]
        if named:
            return sorted(named, key=lambda deck: deck.id)[0]
        return self.decks.get(1)

    def deck_for(self, note: Note) -> Deck | None:
        if note.deck_id is None:
            return None
        return self.decks.get(note.deck_id)


@dataclass
class FieldResolution:
    """Side resolution for one field of one model."""

    field_name: str
    side: FieldSide
    confidence: Confidence
    appears_in_front: bool = False
    appears_in_back: bool = False


@dataclass
class FieldSideMap:
    """Resolved sides for every field of a model."""

    model_id: int
    fields: dict[str, FieldResolution] = field(default_factory=dict)

    def side_of(self, field_name: str) -> FieldSide:
        resolution = self.fields.get(field_name)
        return resolution.side if resolution else FieldSide.BACK

    @property
    def low_confidence(self) -> list[str]:
        return [
            name
            for name, resolution in self.fields.items()
            if resolution.confidence == Confidence.LOW
        ]

    def as_dict(self) -> dict[str, dict[str, str]]:
        return {
            name: {
                "side": resolution.side.value,
                "confidence": resolution.confidence.value,
            }
            for name, resolution in self.fields.items()
        }


@dataclass(frozen=True)
class TableThresholds:
    """Limits under which a table counts as simple."""

    max_columns: int = 3
    max_rows: int = 5
    allow_merged_cells: bool = False


@dataclass(frozen=True)
class ConversionConfig:
    """Fidelity policy for HTML to Markdown conversion."""

    preserve_complex_tables: bool = True
    convert_simple_tables: bool = True
    media_format: MediaFormat = MediaFormat.WIKILINK
    cloze_format: ClozeFormat = ClozeFormat.HIGHLIGHT
    preserve_styles: bool = False
    table_thresholds: TableThresholds = field(default_factory=TableThresholds)


@dataclass
class MediaReference:
    """A media tag found in field content, replaced by a placeholder."""

    id: str
    type: MediaType
    original_src: str
    placeholder: str
    alt_text: str | None = None
    width: str | None = None
    height: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class ConversionStats:
    original_length: int = 0
    markdown_length: int = 0
    converted_tags: int = 0
    preserved_tags: int = 0
    media_count: int = 0


@dataclass
class ConversionResult:
    """Output of converting one field value."""

    markdown: str
    media_refs: list[MediaReference] = field(default_factory=list)
    preserved_html: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stats: ConversionStats = field(default_factory=ConversionStats)


@dataclass
class MediaFileEntry:
    """A deduplicated media file recorded in a deck manifest."""

    id: str
    original_name: str
    saved_path: str
    type: MediaType
    size: int
    hash: str
    used_by_cards: list[str] = field(default_factory=list)
    created: str = ""
    width: int | None = None
    height: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_name": self.original_name,
            "saved_path": self.saved_path,
            "type": self.type.value,
            "size": self.size,
            "hash": self.hash,
            "used_by_cards": list(self.used_by_cards),
            "created": self.created,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MediaFileEntry:
        return cls(
            id=str(data["id"]),
            original_name=str(data["original_name"]),
            saved_path=str(data["saved_path"]),
            type=MediaType(data.get("type", MediaType.IMAGE.value)),
            size=int(data.get("size", 0)),
            hash=str(data["hash"]),
            used_by_cards=[str(card) for card in data.get("used_by_cards", [])],
            created=str(data.get("created", "")),
            width=data.get("width"),
            height=data.get("height"),
        )


@dataclass
class MediaError:
    """A non-fatal, per-file media failure."""

    file: str
    error: str
    severity: str = "warning"
    code: str | None = None


@dataclass
class MediaProcessingStats:
    total_files: int = 0
    saved_files: int = 0
    reused_files: int = 0
    failed_files: int = 0
    total_size: int = 0


@dataclass
class CardTemplate:
    """Target-side template record created from a model."""

    id: str
    name: str
    model_id: int
    kind: str
    fields: list[dict[str, str]] = field(default_factory=list)
    front_templates: list[str] = field(default_factory=list)
    back_templates: list[str] = field(default_factory=list)
    css: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TargetDeck:
    """A deck (grouping) in the target store."""

    id: str
    name: str
    description: str = ""


@dataclass
class Card:
    """A card record produced from one note."""

    id: str
    deck_id: str
    note_id: int
    model_id: int
    model_name: str
    card_type: str
    front: str
    back: str
    content: str
    fields: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    template_id: str | None = None
    media: list[str] = field(default_factory=list)
    low_confidence_fields: list[str] = field(default_factory=list)
    source: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deck_id": self.deck_id,
            "note_id": self.note_id,
            "model_id": self.model_id,
            "model_name": self.model_name,
            "card_type": self.card_type,
            "front": self.front,
            "back": self.back,
            "content": self.content,
            "fields": dict(self.fields),
            "tags": list(self.tags),
            "template_id": self.template_id,
            "media": list(self.media),
            "low_confidence_fields": list(self.low_confidence_fields),
            "source": dict(self.source),
        }


@dataclass
class CardBuildResult:
    card: Card | None
    warnings: list[str] = field(default_factory=list)
    success: bool = True


@dataclass
class CardImportError:
    """A per-note (or fatal) failure recorded on the import result."""

    stage: ImportStage
    message: str
    code: str | None = None
    note_id: int | None = None
    card_id: str | None = None
    details: Any = None


@dataclass
class ImportStats:
    total_cards: int = 0
    imported_cards: int = 0
    skipped_cards: int = 0
    failed_cards: int = 0
    media_files: int = 0
    media_total_size: int = 0


@dataclass
class ImportProgress:
    """Progress event emitted to the host after every unit of work."""

    stage: ImportStage
    progress: float
    message: str
    current_item: str | None = None
    total_items: int | None = None
    completed_items: int | None = None


@dataclass
class ImportConfig:
    """Options for one import session."""

    file: Path | str | bytes
    conversion: ConversionConfig = field(default_factory=ConversionConfig)
    skip_existing: bool = False
    create_deck_if_missing: bool = True
    target_deck_name: str | None = None


@dataclass
class ImportResult:
    """Result of an import operation.

    Counts are granular so callers can present partial success.
    """

    success: bool
    deck_id: str | None = None
    deck_name: str | None = None
    stats: ImportStats = field(default_factory=ImportStats)
    errors: list[CardImportError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    media_errors: list[MediaError] = field(default_factory=list)
    duration: float = 0.0
    cancelled: bool = False

    @property
    def has_errors(self) -> bool:
        """Check if import had any errors."""
        return len(self.errors) > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "deck_id": self.deck_id,
            "deck_name": self.deck_name,
            "stats": {
                "total_cards": self.stats.total_cards,
                "imported_cards": self.stats.imported_cards,
                "skipped_cards": self.stats.skipped_cards,
                "failed_cards": self.stats.failed_cards,
                "media_files": self.stats.media_files,
                "media_total_size": self.stats.media_total_size,
            },
            "errors": [
                {
                    "stage": error.stage.value,
                    "message": error.message,
                    "code": error.code,
                    "note_id": error.note_id,
                    "card_id": error.card_id,
                }
                for error in self.errors
            ],
            "warnings": list(self.warnings),
            "media_errors": [
                {
                    "file": error.file,
                    "error": error.error,
                    "severity": error.severity,
                    "code": error.code,
                }
                for error in self.media_errors
            ],
            "duration": round(self.duration, 3),
            "cancelled": self.cancelled,
        }


__all__ = [
    "FIELD_SEPARATOR",
    "Card",
    "CardBuildResult",
    "CardImportError",
    "CardTemplate",
    "ClozeFormat",
    "Confidence",
    "ConversionConfig",
    "ConversionResult",
    "ConversionStats",
    "Deck",
    "FieldDefinition",
    "FieldResolution",
    "FieldSide",
    "FieldSideMap",
    "FormatVariant",
    "ImportConfig",
    "ImportProgress",
    "ImportResult",
    "ImportStage",
    "ImportStats",
    "MediaEncoding",
    "MediaError",
    "MediaFileEntry",
    "MediaFormat",
    "MediaProcessingStats",
    "MediaReference",
    "MediaType",
    "Model",
    "Note",
    "PackageData",
    "PackageMetadata",
    "TableThresholds",
    "TargetDeck",
    "Template",
]
