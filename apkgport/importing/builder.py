"""Card assembly from converted note fields."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping

from apkgport.importing.models import (
    Card,
    CardBuildResult,
    FieldSide,
    FieldSideMap,
    Model,
    Note,
    PackageData,
    TargetDeck,
)
from apkgport.importing.targets import ImportTarget, TargetError

logger = logging.getLogger("apkgport.imports")

CARD_NAMESPACE = uuid.UUID("3c9a8f52-6d41-4b7e-8f0a-5e2d1c7b9a14")
CONTENT_DIVIDER = "---div---"
DEFAULT_DECK_NAME = "Imported Deck"

DECK_NOT_FOUND = "DECK_NOT_FOUND"
MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
TARGET_ERROR = "TARGET_ERROR"


class CardBuildError(Exception):
    """Raised when a single note cannot become a card."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def card_id_for(deck_id: str, note: Note) -> str:
    """Deterministic card id for a note imported into a deck."""
    key = note.guid or str(note.id)
    return str(uuid.uuid5(CARD_NAMESPACE, f"{deck_id}:{key}"))


class CardBuilder:
    """Resolve target decks and assemble card records.

    Deck lookups are cached by name for the lifetime of the builder, so
    one import session talks to the target at most once per deck.
    """

    def __init__(
        self,
        target: ImportTarget,
        *,
        create_deck_if_missing: bool = True,
        deck_override: str | None = None,
        default_deck_name: str = DEFAULT_DECK_NAME,
    ) -> None:
        """Initialize the builder.

        Args:
            target: Store used to look up and create decks
            create_deck_if_missing: Create unknown decks instead of failing
            deck_override: Import every note into this deck
            default_deck_name: Deck used when the package names none
        """
        self.target = target
        self.create_deck_if_missing = create_deck_if_missing
        self.deck_override = (deck_override or "").strip() or None
        self.default_deck_name = default_deck_name
        self._decks: dict[str, TargetDeck | None] = {}

    def deck_name_for(self, note: Note, package: PackageData) -> str:
        if self.deck_override:
            return self.deck_override
        source_deck = package.deck_for(note)
        if source_deck is not None and not source_deck.dynamic and source_deck.name:
            return source_deck.name
        primary = package.primary_deck
        if primary is not None and primary.name:
            return primary.name
        return self.default_deck_name

    async def resolve_deck(self, name: str, description: str = "") -> TargetDeck:
        """Find or create the target deck called ``name``.

        Raises:
            CardBuildError: If the deck is missing and may not be created
        """
        if name not in self._decks:
            try:
                deck = await self.target.get_deck_by_name(name)
            except TargetError as exc:
                raise CardBuildError(
                    f"Failed to look up deck {name}: {exc}", TARGET_ERROR
                ) from exc
            if deck is None and self.create_deck_if_missing:
                try:
                    deck = await self.target.create_deck(name, description)
                except TargetError as exc:
                    raise CardBuildError(
                        f"Failed to create deck {name}: {exc}", TARGET_ERROR
                    ) from exc
            self._decks[name] = deck

        deck = self._decks[name]
        if deck is None:
            raise CardBuildError(f"Deck not found: {name}", DECK_NOT_FOUND)
        return deck

    @property
    def resolved_decks(self) -> list[TargetDeck]:
        return [deck for deck in self._decks.values() if deck is not None]

    @staticmethod
    def reconcile_fields(note: Note, model: Model) -> tuple[list[str], list[str]]:
        """Match a note's values to its model's field count.

        Returns:
            The reconciled values and any warnings produced
        """
        values = note.values
        expected = len(model.fields)
        warnings: list[str] = []
        if len(values) < expected:
            warnings.append(
                f"Note {note.id} has {len(values)} field values but model "
                f"{model.name} defines {expected}; missing values left empty"
            )
            values = values + [""] * (expected - len(values))
        elif len(values) > expected:
            warnings.append(
                f"Note {note.id} has {len(values)} field values but model "
                f"{model.name} defines {expected}; extra values dropped"
            )
            values = values[:expected]
        return values, warnings

    def build(
        self,
        *,
        note: Note,
        model: Model,
        side_map: FieldSideMap,
        deck: TargetDeck,
        fields: Mapping[str, str],
        raw_fields: Mapping[str, str] | None = None,
        template_id: str | None = None,
        source_deck: str | None = None,
        media: list[str] | None = None,
        warnings: list[str] | None = None,
    ) -> CardBuildResult:
        """Assemble the card for one note.

        Args:
            note: Source note
            model: The note's model
            side_map: Resolved field sides for the model
            deck: Target deck
            fields: Converted Markdown per field name, media already resolved
            raw_fields: Original field markup, kept on the card for reference
            template_id: Target template created for the model
            source_deck: Name of the deck the note came from in the package
            media: Saved media paths the card uses
            warnings: Warnings gathered by earlier stages for this note

        Returns:
            CardBuildResult with the card and all warnings for the note
        """
        warnings = list(warnings or [])

        front: list[str] = []
        both: list[str] = []
        back: list[str] = []
        for definition in model.fields:
            value = (fields.get(definition.name) or "").strip()
            if not value:
                continue
            side = side_map.side_of(definition.name)
            if side == FieldSide.FRONT:
                front.append(value)
            elif side == FieldSide.BOTH:
                both.append(value)
            else:
                back.append(value)

        front_parts = front + both
        back_parts = back + (both if not front else [])
        front_text = "\n\n".join(front_parts)
        back_text = "\n\n".join(back_parts)

        if front_text and back_text:
            content = f"{front_text}\n\n{CONTENT_DIVIDER}\n\n{back_text}"
        else:
            content = front_text or back_text

        if not content:
            return CardBuildResult(
                card=None,
                warnings=warnings + [f"Note {note.id} has no content"],
                success=False,
            )

        low_confidence = [
            name for name in side_map.low_confidence if (fields.get(name) or "").strip()
        ]
        if low_confidence:
            warnings.append(
                f"Note {note.id}: fields {', '.join(low_confidence)} are not used by "
                "any template and were placed on the back"
            )

        card = Card(
            id=card_id_for(deck.id, note),
            deck_id=deck.id,
            note_id=note.id,
            model_id=model.id,
            model_name=model.name,
            card_type="cloze" if model.is_cloze else "basic",
            front=front_text,
            back=back_text,
            content=content,
            fields={name: value for name, value in fields.items()},
            tags=note.tag_list,
            template_id=template_id,
            media=list(media or []),
            low_confidence_fields=low_confidence,
            source={
                "note_id": note.id,
                "guid": note.guid,
                "model_id": model.id,
                "model_name": model.name,
                "deck": source_deck,
                "modified": note.modified,
                "fields": dict(raw_fields or {}),
            },
        )
        logger.debug("Built card %s for note %s", card.id, note.id)
        return CardBuildResult(card=card, warnings=warnings, success=True)


__all__ = [
    "CONTENT_DIVIDER",
    "CardBuildError",
    "CardBuilder",
    "DECK_NOT_FOUND",
    "DEFAULT_DECK_NAME",
    "MODEL_NOT_FOUND",
    "TARGET_ERROR",
    "card_id_for",
]
