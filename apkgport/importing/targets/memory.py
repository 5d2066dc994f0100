"""In-memory import target."""

from __future__ import annotations

import logging

from apkgport.importing.models import Card, CardTemplate, TargetDeck
from apkgport.importing.targets import ImportTarget, TargetError, deck_id_for

logger = logging.getLogger("apkgport.imports")


class MemoryTarget(ImportTarget):
    """Keep decks, cards and templates in dictionaries."""

    def __init__(self) -> None:
        self.decks: dict[str, TargetDeck] = {}
        self.cards: dict[str, Card] = {}
        self.templates: dict[str, CardTemplate] = {}

    @property
    def target_type(self) -> str:
        return "memory"

    async def get_deck(self, deck_id: str) -> TargetDeck | None:
        return self.decks.get(deck_id)

    async def get_deck_by_name(self, name: str) -> TargetDeck | None:
        for deck in self.decks.values():
            if deck.name == name:
                return deck
        return None

    async def create_deck(self, name: str, description: str = "") -> TargetDeck:
        name = name.strip()
        if not name:
            raise TargetError("Deck name must not be empty", self.target_type)
        existing = await self.get_deck_by_name(name)
        if existing is not None:
            return existing
        deck = TargetDeck(id=deck_id_for(name), name=name, description=description)
        self.decks[deck.id] = deck
        logger.info("Created deck %s (%s)", deck.name, deck.id)
        return deck

    async def card_exists(self, card_id: str) -> bool:
        return card_id in self.cards

    async def save_card(self, card: Card) -> None:
        if card.deck_id not in self.decks:
            raise TargetError(f"Unknown deck {card.deck_id}", self.target_type)
        self.cards[card.id] = card

    async def find_template(self, model_id: int) -> CardTemplate | None:
        for template in self.templates.values():
            if template.model_id == model_id:
                return template
        return None

    async def save_template(self, template: CardTemplate) -> CardTemplate:
        self.templates[template.id] = template
        return template

    def cards_in_deck(self, deck_id: str) -> list[Card]:
        return [card for card in self.cards.values() if card.deck_id == deck_id]


__all__ = ["MemoryTarget"]
