"""Import target base classes.

Targets are the deck/card storage service the importer hands its
results to: they resolve decks, persist cards and keep one template
record per imported note type.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from apkgport.importing.models import Card, CardTemplate, TargetDeck

DECK_NAMESPACE = uuid.UUID("7f1d4c9e-2b8a-4d6e-9a53-0c4e8b1f2a67")


def deck_id_for(name: str) -> str:
    """Stable deck id derived from the deck name."""
    return str(uuid.uuid5(DECK_NAMESPACE, name))


class ImportTarget(ABC):
    """Abstract base class for import targets.

    A target stores decks, cards and templates. Every method is async so
    implementations are free to talk to a database or a remote service.
    """

    @property
    @abstractmethod
    def target_type(self) -> str:
        """Return the kind of store this target writes to (e.g., 'memory')."""
        pass

    @abstractmethod
    async def get_deck(self, deck_id: str) -> TargetDeck | None:
        pass

    @abstractmethod
    async def get_deck_by_name(self, name: str) -> TargetDeck | None:
        pass

    @abstractmethod
    async def create_deck(self, name: str, description: str = "") -> TargetDeck:
        """Create a deck.

        Raises:
            TargetError: If the deck cannot be created
        """
        pass

    @abstractmethod
    async def card_exists(self, card_id: str) -> bool:
        pass

    @abstractmethod
    async def save_card(self, card: Card) -> None:
        """Persist a card, replacing any card with the same id.

        Raises:
            TargetError: If the card cannot be stored
        """
        pass

    @abstractmethod
    async def find_template(self, model_id: int) -> CardTemplate | None:
        pass

    @abstractmethod
    async def save_template(self, template: CardTemplate) -> CardTemplate:
        pass

    async def flush(self) -> None:
        """Commit anything buffered by the target."""
        return None


class TargetError(Exception):
    """Exception raised when a target operation fails."""

    def __init__(self, message: str, target_type: str | None = None) -> None:
        """Initialize the error.

        Args:
            message: Error message
            target_type: Type of target that failed
        """
        super().__init__(message)
        self.target_type = target_type


__all__ = ["DECK_NAMESPACE", "ImportTarget", "TargetError", "deck_id_for"]
