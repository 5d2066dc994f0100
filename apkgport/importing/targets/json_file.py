"""JSON file import target."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Any

import anyio

from apkgport.importing.models import Card, CardTemplate, TargetDeck
from apkgport.importing.targets import TargetError
from apkgport.importing.targets.memory import MemoryTarget

logger = logging.getLogger("apkgport.imports")

STORE_VERSION = 1


class JsonFileTarget(MemoryTarget):
    """Persist decks, cards and templates to a single JSON document.

    The document is loaded lazily on first use and rewritten on
    :meth:`flush`.
    """

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self.path = Path(path)
        self._loaded = False

    @property
    def target_type(self) -> str:
        return "json"

    async def load(self) -> None:
        if self._loaded:
            return
        raw = await anyio.to_thread.run_sync(self._read_text)
        if raw is None:
            self._loaded = True
            return
        try:
            data = json.loads(raw)
            decks = {
                item["id"]: TargetDeck(**item) for item in data.get("decks", [])
            }
            cards = {item["id"]: Card(**item) for item in data.get("cards", [])}
            templates = {
                item["id"]: CardTemplate(**item) for item in data.get("templates", [])
            }
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError) as exc:
            raise TargetError(
                f"Store {self.path} is not a valid card store: {exc}", self.target_type
            ) from exc
        self.decks, self.cards, self.templates = decks, cards, templates
        self._loaded = True
        logger.debug(
            "Loaded store %s: %s decks, %s cards",
            self.path,
            len(self.decks),
            len(self.cards),
        )

    def _read_text(self) -> str | None:
        if not self.path.is_file():
            return None
        return self.path.read_text(encoding="utf-8")

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STORE_VERSION,
            "decks": [asdict(deck) for deck in self.decks.values()],
            "cards": [card.to_dict() for card in self.cards.values()],
            "templates": [asdict(template) for template in self.templates.values()],
        }

    async def get_deck(self, deck_id: str) -> TargetDeck | None:
        await self.load()
        return await super().get_deck(deck_id)

    async def get_deck_by_name(self, name: str) -> TargetDeck | None:
        await self.load()
        return await super().get_deck_by_name(name)

    async def create_deck(self, name: str, description: str = "") -> TargetDeck:
        await self.load()
        return await super().create_deck(name, description)

    async def card_exists(self, card_id: str) -> bool:
        await self.load()
        return await super().card_exists(card_id)

    async def save_card(self, card: Card) -> None:
        await self.load()
        await super().save_card(card)

    async def find_template(self, model_id: int) -> CardTemplate | None:
        await self.load()
        return await super().find_template(model_id)

    async def save_template(self, template: CardTemplate) -> CardTemplate:
        await self.load()
        return await super().save_template(template)

    async def flush(self) -> None:
        await self.load()
        payload = json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

        def _write() -> None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self.path)

        try:
            await anyio.to_thread.run_sync(_write)
        except OSError as exc:
            raise TargetError(
                f"Failed to write store {self.path}: {exc}", self.target_type
            ) from exc
        logger.info("Saved %s cards to %s", len(self.cards), self.path)


__all__ = ["JsonFileTarget"]
