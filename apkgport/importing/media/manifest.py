"""Per-deck media manifest.

The manifest is a content-addressed index: entries are keyed by the
SHA-256 of the blob and are never removed or rewritten, only extended
with new card usages.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from apkgport.importing.media.constants import (
    MEDIA_MANIFEST_FILENAME,
    MEDIA_MANIFEST_VERSION,
)
from apkgport.importing.media.storage import MediaStorage
from apkgport.importing.models import MediaFileEntry

logger = logging.getLogger("apkgport.media")


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class MediaManifest:
    """Hash-keyed record of every media file saved for one deck."""

    deck_name: str
    base_path: str
    entries: dict[str, MediaFileEntry] = field(default_factory=dict)
    version: int = MEDIA_MANIFEST_VERSION
    created: str = field(default_factory=_now)
    updated: str = field(default_factory=_now)

    @property
    def path(self) -> str:
        return f"{self.base_path}/{MEDIA_MANIFEST_FILENAME}"

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries.values())

    def __len__(self) -> int:
        return len(self.entries)

    def find_by_hash(self, digest: str) -> MediaFileEntry | None:
        return self.entries.get(digest)

    def find_by_path(self, saved_path: str) -> MediaFileEntry | None:
        for entry in self.entries.values():
            if entry.saved_path == saved_path:
                return entry
        return None

    def add(self, entry: MediaFileEntry) -> None:
        """Append a new entry.

        Raises:
            ValueError: If an entry with the same hash already exists
        """
        if entry.hash in self.entries:
            raise ValueError(f"Manifest already contains hash {entry.hash}")
        self.entries[entry.hash] = entry
        self.updated = _now()

    def add_usage(self, digest: str, card_id: str) -> bool:
        """Record that ``card_id`` uses the entry; return True if new."""
        entry = self.entries[digest]
        if card_id in entry.used_by_cards:
            return False
        entry.used_by_cards.append(card_id)
        self.updated = _now()
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "deck_name": self.deck_name,
            "base_path": self.base_path,
            "created": self.created,
            "updated": self.updated,
            "files": {
                digest: entry.to_dict() for digest, entry in self.entries.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MediaManifest:
        entries = {
            str(digest): MediaFileEntry.from_dict(raw)
            for digest, raw in (data.get("files") or {}).items()
        }
        return cls(
            deck_name=str(data.get("deck_name", "")),
            base_path=str(data.get("base_path", "")),
            entries=entries,
            version=int(data.get("version", MEDIA_MANIFEST_VERSION)),
            created=str(data.get("created") or _now()),
            updated=str(data.get("updated") or _now()),
        )


async def load_manifest(
    storage: MediaStorage, base_path: str, deck_name: str
) -> MediaManifest:
    """Load a deck's manifest, or start an empty one."""
    manifest = MediaManifest(deck_name=deck_name, base_path=base_path)
    raw = await storage.read(manifest.path)
    if raw is None:
        return manifest

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable manifest %s: %s", manifest.path, exc)
        return manifest

    if not isinstance(data, dict):
        logger.warning("Ignoring malformed manifest %s", manifest.path)
        return manifest

    loaded = MediaManifest.from_dict(data)
    loaded.base_path = base_path
    loaded.deck_name = loaded.deck_name or deck_name
    logger.debug("Loaded manifest %s with %s entries", manifest.path, len(loaded))
    return loaded


async def save_manifest(storage: MediaStorage, manifest: MediaManifest) -> None:
    payload = json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False)
    await storage.write(manifest.path, payload.encode("utf-8"))


__all__ = ["MediaManifest", "load_manifest", "save_manifest"]
