"""Referenced media extraction with content-hash deduplication."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Protocol

import anyio
from PIL import Image as PilImage

from apkgport.importing.media.constants import (
    MEDIA_DECK_FOLDER_PREFIX,
    MEDIA_MAX_COLLISION_SUFFIX,
    MEDIA_MISSING,
    MEDIA_READ_FAILED,
    MEDIA_WRITE_FAILED,
)
from apkgport.importing.media.manifest import (
    MediaManifest,
    load_manifest,
    save_manifest,
)
from apkgport.importing.media.storage import MediaStorage, MediaStorageError
from apkgport.importing.models import (
    MediaError,
    MediaFileEntry,
    MediaProcessingStats,
    MediaReference,
    MediaType,
)
from apkgport.utils.files import (
    compute_checksum,
    sanitize_filename,
    sanitize_folder_name,
    suffixed_filename,
)

logger = logging.getLogger("apkgport.media")


class MediaBlobs(Protocol):
    """Anything that can hand out media bytes by original file name."""

    def read(self, name: str) -> bytes | None: ...


@dataclass
class MediaProcessingResult:
    """Outcome of resolving the media references of one card."""

    path_map: dict[str, str] = field(default_factory=dict)
    entries: list[MediaFileEntry] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    errors: list[MediaError] = field(default_factory=list)


def deck_media_folder(deck_name: str) -> str:
    """Return the storage folder for a deck's media."""
    return f"{MEDIA_DECK_FOLDER_PREFIX}{sanitize_folder_name(deck_name)}"


def image_dimensions(content: bytes) -> tuple[int, int] | None:
    """Read image dimensions, or None if Pillow cannot open the bytes."""
    try:
        with PilImage.open(BytesIO(content)) as img:
            width, height = img.size
            return int(width), int(height)
    except (OSError, ValueError) as exc:
        logger.debug("Failed to inspect image: %s", exc)
        return None


class MediaProcessor:
    """Resolve media references to deduplicated saved paths.

    Blobs are hashed before anything is written: a hash already present
    in the deck's manifest only gains a new card usage, so re-importing
    the same package never duplicates files. Manifest access is
    serialized through a single lock.

    Example:
        processor = MediaProcessor(storage, package.media)
        result = await processor.process(refs, card_id=card_id, deck_name="Biology")
        await processor.flush()
    """

    def __init__(self, storage: MediaStorage, blobs: MediaBlobs | None) -> None:
        self.storage = storage
        self.blobs = blobs
        self.stats = MediaProcessingStats()
        self.errors: list[MediaError] = []
        self._lock = anyio.Lock()
        self._manifests: dict[str, MediaManifest] = {}
        self._dirty: set[str] = set()
        self._touched: dict[str, MediaFileEntry] = {}
        self._digests: dict[str, str] = {}
        self._reported: set[str] = set()

    @property
    def touched_entries(self) -> list[MediaFileEntry]:
        """Manifest entries used by cards during this session."""
        return list(self._touched.values())

    @property
    def touched_size(self) -> int:
        return sum(entry.size for entry in self._touched.values())

    async def manifest_for(self, deck_name: str) -> MediaManifest:
        """Return the (cached) manifest of a deck.

        Manifests are keyed by media folder, so decks whose names sanitize
        to the same folder share one manifest.
        """
        folder = deck_media_folder(deck_name)
        manifest = self._manifests.get(folder)
        if manifest is None:
            manifest = await load_manifest(self.storage, folder, deck_name)
            self._manifests[folder] = manifest
        return manifest

    async def process(
        self,
        refs: list[MediaReference],
        *,
        card_id: str,
        deck_name: str,
    ) -> MediaProcessingResult:
        """Materialize the media a card references.

        Args:
            refs: References emitted by the converter for this card
            card_id: Card recorded as a user of every resolved file
            deck_name: Target deck, which selects the manifest and folder

        Returns:
            MediaProcessingResult with the name to path map, the entries
            used, missing names and any newly recorded errors
        """
        result = MediaProcessingResult()
        for ref in refs:
            name = ref.original_src
            if name in result.path_map or name in result.missing:
                continue
            self.stats.total_files += 1

            blob = self._read_blob(name, result)
            if blob is None:
                continue

            try:
                entry = await self._store(
                    blob, ref, card_id=card_id, deck_name=deck_name
                )
            except MediaStorageError as exc:
                self.stats.failed_files += 1
                error = MediaError(
                    file=name, error=str(exc), severity="error", code=MEDIA_WRITE_FAILED
                )
                self.errors.append(error)
                result.errors.append(error)
                logger.warning("Failed to store media %s: %s", name, exc)
                continue

            result.path_map[name] = entry.saved_path
            if entry not in result.entries:
                result.entries.append(entry)
        return result

    def _read_blob(self, name: str, result: MediaProcessingResult) -> bytes | None:
        blob: bytes | None = None
        error: MediaError | None = None
        if self.blobs is not None:
            try:
                blob = self.blobs.read(name)
            except Exception as exc:
                logger.warning("Failed to read media %s: %s", name, exc)
                error = MediaError(
                    file=name,
                    error=f"Media file could not be read: {exc}",
                    code=MEDIA_READ_FAILED,
                )
        if blob is None and error is None:
            error = MediaError(
                file=name,
                error="Media file referenced but not present in package",
                code=MEDIA_MISSING,
            )

        if error is not None:
            self.stats.failed_files += 1
            result.missing.append(name)
            if name not in self._reported:
                self._reported.add(name)
                self.errors.append(error)
                result.errors.append(error)
                logger.info("Media %s unavailable: %s", name, error.error)
            return None

        return blob

    async def _store(
        self,
        blob: bytes,
        ref: MediaReference,
        *,
        card_id: str,
        deck_name: str,
    ) -> MediaFileEntry:
        name = ref.original_src
        digest = self._digests.get(name)
        if digest is None:
            digest = compute_checksum(blob)
            self._digests[name] = digest

        async with self._lock:
            manifest = await self.manifest_for(deck_name)
            entry = manifest.find_by_hash(digest)
            if entry is not None:
                if manifest.add_usage(digest, card_id):
                    self._dirty.add(manifest.base_path)
                self.stats.reused_files += 1
                logger.debug("Reusing %s for %s", entry.saved_path, name)
            else:
                saved_path, already_stored = await self._free_path(
                    manifest, name, digest
                )
                if not already_stored:
                    await self.storage.write(saved_path, blob)
                    self.stats.saved_files += 1
                    self.stats.total_size += len(blob)
                else:
                    self.stats.reused_files += 1

                width = height = None
                if ref.type == MediaType.IMAGE:
                    dimensions = await anyio.to_thread.run_sync(image_dimensions, blob)
                    if dimensions is not None:
                        width, height = dimensions

                entry = MediaFileEntry(
                    id=digest[:16],
                    original_name=name,
                    saved_path=saved_path,
                    type=ref.type,
                    size=len(blob),
                    hash=digest,
                    used_by_cards=[card_id],
                    created=manifest.updated,
                    width=width,
                    height=height,
                )
                manifest.add(entry)
                self._dirty.add(manifest.base_path)
                logger.debug("Saved %s as %s", name, saved_path)

            self._touched[digest] = entry
            return entry

    async def _free_path(
        self, manifest: MediaManifest, name: str, digest: str
    ) -> tuple[str, bool]:
        """Pick the first unclaimed path for ``name`` within the deck folder.

        Returns the path and whether identical bytes are already stored
        there (a file present on storage but missing from the manifest).
        """
        filename = sanitize_filename(name)
        for counter in range(MEDIA_MAX_COLLISION_SUFFIX):
            candidate_name = (
                suffixed_filename(filename, counter) if counter else filename
            )
            candidate = f"{manifest.base_path}/{candidate_name}"
            if manifest.find_by_path(candidate) is not None:
                continue
            existing = await self.storage.read(candidate)
            if existing is None:
                return candidate, False
            if compute_checksum(existing) == digest:
                return candidate, True
        raise MediaStorageError(f"No free file name for {name}", name)

    async def flush(self) -> None:
        """Persist every manifest changed during this session."""
        async with self._lock:
            for folder in sorted(self._dirty):
                manifest = self._manifests[folder]
                await save_manifest(self.storage, manifest)
                logger.info(
                    "Saved media manifest %s (%s entries)", manifest.path, len(manifest)
                )
            self._dirty.clear()


__all__ = [
    "MediaBlobs",
    "MediaProcessingResult",
    "MediaProcessor",
    "deck_media_folder",
    "image_dimensions",
]
