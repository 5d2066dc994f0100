"""Media importing utilities.

Extracts only the media a card actually references, deduplicates it by
content hash and records every saved file in a per-deck manifest.

Example:
    from apkgport.importing.media import LocalMediaStorage, MediaProcessor

    processor = MediaProcessor(LocalMediaStorage("./media"), package.media)
    result = await processor.process(
        conversion.media_refs, card_id=card.id, deck_name="Biology"
    )
    await processor.flush()

    for name, path in result.path_map.items():
        print(f"{name} -> {path}")
"""

from __future__ import annotations

# Constants
from apkgport.importing.media.constants import (
    IMPORT_AUDIO_EXTENSIONS,
    IMPORT_IMAGE_EXTENSIONS,
    IMPORT_VIDEO_EXTENSIONS,
    MEDIA_DECK_FOLDER_PREFIX,
    MEDIA_MANIFEST_FILENAME,
    MEDIA_MISSING,
    media_type_for,
)

# Manifest
from apkgport.importing.media.manifest import (
    MediaManifest,
    load_manifest,
    save_manifest,
)

# Processing
from apkgport.importing.media.processor import (
    MediaProcessingResult,
    MediaProcessor,
    deck_media_folder,
    image_dimensions,
)

# Storage
from apkgport.importing.media.storage import (
    LocalMediaStorage,
    MediaStorage,
    MediaStorageError,
    MemoryMediaStorage,
)

__all__ = [
    # Constants
    "IMPORT_AUDIO_EXTENSIONS",
    "IMPORT_IMAGE_EXTENSIONS",
    "IMPORT_VIDEO_EXTENSIONS",
    "MEDIA_DECK_FOLDER_PREFIX",
    "MEDIA_MANIFEST_FILENAME",
    "MEDIA_MISSING",
    "media_type_for",
    # Manifest
    "MediaManifest",
    "load_manifest",
    "save_manifest",
    # Processing
    "MediaProcessingResult",
    "MediaProcessor",
    "deck_media_folder",
    "image_dimensions",
    # Storage
    "LocalMediaStorage",
    "MediaStorage",
    "MediaStorageError",
    "MemoryMediaStorage",
]
