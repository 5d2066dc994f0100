"""Media import constants.

All media import configuration in one place for consistency.
"""

from __future__ import annotations

from pathlib import PurePosixPath

from apkgport.importing.models import MediaType

# Allowed file extensions per media type
IMPORT_IMAGE_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".svg", ".webp"}
)
IMPORT_AUDIO_EXTENSIONS = frozenset({".mp3", ".wav", ".ogg", ".aac", ".m4a", ".flac"})
IMPORT_VIDEO_EXTENSIONS = frozenset({".mp4", ".webm", ".ogv", ".mov", ".avi", ".mkv"})

# Storage layout
MEDIA_DECK_FOLDER_PREFIX = "[APKG] "
MEDIA_MANIFEST_FILENAME = "manifest.json"
MEDIA_MANIFEST_VERSION = 1

# Collision suffixes tried before giving up
MEDIA_MAX_COLLISION_SUFFIX = 10_000

# Error codes
MEDIA_MISSING = "MEDIA_MISSING"
MEDIA_READ_FAILED = "MEDIA_READ_FAILED"
MEDIA_WRITE_FAILED = "MEDIA_WRITE_FAILED"


def media_type_for(name: str, default: MediaType = MediaType.IMAGE) -> MediaType:
    """Guess a media type from a file name's extension."""
    suffix = PurePosixPath(name).suffix.lower()
    if suffix in IMPORT_IMAGE_EXTENSIONS:
        return MediaType.IMAGE
    if suffix in IMPORT_AUDIO_EXTENSIONS:
        return MediaType.AUDIO
    if suffix in IMPORT_VIDEO_EXTENSIONS:
        return MediaType.VIDEO
    return default


__all__ = [
    "IMPORT_AUDIO_EXTENSIONS",
    "IMPORT_IMAGE_EXTENSIONS",
    "IMPORT_VIDEO_EXTENSIONS",
    "MEDIA_DECK_FOLDER_PREFIX",
    "MEDIA_MANIFEST_FILENAME",
    "MEDIA_MANIFEST_VERSION",
    "MEDIA_MAX_COLLISION_SUFFIX",
    "MEDIA_MISSING",
    "MEDIA_READ_FAILED",
    "MEDIA_WRITE_FAILED",
    "media_type_for",
]
