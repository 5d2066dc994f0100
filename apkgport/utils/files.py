"""File management utilities."""

import hashlib
import re
from pathlib import Path

_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")

MAX_DECK_FOLDER_LENGTH = 100


def compute_checksum(content: bytes) -> str:
    """Compute a SHA-256 checksum for the given content."""
    digest = hashlib.sha256()
    digest.update(content)
    return digest.hexdigest()


def sanitize_filename(filename: str) -> str:
    """Make a media file name safe for any file system.

    Path separators and reserved characters become underscores, as does
    whitespace. Leading dots are stripped so names never hide.
    """
    cleaned = _ILLEGAL_CHARS.sub("_", filename)
    cleaned = _WHITESPACE.sub("_", cleaned).strip().lstrip(".")
    return cleaned or "media"


def sanitize_folder_name(name: str) -> str:
    """Make a deck name usable as a single folder name."""
    cleaned = _ILLEGAL_CHARS.sub("_", name)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:MAX_DECK_FOLDER_LENGTH] or "Untitled"


def suffixed_filename(filename: str, counter: int) -> str:
    """Return ``stem-<counter>.ext`` for a file name."""
    path = Path(filename)
    return f"{path.stem}-{counter}{path.suffix}"
