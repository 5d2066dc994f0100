"""Configuration management for apkgport."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Application configuration."""

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    # Media Storage
    MEDIA_ROOT: Path = Path(os.getenv("MEDIA_ROOT", "./media"))

    # Card store used by the command line
    STORE_PATH: Path = Path(os.getenv("STORE_PATH", "./apkgport-store.json"))

    # Import
    DEFAULT_DECK_NAME: str = os.getenv("DEFAULT_DECK_NAME", "Imported Deck")

    # Import debug traces
    IMPORT_TRACE_ENABLED: bool = (
        os.getenv("IMPORT_TRACE_ENABLED", "false").lower() == "true"
    )
    IMPORT_TRACE_DIR: Path = Path(os.getenv("IMPORT_TRACE_DIR", "./import-traces"))
    IMPORT_TRACE_MAX_CHARS: int = int(os.getenv("IMPORT_TRACE_MAX_CHARS", "20000"))


config = Config()
