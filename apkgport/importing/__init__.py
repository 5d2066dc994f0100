"""Package importing.

The import system is a pipeline with four collaborators:
1. **Source** - Reads an .apkg container into a unified PackageData
2. **Converter** - Turns note field markup into Markdown with media slots
3. **Media** - Deduplicates referenced files into per-deck folders
4. **Target** - Persists decks, templates and cards

Example:
    from apkgport.importing import ImportConfig, ImportPipeline
    from apkgport.importing.media import LocalMediaStorage
    from apkgport.importing.targets.json_file import JsonFileTarget

    pipeline = ImportPipeline(
        JsonFileTarget("store.json"), LocalMediaStorage("./media")
    )
    result = await pipeline.run(ImportConfig(file="biology.apkg"))
    print(result.stats.imported_cards)
"""

from __future__ import annotations

from apkgport.importing.builder import (
    CONTENT_DIVIDER,
    CardBuildError,
    CardBuilder,
    card_id_for,
)
from apkgport.importing.converter import (
    ContentConverter,
    resolve_media_placeholders,
)
from apkgport.importing.models import (
    Card,
    CardImportError,
    ClozeFormat,
    ConversionConfig,
    ConversionResult,
    FieldSide,
    FieldSideMap,
    FormatVariant,
    ImportConfig,
    ImportProgress,
    ImportResult,
    ImportStage,
    ImportStats,
    MediaFormat,
    PackageData,
)
from apkgport.importing.pipeline import ImportPipeline
from apkgport.importing.sides import FieldSideResolver
from apkgport.importing.sources import (
    CorruptArchiveError,
    ImportSource,
    ImportSourceError,
    MissingDatabaseError,
    PackageError,
    UnsupportedFormatError,
)
from apkgport.importing.sources.package import PackageSource
from apkgport.importing.targets import ImportTarget, TargetError
from apkgport.importing.targets.json_file import JsonFileTarget
from apkgport.importing.targets.memory import MemoryTarget

__all__ = [
    # Pipeline
    "ImportPipeline",
    "ImportConfig",
    "ImportProgress",
    "ImportResult",
    "ImportStage",
    "ImportStats",
    "CardImportError",
    # Sources
    "ImportSource",
    "ImportSourceError",
    "PackageError",
    "CorruptArchiveError",
    "MissingDatabaseError",
    "UnsupportedFormatError",
    "PackageSource",
    "PackageData",
    "FormatVariant",
    # Sides
    "FieldSide",
    "FieldSideMap",
    "FieldSideResolver",
    # Conversion
    "ClozeFormat",
    "ContentConverter",
    "ConversionConfig",
    "ConversionResult",
    "MediaFormat",
    "resolve_media_placeholders",
    # Cards
    "CONTENT_DIVIDER",
    "Card",
    "CardBuildError",
    "CardBuilder",
    "card_id_for",
    # Targets
    "ImportTarget",
    "JsonFileTarget",
    "MemoryTarget",
    "TargetError",
]
