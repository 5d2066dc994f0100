"""CLI tool for apkgport."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from apkgport.config import config
from apkgport.importing.media.storage import LocalMediaStorage
from apkgport.importing.models import (
    ClozeFormat,
    ConversionConfig,
    ImportConfig,
    ImportProgress,
    ImportResult,
    ImportStage,
    MediaFormat,
)
from apkgport.importing.pipeline import ImportPipeline
from apkgport.importing.sides import FieldSideResolver
from apkgport.importing.sources import ImportSourceError
from apkgport.importing.sources.package import PackageSource
from apkgport.importing.targets.json_file import JsonFileTarget
from apkgport.logging_config import configure_logging
from apkgport.utils.import_trace import ImportTrace


def inspect_package(path: Path) -> dict[str, Any]:
    """Summarize a package without importing it."""
    package = PackageSource(path).fetch()
    try:
        resolver = FieldSideResolver()
        models = []
        for model in package.models.values():
            side_map = resolver.resolve(model)
            models.append(
                {
                    "id": model.id,
                    "name": model.name,
                    "cloze": model.is_cloze,
                    "templates": [template.name for template in model.templates],
                    "fields": side_map.as_dict(),
                }
            )
        primary = package.primary_deck
        return {
            "variant": package.metadata.variant.value,
            "database": package.metadata.db_filename,
            "media_encoding": package.metadata.media_encoding.value,
            "notes": package.metadata.total_notes,
            "cards": package.metadata.total_cards,
            "media_files": len(package.media) if package.media is not None else 0,
            "primary_deck": primary.name if primary else None,
            "decks": [
                {"id": deck.id, "name": deck.name, "dynamic": deck.dynamic}
                for deck in package.decks.values()
            ],
            "models": models,
        }
    finally:
        if package.media is not None:
            package.media.close()


def print_progress(event: ImportProgress) -> None:
    print(
        f"[{event.progress:5.1f}%] {event.stage.value}: {event.message}",
        file=sys.stderr,
    )


async def import_package(args: argparse.Namespace) -> ImportResult:
    """Import a package into a JSON card store."""
    conversion = ConversionConfig(
        media_format=args.media_format,
        cloze_format=args.cloze_format,
        preserve_styles=args.preserve_styles,
    )
    import_config = ImportConfig(
        file=args.package,
        conversion=conversion,
        skip_existing=args.skip_existing,
        create_deck_if_missing=not args.no_create,
        target_deck_name=args.deck,
    )

    trace = None
    if config.IMPORT_TRACE_ENABLED:
        trace = ImportTrace.create(
            config.IMPORT_TRACE_DIR, max_chars=config.IMPORT_TRACE_MAX_CHARS
        )

    pipeline = ImportPipeline(
        JsonFileTarget(args.store),
        LocalMediaStorage(args.media_root),
        trace=trace,
        default_deck_name=config.DEFAULT_DECK_NAME,
    )
    return await pipeline.run(
        import_config, progress=None if args.quiet else print_progress
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import Anki packages as cards.")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # inspect
    inspect_parser = subparsers.add_parser(
        "inspect", help="Show format, decks and field sides of a package"
    )
    inspect_parser.add_argument("package", type=Path, help="Path to the .apkg file")

    # import
    import_parser = subparsers.add_parser("import", help="Import a package")
    import_parser.add_argument("package", type=Path, help="Path to the .apkg file")
    import_parser.add_argument("--deck", help="Import every note into this deck")
    import_parser.add_argument(
        "--skip-existing",
        action="store_true",
        help="Skip notes whose card is already in the store",
    )
    import_parser.add_argument(
        "--no-create",
        action="store_true",
        help="Fail notes whose deck does not exist yet",
    )
    import_parser.add_argument(
        "--media-format",
        choices=[fmt.value for fmt in MediaFormat],
        default=MediaFormat.WIKILINK.value,
        help="Syntax used for media links",
    )
    import_parser.add_argument(
        "--cloze-format",
        choices=[fmt.value for fmt in ClozeFormat],
        default=ClozeFormat.HIGHLIGHT.value,
        help="Syntax used for cloze deletions",
    )
    import_parser.add_argument(
        "--preserve-styles",
        action="store_true",
        help="Keep inline colors and styles as HTML",
    )
    import_parser.add_argument(
        "--store",
        type=Path,
        default=config.STORE_PATH,
        help="JSON card store to import into",
    )
    import_parser.add_argument(
        "--media-root",
        type=Path,
        default=config.MEDIA_ROOT,
        help="Directory receiving deck media folders",
    )
    import_parser.add_argument(
        "--quiet", action="store_true", help="Do not print progress"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(debug=args.debug or config.DEBUG)

    if args.command == "inspect":
        try:
            summary = inspect_package(args.package)
        except ImportSourceError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        print(json.dumps(summary, indent=2, ensure_ascii=False))
        return 0

    args.media_format = MediaFormat(args.media_format)
    args.cloze_format = ClozeFormat(args.cloze_format)
    result = asyncio.run(import_package(args))
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    fatal = any(error.stage == ImportStage.PARSING for error in result.errors)
    return 1 if fatal else 0


if __name__ == "__main__":
    sys.exit(main())
