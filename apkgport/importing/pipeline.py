"""Import pipeline orchestrator.

Coordinates the flow: Package → Sides → Conversion → Media → Cards → Target
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import anyio

from apkgport.importing.builder import (
    DEFAULT_DECK_NAME,
    MODEL_NOT_FOUND,
    TARGET_ERROR,
    CardBuildError,
    CardBuilder,
    card_id_for,
)
from apkgport.importing.converter import ContentConverter, resolve_media_placeholders
from apkgport.importing.media.processor import MediaProcessor
from apkgport.importing.media.storage import MediaStorage, MediaStorageError
from apkgport.importing.models import (
    Card,
    CardImportError,
    ConversionResult,
    FieldSideMap,
    ImportConfig,
    ImportProgress,
    ImportResult,
    ImportStage,
    Model,
    Note,
    PackageData,
    TargetDeck,
)
from apkgport.importing.sides import FieldSideResolver
from apkgport.importing.sources import ImportSource, ImportSourceError
from apkgport.importing.sources.package import PackageSource
from apkgport.importing.targets import ImportTarget, TargetError
from apkgport.importing.templates import ensure_template

if TYPE_CHECKING:
    from apkgport.utils.import_trace import ImportTrace

logger = logging.getLogger("apkgport.imports")

ProgressCallback = Callable[[ImportProgress], Awaitable[None] | None]
CancelCheck = Callable[[], bool]

# Share of the progress bar owned by each stage
STAGE_RANGES: dict[ImportStage, tuple[float, float]] = {
    ImportStage.PARSING: (0.0, 10.0),
    ImportStage.ANALYZING: (10.0, 15.0),
    ImportStage.CONVERTING: (15.0, 45.0),
    ImportStage.MEDIA: (45.0, 65.0),
    ImportStage.BUILDING: (65.0, 80.0),
    ImportStage.SAVING: (80.0, 100.0),
}


@dataclass
class _PendingNote:
    """A note travelling through the per-note stages."""

    note: Note
    model: Model
    side_map: FieldSideMap
    deck: TargetDeck
    card_id: str
    source_deck: str | None
    raw_fields: dict[str, str]
    conversions: dict[str, ConversionResult] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    path_map: dict[str, str] = field(default_factory=dict)
    media_paths: list[str] = field(default_factory=list)
    card: Card | None = None
    failed: bool = False


class ImportCancelled(Exception):
    """Raised internally when the host asks to stop between items."""


class ImportPipeline:
    """Orchestrates the import of one package into a target.

    The pipeline coordinates:
    1. Parse the package into a unified in-memory representation
    2. Resolve field sides per model and create template records
    3. Convert every note's fields to Markdown
    4. Deduplicate and store the media the converted fields reference
    5. Build one card per note
    6. Save the cards and flush the target and media manifests

    Per-note failures are recorded and the batch continues; only package
    errors abort the run.

    Example:
        pipeline = ImportPipeline(MemoryTarget(), LocalMediaStorage("./media"))
        result = await pipeline.run(ImportConfig(file="deck.apkg"))
    """

    def __init__(
        self,
        target: ImportTarget,
        media_storage: MediaStorage,
        *,
        trace: ImportTrace | None = None,
        default_deck_name: str = DEFAULT_DECK_NAME,
    ) -> None:
        """Initialize the pipeline.

        Args:
            target: Deck/card store receiving the imported cards
            media_storage: File surface for deduplicated media
            trace: Optional import trace for debugging
            default_deck_name: Deck used when neither the config nor the
                package name one
        """
        self.target = target
        self.media_storage = media_storage
        self.trace = trace
        self.default_deck_name = default_deck_name

    async def run(
        self,
        config: ImportConfig,
        *,
        source: ImportSource | None = None,
        progress: ProgressCallback | None = None,
        is_cancelled: CancelCheck | None = None,
    ) -> ImportResult:
        """Run the import pipeline.

        Args:
            config: Import options, including the package file
            source: Source to parse instead of ``config.file``
            progress: Called with an ImportProgress after every stage
                transition and every item; may be sync or async
            is_cancelled: Polled between items; returning True stops the run

        Returns:
            ImportResult with granular counts, errors and warnings
        """
        started = time.perf_counter()
        source = source or PackageSource(config.file)
        session = _Session(
            pipeline=self,
            config=config,
            progress=progress,
            is_cancelled=is_cancelled,
        )

        if self.trace:
            self.trace.add_event(
                "pipeline_start",
                {
                    "source": source.source_id,
                    "target_type": self.target.target_type,
                    "skip_existing": config.skip_existing,
                    "create_deck_if_missing": config.create_deck_if_missing,
                    "target_deck_name": config.target_deck_name,
                },
            )

        result = await session.execute(source)
        result.duration = time.perf_counter() - started

        logger.info(
            "Import finished: success=%s imported=%s skipped=%s failed=%s "
            "media=%s in %.2fs",
            result.success,
            result.stats.imported_cards,
            result.stats.skipped_cards,
            result.stats.failed_cards,
            result.stats.media_files,
            result.duration,
        )
        if self.trace:
            self.trace.add_event("pipeline_finished", result.to_dict())
            try:
                self.trace.save()
            except OSError as exc:
                logger.warning("Failed to save import trace: %s", exc)
        return result


class _Session:
    """State of a single :meth:`ImportPipeline.run` call."""

    def __init__(
        self,
        *,
        pipeline: ImportPipeline,
        config: ImportConfig,
        progress: ProgressCallback | None,
        is_cancelled: CancelCheck | None,
    ) -> None:
        self.pipeline = pipeline
        self.config = config
        self.target = pipeline.target
        self.trace = pipeline.trace
        self.progress = progress
        self.is_cancelled = is_cancelled
        self.result = ImportResult(success=False)
        self.resolver = FieldSideResolver()
        self.converter = ContentConverter(config.conversion)
        self.builder = CardBuilder(
            pipeline.target,
            create_deck_if_missing=config.create_deck_if_missing,
            deck_override=config.target_deck_name,
            default_deck_name=pipeline.default_deck_name,
        )
        self.processor: MediaProcessor | None = None
        self.templates: dict[int, str] = {}

    # -- reporting --------------------------------------------------------

    async def report(
        self,
        stage: ImportStage,
        message: str,
        *,
        completed: int | None = None,
        total: int | None = None,
        current: str | None = None,
    ) -> None:
        low, high = STAGE_RANGES[stage]
        fraction = completed / total if completed is not None and total else 0.0
        event = ImportProgress(
            stage=stage,
            progress=round(low + (high - low) * fraction, 2),
            message=message,
            current_item=current,
            total_items=total,
            completed_items=completed,
        )
        if self.progress is not None:
            outcome: Any = self.progress(event)
            if inspect.isawaitable(outcome):
                await outcome

    async def checkpoint(self) -> None:
        await anyio.sleep(0)
        if self.is_cancelled is not None and self.is_cancelled():
            raise ImportCancelled

    def fail(
        self,
        stage: ImportStage,
        message: str,
        *,
        code: str | None = None,
        pending: _PendingNote | None = None,
        note: Note | None = None,
        details: Any = None,
    ) -> None:
        note = pending.note if pending is not None else note
        error = CardImportError(
            stage=stage,
            message=message,
            code=code,
            note_id=note.id if note is not None else None,
            card_id=pending.card_id if pending is not None else None,
            details=details,
        )
        self.result.errors.append(error)
        self.result.stats.failed_cards += 1
        if pending is not None:
            pending.failed = True
        logger.warning(
            "Note %s failed during %s: %s", error.note_id, stage.value, message
        )
        if self.trace and note is not None:
            self.trace.record_note_failure(note.id, stage.value, message, note.fields)

    # -- stages -----------------------------------------------------------

    async def execute(self, source: ImportSource) -> ImportResult:
        package: PackageData | None = None
        try:
            await self.report(ImportStage.PARSING, "Reading package")
            try:
                package = await anyio.to_thread.run_sync(source.fetch)
            except ImportSourceError as exc:
                return self.fatal(exc)

            self.result.stats.total_cards = len(package.notes)
            if self.trace:
                self.trace.add_event(
                    "package_parsed",
                    {
                        "variant": package.metadata.variant.value,
                        "models": len(package.models),
                        "decks": len(package.decks),
                        "notes": len(package.notes),
                        "cards": package.metadata.total_cards,
                    },
                )
            await self.report(
                ImportStage.PARSING,
                f"Parsed {len(package.notes)} notes",
                completed=1,
                total=1,
            )
            if not package.notes:
                self.result.warnings.append("Package contains no notes")

            self.processor = MediaProcessor(self.pipeline.media_storage, package.media)

            try:
                await self.analyze(package)
                pending = await self.convert(package)
                await self.materialize_media(pending)
                await self.build(pending)
                await self.save(pending)
            except ImportCancelled:
                self.result.cancelled = True
                self.result.warnings.append("Import cancelled")
                logger.info("Import cancelled by host")
                await self.flush_media()
        finally:
            media = getattr(package, "media", None)
            if media is not None and hasattr(media, "close"):
                media.close()

        self.finalize(package)
        return self.result

    def fatal(self, exc: ImportSourceError) -> ImportResult:
        logger.error("Package could not be read: %s", exc)
        if self.trace:
            self.trace.record_error("parsing", exc)
        self.result = ImportResult(
            success=False,
            errors=[
                CardImportError(
                    stage=ImportStage.PARSING,
                    message=str(exc),
                    code=exc.code,
                    details=exc.detail,
                )
            ],
        )
        return self.result

    async def analyze(self, package: PackageData) -> None:
        used_models = sorted({note.model_id for note in package.notes})
        await self.report(
            ImportStage.ANALYZING,
            f"Resolving field sides for {len(used_models)} note types",
            completed=0,
            total=len(used_models),
        )
        for index, model_id in enumerate(used_models, start=1):
            await self.checkpoint()
            model = package.models.get(model_id)
            if model is None:
                continue
            side_map = self.resolver.resolve(model)
            try:
                template = await ensure_template(self.target, model, side_map)
            except TargetError as exc:
                self.result.warnings.append(
                    f"Template for note type {model.name} could not be saved: {exc}"
                )
            else:
                self.templates[model.id] = template.id
            if self.trace:
                self.trace.add_event(
                    "field_sides", {"model_id": model.id, "sides": side_map.as_dict()}
                )
            await self.report(
                ImportStage.ANALYZING,
                f"Analyzed {model.name}",
                completed=index,
                total=len(used_models),
                current=model.name,
            )

    async def convert(self, package: PackageData) -> list[_PendingNote]:
        notes = package.notes
        total = len(notes)
        pending: list[_PendingNote] = []
        await self.report(
            ImportStage.CONVERTING, "Converting notes", completed=0, total=total
        )
        for index, note in enumerate(notes, start=1):
            await self.checkpoint()
            item = await self.prepare_note(note, package)
            if item is not None:
                pending.append(item)
            await self.report(
                ImportStage.CONVERTING,
                f"Converted {index}/{total} notes",
                completed=index,
                total=total,
                current=str(note.id),
            )
        return pending

    async def prepare_note(
        self, note: Note, package: PackageData
    ) -> _PendingNote | None:
        model = package.models.get(note.model_id)
        if model is None:
            self.fail(
                ImportStage.CONVERTING,
                f"Note type {note.model_id} not found",
                code=MODEL_NOT_FOUND,
                note=note,
            )
            return None

        side_map = self.resolver.resolve(model)
        source_deck = package.deck_for(note)
        try:
            deck = await self.builder.resolve_deck(
                self.builder.deck_name_for(note, package),
                source_deck.description if source_deck else "",
            )
        except CardBuildError as exc:
            self.fail(ImportStage.CONVERTING, str(exc), code=exc.code, note=note)
            return None

        card_id = card_id_for(deck.id, note)
        if self.config.skip_existing and await self.target.card_exists(card_id):
            self.result.stats.skipped_cards += 1
            logger.debug("Skipping existing card %s for note %s", card_id, note.id)
            return None

        values, warnings = self.builder.reconcile_fields(note, model)
        item = _PendingNote(
            note=note,
            model=model,
            side_map=side_map,
            deck=deck,
            card_id=card_id,
            source_deck=source_deck.name if source_deck else None,
            raw_fields={
                definition.name: value
                for definition, value in zip(model.fields, values, strict=True)
            },
            warnings=warnings,
        )
        try:
            for name, value in item.raw_fields.items():
                conversion = self.converter.convert(value)
                item.conversions[name] = conversion
                item.warnings.extend(
                    f"Note {note.id} field {name}: {warning}"
                    for warning in conversion.warnings
                )
        except Exception as exc:
            if self.trace:
                self.trace.record_text_blob(f"conversion_input_{note.id}", value)
            self.fail(
                ImportStage.CONVERTING,
                f"Conversion failed: {exc}",
                code="CONVERSION_FAILED",
                pending=item,
            )
            return None
        return item

    async def materialize_media(self, pending: list[_PendingNote]) -> None:
        total = len(pending)
        await self.report(
            ImportStage.MEDIA, "Processing media", completed=0, total=total
        )
        for index, item in enumerate(pending, start=1):
            await self.checkpoint()
            try:
                await self.process_media(item)
            except Exception as exc:
                logger.exception("Media processing failed for note %s", item.note.id)
                self.fail(
                    ImportStage.MEDIA,
                    f"Media processing failed: {exc}",
                    code="MEDIA_FAILED",
                    pending=item,
                )
            await self.report(
                ImportStage.MEDIA,
                f"Processed media for {index}/{total} notes",
                completed=index,
                total=total,
                current=str(item.note.id),
            )

    async def process_media(self, item: _PendingNote) -> None:
        assert self.processor is not None
        refs = [
            ref
            for conversion in item.conversions.values()
            for ref in conversion.media_refs
        ]
        if not refs:
            return
        outcome = await self.processor.process(
            refs, card_id=item.card_id, deck_name=item.deck.name
        )
        item.path_map = outcome.path_map
        item.media_paths = [entry.saved_path for entry in outcome.entries]
        for name in outcome.missing:
            item.warnings.append(
                f"Note {item.note.id}: media file {name} is not available"
            )
        for error in outcome.errors:
            self.result.media_errors.append(error)
            if self.trace:
                self.trace.record_media_error(error.file, error.error, error.code)

    async def build(self, pending: list[_PendingNote]) -> None:
        candidates = [item for item in pending if not item.failed]
        total = len(candidates)
        await self.report(
            ImportStage.BUILDING, "Building cards", completed=0, total=total
        )
        for index, item in enumerate(candidates, start=1):
            await self.checkpoint()
            try:
                self.build_card(item)
            except Exception as exc:
                logger.exception("Card build failed for note %s", item.note.id)
                self.fail(
                    ImportStage.BUILDING,
                    f"Card build failed: {exc}",
                    code="BUILD_FAILED",
                    pending=item,
                )
            await self.report(
                ImportStage.BUILDING,
                f"Built {index}/{total} cards",
                completed=index,
                total=total,
                current=str(item.note.id),
            )

    def build_card(self, item: _PendingNote) -> None:
        media_format = self.config.conversion.media_format
        fields = {
            name: resolve_media_placeholders(
                conversion.markdown,
                conversion.media_refs,
                item.path_map,
                media_format,
            )
            for name, conversion in item.conversions.items()
        }
        outcome = self.builder.build(
            note=item.note,
            model=item.model,
            side_map=item.side_map,
            deck=item.deck,
            fields=fields,
            raw_fields=item.raw_fields,
            template_id=self.templates.get(item.model.id),
            source_deck=item.source_deck,
            media=item.media_paths,
            warnings=item.warnings,
        )
        self.result.warnings.extend(outcome.warnings)
        if outcome.success and outcome.card is not None:
            item.card = outcome.card
        else:
            self.result.stats.skipped_cards += 1
            logger.info("Skipped note %s without content", item.note.id)

    async def save(self, pending: list[_PendingNote]) -> None:
        cards = [item for item in pending if item.card is not None]
        total = len(cards)
        await self.report(ImportStage.SAVING, "Saving cards", completed=0, total=total)
        for index, item in enumerate(cards, start=1):
            await self.checkpoint()
            assert item.card is not None
            try:
                await self.target.save_card(item.card)
            except TargetError as exc:
                self.fail(
                    ImportStage.SAVING,
                    f"Card could not be saved: {exc}",
                    code=TARGET_ERROR,
                    pending=item,
                )
            else:
                self.result.stats.imported_cards += 1
            await self.report(
                ImportStage.SAVING,
                f"Saved {index}/{total} cards",
                completed=index,
                total=total,
                current=item.card_id,
            )

        await self.flush_media()
        try:
            await self.target.flush()
        except TargetError as exc:
            self.result.errors.append(
                CardImportError(
                    stage=ImportStage.SAVING,
                    message=f"Target flush failed: {exc}",
                    code=TARGET_ERROR,
                )
            )
        await self.report(ImportStage.SAVING, "Import complete", completed=1, total=1)

    async def flush_media(self) -> None:
        if self.processor is None:
            return
        try:
            await self.processor.flush()
        except MediaStorageError as exc:
            self.result.warnings.append(f"Media manifest could not be saved: {exc}")
            logger.warning("Media manifest could not be saved: %s", exc)

    def finalize(self, package: PackageData | None) -> None:
        result = self.result
        if self.processor is not None:
            result.stats.media_files = len(self.processor.touched_entries)
            result.stats.media_total_size = self.processor.touched_size

        decks = self.builder.resolved_decks
        if decks:
            preferred = None
            if package is not None:
                primary = package.primary_deck
                preferred_name = self.builder.deck_override or (
                    primary.name if primary else None
                )
                preferred = next(
                    (deck for deck in decks if deck.name == preferred_name), None
                )
            deck = preferred or decks[0]
            result.deck_id = deck.id
            result.deck_name = deck.name

        result.success = (
            not result.cancelled
            and result.stats.failed_cards == 0
            and not any(error.note_id is None for error in result.errors)
        )


__all__ = ["CancelCheck", "ImportCancelled", "ImportPipeline", "ProgressCallback"]
