"""Field side resolution.

Notes store field values independently of how they are displayed, so the
face a field belongs on has to be inferred from the placeholders in the
model's card templates.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from apkgport.importing.models import (
    Confidence,
    FieldResolution,
    FieldSide,
    FieldSideMap,
    Model,
)

logger = logging.getLogger("apkgport.imports")

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

SPECIAL_TAGS = frozenset(
    {"FrontSide", "Card", "Deck", "Subdeck", "CardFlag", "Type", "Tags", "CardID"}
)
CONDITIONAL_PREFIXES = ("#", "^", "/")


@dataclass
class TemplateReferences:
    """Field names referenced by one piece of template markup."""

    direct: set[str] = field(default_factory=set)
    conditional: set[str] = field(default_factory=set)


def extract_references(markup: str) -> TemplateReferences:
    """Collect field names referenced by ``markup``.

    Handles plain ``{{Field}}``, modifier chains such as
    ``{{text:cloze:Field}}`` and conditional sections ``{{#Field}}``,
    ``{{^Field}}`` and ``{{/Field}}``. Comments and built-in tags are
    ignored.
    """
    refs = TemplateReferences()
    if not markup:
        return refs

    for match in PLACEHOLDER_PATTERN.finditer(markup):
        token = match.group(1).strip()
        if not token or token.startswith("!"):
            continue

        if token[0] in CONDITIONAL_PREFIXES:
            name = token[1:].strip()
            if name and name not in SPECIAL_TAGS:
                refs.conditional.add(name)
            continue

        name = token.rsplit(":", 1)[-1].strip()
        if name and name not in SPECIAL_TAGS:
            refs.direct.add(name)

    return refs


def _side_from_presence(in_front: bool, in_back: bool) -> FieldSide:
    if in_front and in_back:
        return FieldSide.BOTH
    if in_front:
        return FieldSide.FRONT
    return FieldSide.BACK


class FieldSideResolver:
    """Resolve and cache per-model field sides.

    Each model is scanned once; every later lookup for the same model id
    is served from the cache regardless of how many notes use it.
    """

    def __init__(self) -> None:
        self._cache: dict[int, FieldSideMap] = {}
        self.resolutions = 0

    def resolve(self, model: Model) -> FieldSideMap:
        """Return the side map for ``model``, computing it on first use.

        The model's field definitions are updated in place with the
        resolved side and confidence.
        """
        cached = self._cache.get(model.id)
        if cached is not None:
            return cached

        side_map = self._resolve_uncached(model)
        self._cache[model.id] = side_map
        self.resolutions += 1

        for definition in model.fields:
            resolution = side_map.fields.get(definition.name)
            if resolution is not None:
                definition.side = resolution.side
                definition.confidence = resolution.confidence

        low = side_map.low_confidence
        if low:
            logger.info(
                "Model %s (%s): no template placeholder for fields %s",
                model.name,
                model.id,
                ", ".join(low),
            )
        logger.debug(
            "Resolved field sides for model %s: %s", model.id, side_map.as_dict()
        )
        return side_map

    def cached(self, model_id: int) -> FieldSideMap | None:
        return self._cache.get(model_id)

    @staticmethod
    def _resolve_uncached(model: Model) -> FieldSideMap:
        front = TemplateReferences()
        back = TemplateReferences()
        for template in model.templates:
            front_refs = extract_references(template.front)
            back_refs = extract_references(template.back)
            front.direct |= front_refs.direct
            front.conditional |= front_refs.conditional
            back.direct |= back_refs.direct
            back.conditional |= back_refs.conditional

        side_map = FieldSideMap(model_id=model.id)
        for definition in model.fields:
            name = definition.name
            in_front = name in front.direct
            in_back = name in back.direct
            if in_front or in_back:
                confidence = Confidence.HIGH
            else:
                in_front = name in front.conditional
                in_back = name in back.conditional
                confidence = (
                    Confidence.MEDIUM if in_front or in_back else Confidence.LOW
                )

            side_map.fields[name] = FieldResolution(
                field_name=name,
                side=_side_from_presence(in_front, in_back),
                confidence=confidence,
                appears_in_front=in_front,
                appears_in_back=in_back,
            )
        return side_map


__all__ = ["FieldSideResolver", "TemplateReferences", "extract_references"]
