"""Template records for imported note types."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime

from apkgport.importing.models import CardTemplate, FieldSideMap, Model
from apkgport.importing.targets import ImportTarget

logger = logging.getLogger("apkgport.imports")

TEMPLATE_ID_PREFIX = "anki-import-"
TEMPLATE_NAME_PREFIX = "[Anki] "


def template_id_for(model_id: int) -> str:
    return f"{TEMPLATE_ID_PREFIX}{model_id}"


def field_key(name: str) -> str:
    return re.sub(r"\s+", "_", name.strip().lower())


def build_template(model: Model, side_map: FieldSideMap) -> CardTemplate:
    """Describe a note type as a target template record.

    Args:
        model: Note type from the package
        side_map: Resolved sides for the model's fields

    Returns:
        CardTemplate carrying field sides and the original template markup
    """
    fields = []
    for definition in model.fields:
        resolution = side_map.fields.get(definition.name)
        fields.append(
            {
                "name": definition.name,
                "key": field_key(definition.name),
                "side": side_map.side_of(definition.name).value,
                "confidence": resolution.confidence.value if resolution else "low",
                "description": definition.description or f"{definition.name} field",
            }
        )

    return CardTemplate(
        id=template_id_for(model.id),
        name=f"{TEMPLATE_NAME_PREFIX}{model.name}",
        model_id=model.id,
        kind="cloze" if model.is_cloze else "basic",
        fields=fields,
        front_templates=[template.front for template in model.templates],
        back_templates=[template.back for template in model.templates],
        css=model.css,
        metadata={
            "source": "apkg",
            "original_model_id": str(model.id),
            "original_model_name": model.name,
            "template_names": [template.name for template in model.templates],
            "field_count": len(model.fields),
            "imported_at": datetime.now(UTC).isoformat(),
        },
    )


async def ensure_template(
    target: ImportTarget, model: Model, side_map: FieldSideMap
) -> CardTemplate:
    """Reuse the target's template for ``model`` or create it."""
    existing = await target.find_template(model.id)
    if existing is not None:
        logger.debug("Reusing template %s for model %s", existing.id, model.id)
        return existing

    template = await target.save_template(build_template(model, side_map))
    logger.info("Created template %s (%s)", template.name, template.id)
    return template


__all__ = [
    "TEMPLATE_ID_PREFIX",
    "build_template",
    "ensure_template",
    "field_key",
    "template_id_for",
]
