from __future__ import annotations

from apkgport.importing.models import (
    Confidence,
    FieldDefinition,
    FieldSide,
    Model,
    Template,
)
from apkgport.importing.sides import FieldSideResolver, extract_references


def _model(fields: list[str], templates: list[tuple[str, str]], model_id: int = 1):
    return Model(
        id=model_id,
        name="Test",
        fields=[FieldDefinition(name=name, ordinal=i) for i, name in enumerate(fields)],
        templates=[
            Template(name=f"Card {i + 1}", ordinal=i, front=front, back=back)
            for i, (front, back) in enumerate(templates)
        ],
    )


def test_question_on_both_faces_answer_on_back() -> None:
    model = _model(
        ["Question", "Answer"],
        [("{{Question}}", "{{Question}}<hr id=answer>{{Answer}}")],
    )

    side_map = FieldSideResolver().resolve(model)

    assert side_map.side_of("Question") == FieldSide.BOTH
    assert side_map.side_of("Answer") == FieldSide.BACK
    assert side_map.fields["Question"].confidence == Confidence.HIGH
    assert side_map.fields["Answer"].confidence == Confidence.HIGH


def test_front_only_field() -> None:
    model = _model(["Word", "Meaning"], [("{{Word}}", "{{FrontSide}} {{Meaning}}")])

    side_map = FieldSideResolver().resolve(model)

    assert side_map.side_of("Word") == FieldSide.FRONT
    assert side_map.side_of("Meaning") == FieldSide.BACK


def test_different_templates_on_different_faces_is_both() -> None:
    model = _model(
        ["Front", "Back"],
        [("{{Front}}", "{{Back}}"), ("{{Back}}", "{{Front}}")],
    )

    side_map = FieldSideResolver().resolve(model)

    assert side_map.side_of("Front") == FieldSide.BOTH
    assert side_map.side_of("Back") == FieldSide.BOTH


def test_unreferenced_field_falls_back_to_back_with_low_confidence() -> None:
    model = _model(["Front", "Back", "Notes"], [("{{Front}}", "{{Back}}")])

    side_map = FieldSideResolver().resolve(model)

    assert side_map.side_of("Notes") == FieldSide.BACK
    assert side_map.fields["Notes"].confidence == Confidence.LOW
    assert side_map.low_confidence == ["Notes"]


def test_conditional_only_reference_has_medium_confidence() -> None:
    model = _model(
        ["Front", "Hint"],
        [("{{Front}}{{#Hint}}hint available{{/Hint}}", "{{Front}}")],
    )

    side_map = FieldSideResolver().resolve(model)

    assert side_map.side_of("Hint") == FieldSide.FRONT
    assert side_map.fields["Hint"].confidence == Confidence.MEDIUM


def test_cloze_and_modifier_placeholders() -> None:
    refs = extract_references(
        "{{cloze:Text}} {{text:hint:Extra}} {{^Missing}}x{{/Missing}} "
        "{{! comment }} {{Tags}} {{FrontSide}}"
    )

    assert refs.direct == {"Text", "Extra"}
    assert refs.conditional == {"Missing"}


def test_resolution_is_cached_per_model() -> None:
    resolver = FieldSideResolver()
    model = _model(["Front"], [("{{Front}}", "")])

    first = resolver.resolve(model)
    for _ in range(50):
        assert resolver.resolve(model) is first

    assert resolver.resolutions == 1
    assert resolver.cached(model.id) is first
    assert model.fields[0].side == FieldSide.FRONT
    assert model.fields[0].confidence == Confidence.HIGH
