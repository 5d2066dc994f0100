from __future__ import annotations

import itertools
import json
import zipfile
from collections.abc import Callable
from io import BytesIO
from pathlib import Path
from typing import Any

import pytest
import zstandard
from PIL import Image as PilImage
from sqlalchemy import create_engine, text
from sqlalchemy.pool import NullPool

BASIC_MODEL_ID = 1001
CLOZE_MODEL_ID = 1002
DECK_ID = 2001


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def pb_int(number: int, value: int) -> bytes:
    return _varint(number << 3) + _varint(value)


def pb_bytes(number: int, value: bytes | str) -> bytes:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return _varint((number << 3) | 2) + _varint(len(value)) + value


def png_bytes(color: tuple[int, int, int], size: tuple[int, int] = (32, 24)) -> bytes:
    img = PilImage.new("RGB", size, color)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def default_models() -> list[dict[str, Any]]:
    return [
        {
            "id": BASIC_MODEL_ID,
            "name": "Basic",
            "type": 0,
            "fields": ["Question", "Answer", "Source"],
            "templates": [
                (
                    "Card 1",
                    "{{Question}}",
                    "{{FrontSide}}<hr id=answer>{{Question}} {{Answer}}",
                )
            ],
            "css": ".card { font-family: arial; }",
        },
        {
            "id": CLOZE_MODEL_ID,
            "name": "Cloze",
            "type": 1,
            "fields": ["Text", "Extra"],
            "templates": [
                (
                    "Cloze",
                    "{{cloze:Text}}",
                    "{{cloze:Text}}<br>{{#Extra}}{{Extra}}{{/Extra}}",
                )
            ],
            "css": "",
        },
    ]


def default_decks() -> list[dict[str, Any]]:
    return [
        {"id": 1, "name": "Default", "desc": ""},
        {"id": DECK_ID, "name": "Biology", "desc": "Cells and more"},
    ]


def note(
    note_id: int,
    fields: list[str],
    *,
    model_id: int = BASIC_MODEL_ID,
    deck_id: int = DECK_ID,
    tags: str = "",
    guid: str | None = None,
    cards: int = 1,
) -> dict[str, Any]:
    return {
        "id": note_id,
        "guid": guid if guid is not None else f"guid-{note_id}",
        "mid": model_id,
        "fields": fields,
        "tags": tags,
        "did": deck_id,
        "cards": cards,
    }


def _execute(path: Path, statements: list[tuple[str, list[dict[str, Any]]]]) -> bytes:
    engine = create_engine(f"sqlite:///{path}", poolclass=NullPool)
    with engine.begin() as conn:
        for statement, rows in statements:
            if rows:
                conn.execute(text(statement), rows)
            else:
                conn.execute(text(statement))
    engine.dispose()
    return path.read_bytes()


def _note_statements(
    notes: list[dict[str, Any]],
) -> list[tuple[str, list[dict[str, Any]]]]:
    card_ids = itertools.count(1)
    note_rows = [
        {
            "id": item["id"],
            "guid": item["guid"],
            "mid": item["mid"],
            "mod": 1700000000,
            "tags": item["tags"],
            "flds": "\x1f".join(item["fields"]),
            "sfld": item["fields"][0] if item["fields"] else "",
        }
        for item in notes
    ]
    card_rows = [
        {"id": next(card_ids), "nid": item["id"], "did": item["did"], "ord": ordinal}
        for item in notes
        for ordinal in range(item["cards"])
    ]
    statements: list[tuple[str, list[dict[str, Any]]]] = [
        (
            "CREATE TABLE notes (id INTEGER PRIMARY KEY, guid TEXT, mid INTEGER, "
            "mod INTEGER, tags TEXT, flds TEXT, sfld TEXT)",
            [],
        ),
        (
            "CREATE TABLE cards (id INTEGER PRIMARY KEY, nid INTEGER, did INTEGER, "
            "ord INTEGER)",
            [],
        ),
    ]
    if note_rows:
        statements.append(
            (
                "INSERT INTO notes VALUES "
                "(:id, :guid, :mid, :mod, :tags, :flds, :sfld)",
                note_rows,
            )
        )
    if card_rows:
        statements.append(
            ("INSERT INTO cards VALUES (:id, :nid, :did, :ord)", card_rows)
        )
    return statements


def build_inline_database(
    path: Path,
    models: list[dict[str, Any]],
    decks: list[dict[str, Any]],
    notes: list[dict[str, Any]],
) -> bytes:
    """Collection with models and decks as JSON blobs on the col row."""
    models_json = {
        str(model["id"]): {
            "id": model["id"],
            "name": model["name"],
            "type": model["type"],
            "css": model["css"],
            "sortf": 0,
            "flds": [
                {"name": name, "ord": ordinal, "font": "Arial", "size": 20}
                for ordinal, name in enumerate(model["fields"])
            ],
            "tmpls": [
                {"name": name, "ord": ordinal, "qfmt": front, "afmt": back}
                for ordinal, (name, front, back) in enumerate(model["templates"])
            ],
        }
        for model in models
    }
    decks_json = {
        str(deck["id"]): {
            "id": deck["id"],
            "name": deck["name"],
            "desc": deck.get("desc", ""),
            "dyn": 1 if deck.get("dynamic") else 0,
        }
        for deck in decks
    }
    statements = [
        (
            "CREATE TABLE col (id INTEGER PRIMARY KEY, crt INTEGER, mod INTEGER, "
            "ver INTEGER, models TEXT, decks TEXT)",
            [],
        ),
        (
            "INSERT INTO col VALUES (1, :crt, :mod, :ver, :models, :decks)",
            [
                {
                    "crt": 1600000000,
                    "mod": 1700000000,
                    "ver": 11,
                    "models": json.dumps(models_json),
                    "decks": json.dumps(decks_json),
                }
            ],
        ),
    ]
    return _execute(path, statements + _note_statements(notes))


def build_table_database(
    path: Path,
    models: list[dict[str, Any]],
    decks: list[dict[str, Any]],
    notes: list[dict[str, Any]],
) -> bytes:
    """Collection with dedicated notetype/field/template/deck tables."""
    notetype_rows = [
        {
            "id": model["id"],
            "name": model["name"],
            "config": pb_int(1, model["type"]) + pb_bytes(3, model["css"]),
        }
        for model in models
    ]
    field_rows = [
        {
            "ntid": model["id"],
            "ord": ordinal,
            "name": name,
            "config": pb_bytes(3, "Arial") + pb_int(4, 20),
        }
        for model in models
        for ordinal, name in enumerate(model["fields"])
    ]
    template_rows = [
        {
            "ntid": model["id"],
            "ord": ordinal,
            "name": name,
            "config": pb_bytes(1, front) + pb_bytes(2, back),
        }
        for model in models
        for ordinal, (name, front, back) in enumerate(model["templates"])
    ]
    deck_rows = []
    for deck in decks:
        if deck.get("dynamic"):
            kind = pb_bytes(2, pb_int(1, 1))
        else:
            kind = pb_bytes(1, pb_bytes(4, deck.get("desc", "")))
        deck_rows.append(
            {"id": deck["id"], "name": deck["name"].replace("::", "\x1f"), "kind": kind}
        )

    statements = [
        (
            "CREATE TABLE col (id INTEGER PRIMARY KEY, crt INTEGER, mod INTEGER, "
            "ver INTEGER)",
            [],
        ),
        ("INSERT INTO col VALUES (1, 1600000000, 1700000000, 18)", []),
        (
            "CREATE TABLE notetypes (id INTEGER PRIMARY KEY, name TEXT, config BLOB)",
            [],
        ),
        ("CREATE TABLE fields (ntid INTEGER, ord INTEGER, name TEXT, config BLOB)", []),
        (
            "CREATE TABLE templates (ntid INTEGER, ord INTEGER, name TEXT, "
            "config BLOB)",
            [],
        ),
        ("CREATE TABLE decks (id INTEGER PRIMARY KEY, name TEXT, kind BLOB)", []),
        ("INSERT INTO notetypes VALUES (:id, :name, :config)", notetype_rows),
        ("INSERT INTO fields VALUES (:ntid, :ord, :name, :config)", field_rows),
        ("INSERT INTO templates VALUES (:ntid, :ord, :name, :config)", template_rows),
        ("INSERT INTO decks VALUES (:id, :name, :kind)", deck_rows),
    ]
    return _execute(path, statements + _note_statements(notes))


@pytest.fixture
def make_apkg(tmp_path: Path) -> Callable[..., Path]:
    """Return a factory writing real package files for every variant."""
    counter = itertools.count()

    def _make(
        variant: str = "anki21",
        *,
        notes: list[dict[str, Any]] | None = None,
        models: list[dict[str, Any]] | None = None,
        decks: list[dict[str, Any]] | None = None,
        media: dict[str, bytes] | None = None,
        legacy_stub: bool = True,
    ) -> Path:
        index = next(counter)
        workdir = tmp_path / f"build-{index}"
        workdir.mkdir()
        models = models if models is not None else default_models()
        decks = decks if decks is not None else default_decks()
        notes = notes if notes is not None else []
        media = media or {}

        package_path = tmp_path / f"package-{index}.apkg"
        compressor = zstandard.ZstdCompressor()
        with zipfile.ZipFile(package_path, "w") as archive:
            if variant == "anki21b":
                database = build_table_database(
                    workdir / "collection.db", models, decks, notes
                )
                archive.writestr("collection.anki21b", compressor.compress(database))
                entries = b"".join(
                    pb_bytes(1, pb_bytes(1, name) + pb_int(2, len(blob)))
                    for name, blob in media.items()
                )
                archive.writestr("media", compressor.compress(entries))
                for position, blob in enumerate(media.values()):
                    archive.writestr(str(position), compressor.compress(blob))
            else:
                database = build_inline_database(
                    workdir / "collection.db", models, decks, notes
                )
                archive.writestr(f"collection.{variant}", database)
                archive.writestr(
                    "media",
                    json.dumps({str(i): name for i, name in enumerate(media)}),
                )
                for position, blob in enumerate(media.values()):
                    archive.writestr(str(position), blob)

            if legacy_stub and variant != "anki2":
                stub = build_inline_database(
                    workdir / "stub.db",
                    default_models(),
                    default_decks(),
                    [note(1, ["Please update to the latest Anki version", ""])],
                )
                archive.writestr("collection.anki2", stub)
        return package_path

    return _make
