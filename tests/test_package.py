from __future__ import annotations

import json
import zipfile
from pathlib import Path

import pytest
import zstandard
from sqlalchemy import create_engine, text

from conftest import (
    BASIC_MODEL_ID,
    CLOZE_MODEL_ID,
    DECK_ID,
    build_inline_database,
    default_decks,
    default_models,
    note,
    pb_bytes,
    png_bytes,
)

from apkgport.importing.models import FormatVariant, MediaEncoding
from apkgport.importing.sources import (
    CorruptArchiveError,
    MissingDatabaseError,
    PackageError,
    UnsupportedFormatError,
)
from apkgport.importing.sources.database import (
    LAYOUT_INLINE,
    CollectionDatabase,
)
from apkgport.importing.sources.package import MediaBundle, PackageSource
from apkgport.importing.sources.protobuf import (
    ProtobufDecodeError,
    decode_message,
    get_int,
    get_string,
)

SAMPLE_NOTES = [
    note(10, ["What is DNA?", "A molecule", "Textbook"], tags=" bio genetics "),
    note(11, ["What is RNA?", "Another molecule", ""], cards=2),
    note(
        12,
        ["{{c1::Mitochondria}} is the {{c2::powerhouse}}", "Extra"],
        model_id=CLOZE_MODEL_ID,
    ),
]


@pytest.mark.parametrize("variant", ["anki2", "anki21", "anki21b"])
def test_counts_match_fixture_for_every_variant(make_apkg, variant: str) -> None:
    path = make_apkg(variant, notes=SAMPLE_NOTES)

    package = PackageSource(path).fetch()
    try:
        assert package.metadata.variant == FormatVariant(variant)
        assert package.metadata.total_notes == 3
        assert package.metadata.total_cards == 4
        assert [item.id for item in package.notes] == [10, 11, 12]
        assert set(package.models) == {BASIC_MODEL_ID, CLOZE_MODEL_ID}
        assert package.decks[DECK_ID].name == "Biology"
        assert package.decks[DECK_ID].description == "Cells and more"
    finally:
        package.media.close()


@pytest.mark.parametrize("variant", ["anki21", "anki21b"])
def test_newer_database_wins_over_legacy_stub(make_apkg, variant: str) -> None:
    path = make_apkg(variant, notes=SAMPLE_NOTES[:1])

    package = PackageSource(path).fetch()
    package.media.close()

    assert package.metadata.db_filename == f"collection.{variant}"
    assert package.notes[0].values[0] == "What is DNA?"


def test_inline_models_are_normalized(make_apkg) -> None:
    package = PackageSource(make_apkg("anki21", notes=SAMPLE_NOTES)).fetch()
    package.media.close()

    basic = package.models[BASIC_MODEL_ID]
    assert [field.name for field in basic.fields] == ["Question", "Answer", "Source"]
    assert basic.templates[0].front == "{{Question}}"
    assert "{{Answer}}" in basic.templates[0].back
    assert basic.css.startswith(".card")
    assert not basic.is_cloze
    assert package.models[CLOZE_MODEL_ID].is_cloze


def test_table_layout_models_and_decks(make_apkg) -> None:
    decks = default_decks() + [
        {"id": 3001, "name": "Science::Chemistry", "desc": ""},
        {"id": 3002, "name": "Filtered", "dynamic": True},
    ]
    package = PackageSource(
        make_apkg("anki21b", notes=SAMPLE_NOTES, decks=decks)
    ).fetch()
    package.media.close()

    assert package.metadata.compression == "zstd"
    assert package.metadata.schema_version == 18
    cloze = package.models[CLOZE_MODEL_ID]
    assert cloze.is_cloze
    assert [template.front for template in cloze.templates] == ["{{cloze:Text}}"]
    assert package.decks[3001].name == "Science::Chemistry"
    assert package.decks[3002].dynamic
    assert not package.decks[DECK_ID].dynamic


def test_notes_carry_tags_and_source_deck(make_apkg) -> None:
    package = PackageSource(make_apkg("anki21", notes=SAMPLE_NOTES)).fetch()
    package.media.close()

    first = package.notes[0]
    assert first.tag_list == ["bio", "genetics"]
    assert first.guid == "guid-10"
    assert first.deck_id == DECK_ID
    assert package.primary_deck is not None
    assert package.primary_deck.name == "Biology"


@pytest.mark.parametrize(
    ("variant", "encoding"),
    [("anki21", MediaEncoding.JSON), ("anki21b", MediaEncoding.PROTOBUF)],
)
def test_media_index_is_read_lazily(make_apkg, variant, encoding) -> None:
    image = png_bytes((200, 10, 10))
    path = make_apkg(
        variant,
        notes=SAMPLE_NOTES[:1],
        media={"cell.png": image, "sound file.mp3": b"ID3audio"},
    )

    package = PackageSource(path).fetch()
    try:
        assert package.metadata.media_encoding == encoding
        assert sorted(package.media.names()) == ["cell.png", "sound file.mp3"]
        assert "cell.png" in package.media
        assert package.media.read("cell.png") == image
        assert package.media.read("sound%20file.mp3") == b"ID3audio"
        assert package.media.read("absent.png") is None
    finally:
        package.media.close()


def test_package_source_accepts_bytes(make_apkg) -> None:
    data = make_apkg("anki2", notes=SAMPLE_NOTES).read_bytes()
    source = PackageSource(data)

    assert source.can_fetch()
    package = source.fetch()
    package.media.close()
    assert package.metadata.variant == FormatVariant.ANKI2


def test_corrupt_archive_is_fatal(tmp_path: Path) -> None:
    path = tmp_path / "broken.apkg"
    path.write_bytes(b"this is not a zip file")

    with pytest.raises(CorruptArchiveError) as excinfo:
        PackageSource(path).fetch()
    assert excinfo.value.code == "CORRUPT_ARCHIVE"
    assert isinstance(excinfo.value, PackageError)


def test_missing_file_is_corrupt_archive(tmp_path: Path) -> None:
    source = PackageSource(tmp_path / "nope.apkg")
    assert not source.can_fetch()
    with pytest.raises(CorruptArchiveError):
        source.fetch()


def test_missing_database_is_fatal(tmp_path: Path) -> None:
    path = tmp_path / "empty.apkg"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("media", "{}")

    with pytest.raises(MissingDatabaseError) as excinfo:
        PackageSource(path).fetch()
    assert excinfo.value.code == "MISSING_DATABASE"


def test_non_sqlite_database_is_unsupported(tmp_path: Path) -> None:
    path = tmp_path / "garbage.apkg"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("collection.anki21", b"not a database at all")
        archive.writestr("media", "{}")

    with pytest.raises(UnsupportedFormatError):
        PackageSource(path).fetch()


def test_unknown_schema_is_unsupported(tmp_path: Path) -> None:
    db_path = tmp_path / "other.db"
    engine = create_engine(f"sqlite:///{db_path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE things (id INTEGER PRIMARY KEY)"))
    engine.dispose()

    path = tmp_path / "other.apkg"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("collection.anki2", db_path.read_bytes())

    with pytest.raises(UnsupportedFormatError) as excinfo:
        PackageSource(path).fetch()
    assert excinfo.value.code == "UNSUPPORTED_FORMAT"


def test_corrupt_compressed_database(tmp_path: Path) -> None:
    path = tmp_path / "bad-zstd.apkg"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("collection.anki21b", b"\x28\xb5\x2f\xfdgarbage")

    with pytest.raises(PackageError):
        PackageSource(path).fetch()


def test_invalid_media_index(tmp_path: Path) -> None:
    database = build_inline_database(
        tmp_path / "c.db", default_models(), default_decks(), []
    )
    path = tmp_path / "bad-media.apkg"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("collection.anki21", database)
        archive.writestr("media", json.dumps(["not", "a", "mapping"]))

    with pytest.raises(CorruptArchiveError):
        PackageSource(path).fetch()


def test_collection_database_layouts(tmp_path: Path) -> None:
    database = build_inline_database(
        tmp_path / "inline.db", default_models(), default_decks(), [note(1, ["a", "b"])]
    )
    with CollectionDatabase.open(database) as db:
        assert db.detect_layout() == LAYOUT_INLINE
        assert db.has_table("notes")
        assert db.scalar("SELECT COUNT(*) FROM notes") == 1
        rows = db.query("SELECT id, flds FROM notes")
        assert rows == [{"id": 1, "flds": "a\x1fb"}]
        spilled = db.path
    assert not spilled.exists()

    with pytest.raises(UnsupportedFormatError):
        CollectionDatabase.open(b"PK\x03\x04 not sqlite")


def test_collection_database_query_errors_are_wrapped(tmp_path: Path) -> None:
    database = build_inline_database(
        tmp_path / "q.db", default_models(), default_decks(), []
    )
    with CollectionDatabase.open(database) as db:
        with pytest.raises(UnsupportedFormatError):
            db.query("SELECT nothing FROM nowhere")


def test_protobuf_reader() -> None:
    payload = pb_bytes(1, "front") + b"\x10\x96\x01" + pb_bytes(3, pb_bytes(1, "x"))
    message = decode_message(payload)

    assert get_string(message, 1) == "front"
    assert get_int(message, 2) == 150
    assert get_int(message, 9, 7) == 7
    with pytest.raises(ProtobufDecodeError):
        decode_message(b"\x0a\x05ab")


def test_media_bundle_from_mapping() -> None:
    bundle = MediaBundle.from_mapping({"a.png": b"1"})
    assert len(bundle) == 1
    assert bundle.read("a.png") == b"1"
    assert bundle.read("b.png") is None


def test_compressed_media_member_is_decompressed(tmp_path: Path) -> None:
    blob = b"compressed bytes"
    path = tmp_path / "m.zip"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("0", zstandard.ZstdCompressor().compress(blob))
    bundle = MediaBundle(zipfile.ZipFile(path), {"x.bin": "0"}, compressed=True)
    try:
        assert bundle.read("x.bin") == blob
    finally:
        bundle.close()
