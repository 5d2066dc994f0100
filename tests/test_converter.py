from __future__ import annotations

import pytest

from apkgport.importing.converter import (
    PLACEHOLDER_TEMPLATE,
    ContentConverter,
    resolve_media_placeholders,
)
from apkgport.importing.models import (
    ClozeFormat,
    ConversionConfig,
    MediaFormat,
    MediaType,
    TableThresholds,
)

SIMPLE_TABLE = (
    "<table><tr><th>Organelle</th><th>Role</th></tr>"
    "<tr><td>Nucleus</td><td>Stores DNA</td></tr>"
    "<tr><td>Ribosome</td><td>Makes protein</td></tr></table>"
)
WIDE_TABLE = (
    "<table><tr>"
    + "".join(f"<td>{i}</td>" for i in range(5))
    + "</tr><tr>"
    + "".join(f"<td>{i * 2}</td>" for i in range(5))
    + "</tr></table>"
)


def test_inline_formatting() -> None:
    result = ContentConverter().convert(
        "<b>Bold</b> <i>italic</i> <u>under</u> <s>gone</s> H<sub>2</sub>O "
        "x<sup>2</sup> <mark>hot</mark>"
    )

    assert result.markdown == (
        "**Bold** *italic* **under** ~~gone~~ H~2~O x^2^ ==hot=="
    )


def test_blocks_headings_and_line_breaks() -> None:
    result = ContentConverter().convert(
        "<h2>Cell</h2><div>First line<br>second line</div><hr><p>After</p>"
    )

    assert result.markdown == "## Cell\n\nFirst line\nsecond line\n\n---\n\nAfter"


def test_lists_nest_with_two_spaces() -> None:
    result = ContentConverter().convert(
        "<ul><li>one</li><li>two<ul><li>nested</li></ul></li></ul>"
        "<ol><li>first</li><li>second</li></ol>"
    )

    assert "- one\n- two\n  - nested" in result.markdown
    assert "1. first\n2. second" in result.markdown


def test_links_and_code() -> None:
    result = ContentConverter().convert(
        '<a href="https://example.org">docs</a> use <code>print()</code>'
        '<pre><code class="language-python">x = 1\n</code></pre>'
    )

    assert "[docs](https://example.org) use `print()`" in result.markdown
    assert result.markdown.endswith("```python\nx = 1\n```")


def test_scripts_styles_and_comments_are_dropped() -> None:
    result = ContentConverter().convert(
        "<style>.x{}</style><script>alert(1)</script><!-- hidden -->Visible"
    )

    assert result.markdown == "Visible"


def test_multi_cloze_keeps_numbering() -> None:
    highlight = ContentConverter().convert("{{c1::a}} {{c2::b}}")
    anki = ContentConverter(ConversionConfig(cloze_format=ClozeFormat.ANKI)).convert(
        "{{c1::a}} {{c2::b}}"
    )

    assert highlight.markdown == "==c1::a== ==c2::b=="
    assert anki.markdown == "{{c1::a}} {{c2::b}}"


def test_cloze_with_hint_and_inline_html() -> None:
    result = ContentConverter().convert("{{c3::<b>ATP</b>::energy}} molecule")

    assert result.markdown == "==c3::**ATP**::energy== molecule"


def test_conversion_is_deterministic() -> None:
    source = (
        "<div>{{c1::Mito}} <img src='cell.png' width='120'></div>" + SIMPLE_TABLE
    )
    converter = ContentConverter()

    first = converter.convert(source)
    second = ContentConverter().convert(source)

    assert first.markdown == second.markdown
    assert first.media_refs == second.media_refs
    assert converter.convert(source).markdown == first.markdown


def test_simple_table_becomes_pipe_table() -> None:
    result = ContentConverter().convert(SIMPLE_TABLE)

    assert result.markdown == (
        "| Organelle | Role |\n"
        "| --- | --- |\n"
        "| Nucleus | Stores DNA |\n"
        "| Ribosome | Makes protein |"
    )
    assert result.preserved_html == []


def test_wide_table_is_preserved_verbatim() -> None:
    result = ContentConverter().convert(WIDE_TABLE)

    assert result.markdown.startswith("<table>")
    assert result.markdown == result.preserved_html[0]
    assert result.stats.preserved_tags == 1
    assert result.warnings == []


def test_merged_cells_make_a_table_complex() -> None:
    source = (
        '<table><tr><td colspan="2">Both</td></tr><tr><td>a</td><td>b</td></tr>'
        "</table>"
    )

    strict = ContentConverter().convert(source)
    relaxed = ContentConverter(
        ConversionConfig(table_thresholds=TableThresholds(allow_merged_cells=True))
    ).convert(source)

    assert strict.markdown.startswith("<table>")
    assert relaxed.markdown.startswith("| Both |  |")


def test_complex_table_converted_with_warning_when_not_preserved() -> None:
    result = ContentConverter(
        ConversionConfig(preserve_complex_tables=False)
    ).convert(WIDE_TABLE)

    assert result.markdown.startswith("| 0 | 1 | 2 | 3 | 4 |")
    assert len(result.warnings) == 1


def test_simple_table_kept_when_conversion_disabled() -> None:
    result = ContentConverter(
        ConversionConfig(convert_simple_tables=False)
    ).convert(SIMPLE_TABLE)

    assert result.markdown.startswith("<table>")


def test_media_tags_become_placeholders() -> None:
    result = ContentConverter().convert(
        '<img src="cell%20image.png" alt="Cell" width="200px" height="100">'
        " [sound:hello.mp3] <video src='clip.mp4'></video>"
    )

    assert result.markdown == " ".join(
        PLACEHOLDER_TEMPLATE.format(index=index) for index in range(3)
    )
    image, sound, video = result.media_refs
    assert image.original_src == "cell image.png"
    assert image.type == MediaType.IMAGE
    assert (image.width, image.height, image.alt_text) == ("200", "100", "Cell")
    assert sound.original_src == "hello.mp3"
    assert sound.type == MediaType.AUDIO
    assert video.type == MediaType.VIDEO
    assert result.stats.media_count == 3


def test_remote_images_are_not_media_references() -> None:
    result = ContentConverter().convert(
        '<img src="https://example.org/a.png" alt="A">'
    )

    assert result.markdown == "![A](https://example.org/a.png)"
    assert result.media_refs == []


def test_media_inside_preserved_table_is_still_referenced() -> None:
    source = WIDE_TABLE.replace("<td>0</td>", '<td><img src="x.png"></td>')

    result = ContentConverter().convert(source)

    assert PLACEHOLDER_TEMPLATE.format(index=0) in result.markdown
    assert result.media_refs[0].original_src == "x.png"


@pytest.mark.parametrize(
    ("media_format", "expected"),
    [
        (MediaFormat.WIKILINK, "See ![[[APKG] Bio/cell_image.png|200x100]]"),
        (MediaFormat.MARKDOWN, "See ![Cell](<[APKG] Bio/cell_image.png>)"),
    ],
)
def test_resolve_media_placeholders(media_format, expected) -> None:
    result = ContentConverter().convert(
        'See <img src="cell image.png" alt="Cell" width="200" height="100">'
    )

    resolved = resolve_media_placeholders(
        result.markdown,
        result.media_refs,
        {"cell image.png": "[APKG] Bio/cell_image.png"},
        media_format,
    )

    assert resolved == expected


def test_unresolved_reference_falls_back_to_original_name() -> None:
    converter = ContentConverter()
    result = converter.convert('<img src="gone.png">')

    assert converter.resolve(result, {}) == "![[gone.png]]"


def test_literal_placeholder_text_is_not_resolved() -> None:
    converter = ContentConverter()
    result = converter.convert("Note __MEDIA_0__ <img src='q.png'>")

    resolved = converter.resolve(result, {"q.png": "[APKG] Bio/q.png"})

    assert resolved == "Note __MEDIA_0__ ![[[APKG] Bio/q.png]]"


def test_stray_private_use_characters_are_dropped() -> None:
    result = ContentConverter().convert("a\ue0000\ue001b\ue020 <img src='q.png'>")

    assert result.markdown == "a0b " + PLACEHOLDER_TEMPLATE.format(index=0)
    assert len(result.media_refs) == 1


def test_styles_preserved_only_when_enabled() -> None:
    source = '<span style="color: red">Alert</span> <font color="blue">calm</font>'

    plain = ContentConverter().convert(source)
    styled = ContentConverter(ConversionConfig(preserve_styles=True)).convert(source)

    assert plain.markdown == "Alert calm"
    assert styled.markdown == (
        '<span style="color: red">Alert</span> '
        '<span style="color: blue;">calm</span>'
    )
    assert len(styled.preserved_html) == 2


def test_empty_input() -> None:
    result = ContentConverter().convert("   ")

    assert result.markdown == ""
    assert result.media_refs == []
