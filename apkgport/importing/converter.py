"""HTML to Markdown content conversion.

Converts one field value at a time. Media tags are swapped for
placeholders here; the saved paths are only substituted later by
:func:`resolve_media_placeholders`, once the media processor has
deduplicated the blobs.
"""

from __future__ import annotations

import html as html_lib
import logging
import re
from dataclasses import dataclass, field
from urllib.parse import unquote

from bs4 import BeautifulSoup
from bs4.element import NavigableString, PageElement, PreformattedString, Tag

from apkgport.importing.media.constants import media_type_for
from apkgport.importing.models import (
    ClozeFormat,
    ConversionConfig,
    ConversionResult,
    ConversionStats,
    MediaFormat,
    MediaReference,
    MediaType,
)

logger = logging.getLogger("apkgport.imports")

# Body of a cloze may not open another cloze, so nested clozes resolve inside out.
_CLOZE_BODY = r"(?:(?!\{\{c\d+::).)"
CLOZE_PATTERN = re.compile(
    r"\{\{c(\d+)::(" + _CLOZE_BODY + r"+?)(?:::(" + _CLOZE_BODY + r"*?))?\}\}",
    re.DOTALL,
)
SOUND_PATTERN = re.compile(r"\[sound:([^\]]+)\]")

# Private use sentinels that survive HTML parsing untouched
_CLOZE_OPEN = "\ue000{index}\ue001"
_CLOZE_CLOSE = "\ue002{index}\ue003"
_CLOZE_SPAN = re.compile(r"\ue000(\d+)\ue001(.*?)\ue002\1\ue003", re.DOTALL)
_CODE_SLOT = "\ue010{index}\ue011"
_CODE_SLOT_PATTERN = re.compile(r"\ue010(\d+)\ue011")
PLACEHOLDER_TEMPLATE = "\ue020{index}\ue021"
_LEFTOVER_SENTINELS = re.compile(r"[\ue000\ue002\ue010]\d*[\ue001\ue003\ue011]?")
_SENTINEL_CHARS = re.compile("[\ue000-\ue003\ue010\ue011\ue020\ue021]")

_WHITESPACE = re.compile(r"[ \t\r\n\f]+")
_TRAILING_SPACE = re.compile(r"[ \t]+\n")
_LEADING_SINGLE_SPACE = re.compile(r"\n (?! )")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_PIXELS = re.compile(r"^\s*(\d+)(?:px)?\s*$")

INLINE_MARKERS: dict[str, tuple[str, str]] = {
    "b": ("**", "**"),
    "strong": ("**", "**"),
    "u": ("**", "**"),
    "i": ("*", "*"),
    "em": ("*", "*"),
    "s": ("~~", "~~"),
    "strike": ("~~", "~~"),
    "del": ("~~", "~~"),
    "mark": ("==", "=="),
    "sup": ("^", "^"),
    "sub": ("~", "~"),
}
BLOCK_TAGS = frozenset(
    {"p", "div", "section", "article", "header", "footer", "main", "aside", "figure"}
)
DROPPED_TAGS = frozenset({"script", "style", "head", "title", "meta", "link"})
MEDIA_TAGS = frozenset({"img", "audio", "video", "source"})
HEADING_LEVELS = {f"h{level}": level for level in range(1, 7)}


@dataclass
class _ConversionState:
    """Mutable state for a single ``convert`` call."""

    media_refs: list[MediaReference] = field(default_factory=list)
    preserved_html: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    code_blocks: list[str] = field(default_factory=list)
    clozes: list[tuple[str, str | None]] = field(default_factory=list)
    converted_tags: int = 0
    preserved_tags: int = 0


@dataclass(frozen=True)
class TableShape:
    rows: int
    columns: int
    merged_cells: bool
    nested: bool


def is_external_source(src: str) -> bool:
    """Remote and inline sources never refer to package media."""
    lowered = src.strip().lower()
    return lowered.startswith(("http://", "https://", "data:", "//"))


def media_name_from_src(src: str) -> str:
    """Reduce a ``src`` attribute to the media file name it refers to."""
    name = src.strip().split("?", 1)[0]
    return name.rsplit("/", 1)[-1]


def _wrap(inner: str, opening: str, closing: str) -> str:
    """Wrap ``inner`` in markers, keeping outer whitespace outside them."""
    stripped = inner.strip()
    if not stripped:
        return inner
    lead = inner[: len(inner) - len(inner.lstrip())]
    trail = inner[len(inner.rstrip()) :]
    return f"{lead}{opening}{stripped}{closing}{trail}"


def _block(content: str) -> str:
    content = content.strip("\n")
    if not content.strip():
        return ""
    return f"\n\n{content}\n\n"


def _attr(tag: Tag, name: str) -> str | None:
    value = tag.get(name)
    if value is None:
        return None
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def _span(tag: Tag, name: str) -> int:
    try:
        return max(1, int(_attr(tag, name) or 1))
    except ValueError:
        return 1


def _pixels(value: str | None) -> str | None:
    if value is None:
        return None
    match = _PIXELS.match(value)
    return match.group(1) if match else None


class ContentConverter:
    """Convert field HTML into Markdown under a :class:`ConversionConfig`.

    Conversion is a pure function of the input markup and the config;
    all per-call state lives in a fresh :class:`_ConversionState`.

    Example:
        converter = ContentConverter()
        result = converter.convert("<b>Hi</b> <img src='a.png'>")
        # result.markdown == "**Hi** " + PLACEHOLDER_TEMPLATE.format(index=0)
    """

    def __init__(self, config: ConversionConfig | None = None) -> None:
        self.config = config or ConversionConfig()

    def convert(self, source: str) -> ConversionResult:
        """Convert one field value.

        Args:
            source: Raw field markup

        Returns:
            ConversionResult with Markdown, media references, preserved
            HTML fragments, warnings and statistics
        """
        state = _ConversionState()
        if not source or not source.strip():
            return ConversionResult(
                markdown="",
                stats=ConversionStats(original_length=len(source or "")),
            )

        prepared = self._mark_clozes(_SENTINEL_CHARS.sub("", source), state)
        prepared = SOUND_PATTERN.sub(
            lambda match: (
                f'<audio src="{html_lib.escape(match.group(1).strip(), quote=True)}">'
                "</audio>"
            ),
            prepared,
        )

        soup = BeautifulSoup(prepared, "html.parser")
        markdown = self._render_children(soup, state, in_cell=False)
        markdown = self._cleanup(markdown, state)

        stats = ConversionStats(
            original_length=len(source),
            markdown_length=len(markdown),
            converted_tags=state.converted_tags,
            preserved_tags=state.preserved_tags,
            media_count=len(state.media_refs),
        )
        return ConversionResult(
            markdown=markdown,
            media_refs=state.media_refs,
            preserved_html=state.preserved_html,
            warnings=state.warnings,
            stats=stats,
        )

    def resolve(self, result: ConversionResult, path_map: dict[str, str]) -> str:
        """Substitute saved media paths into a conversion result."""
        return resolve_media_placeholders(
            result.markdown, result.media_refs, path_map, self.config.media_format
        )

    # -- clozes -----------------------------------------------------------

    @staticmethod
    def _mark_clozes(source: str, state: _ConversionState) -> str:
        def replace(match: re.Match[str]) -> str:
            index = len(state.clozes)
            hint = match.group(3)
            state.clozes.append((match.group(1), hint))
            return (
                _CLOZE_OPEN.format(index=index)
                + match.group(2)
                + _CLOZE_CLOSE.format(index=index)
            )

        marked = source
        while True:
            updated = CLOZE_PATTERN.sub(replace, marked)
            if updated == marked:
                return marked
            marked = updated

    def _render_clozes(self, markdown: str, state: _ConversionState) -> str:
        def replace(match: re.Match[str]) -> str:
            number, hint = state.clozes[int(match.group(1))]
            text = match.group(2)
            if hint is not None:
                hint = BeautifulSoup(hint, "html.parser").get_text().strip() or None
            if self.config.cloze_format == ClozeFormat.ANKI:
                if hint:
                    return f"{{{{c{number}::{text}::{hint}}}}}"
                return f"{{{{c{number}::{text}}}}}"
            if hint:
                return f"==c{number}::{text}::{hint}=="
            return f"==c{number}::{text}=="

        previous = None
        while previous != markdown:
            previous = markdown
            markdown = _CLOZE_SPAN.sub(replace, markdown)
        return markdown

    # -- rendering --------------------------------------------------------

    def _render_children(
        self, node: Tag, state: _ConversionState, *, in_cell: bool
    ) -> str:
        return "".join(
            self._render(child, state, in_cell=in_cell) for child in node.children
        )

    def _render(
        self, node: PageElement, state: _ConversionState, *, in_cell: bool
    ) -> str:
        if isinstance(node, PreformattedString):
            return ""
        if isinstance(node, NavigableString):
            text = _WHITESPACE.sub(" ", str(node))
            return text.replace("\xa0", " ")
        if not isinstance(node, Tag):
            return ""

        name = node.name.lower()
        if name in DROPPED_TAGS:
            return ""
        if name in MEDIA_TAGS:
            return self._render_media(node, state)
        if name == "br":
            return "<br>" if in_cell else "\n"
        if name == "hr":
            state.converted_tags += 1
            return "\n\n---\n\n"
        if name == "table":
            if in_cell:
                return node.get_text(" ", strip=True)
            return self._render_table(node, state)
        if name == "pre":
            return self._render_pre(node, state)
        if name in ("ul", "ol"):
            state.converted_tags += 1
            lines = self._render_list(node, state)
            if in_cell:
                return "<br>".join(line.strip() for line in lines)
            return _block("\n".join(lines))
        if name == "code":
            state.converted_tags += 1
            text = node.get_text()
            fence = "``" if "`" in text else "`"
            return _wrap(text, fence, fence)

        inner = self._render_children(node, state, in_cell=in_cell)

        if name in INLINE_MARKERS:
            state.converted_tags += 1
            opening, closing = INLINE_MARKERS[name]
            return _wrap(inner, opening, closing)
        if name == "a":
            return self._render_link(node, inner, state)
        if name in HEADING_LEVELS:
            state.converted_tags += 1
            text = " ".join(inner.split())
            if in_cell:
                return text
            return _block(f"{'#' * HEADING_LEVELS[name]} {text}")
        if name == "blockquote":
            state.converted_tags += 1
            body = _EXCESS_NEWLINES.sub("\n\n", inner.strip())
            quoted = "\n".join(
                f"> {line}" if line else ">" for line in body.split("\n")
            )
            return _block(quoted)
        if name == "li":
            state.converted_tags += 1
            return _block(f"- {inner.strip()}")

        inner = self._apply_style(node, inner, state)
        if name in BLOCK_TAGS and not in_cell:
            return _block(inner)
        if name in BLOCK_TAGS:
            return f"{inner.strip()}<br>" if inner.strip() else ""
        return inner

    def _apply_style(self, node: Tag, inner: str, state: _ConversionState) -> str:
        if not self.config.preserve_styles:
            return inner
        style = (_attr(node, "style") or "").strip()
        color = _attr(node, "color") if node.name == "font" else None
        if color:
            style = f"color: {color};" + (f" {style}" if style else "")
        if not style or not inner.strip():
            return inner
        fragment = (
            f'<span style="{html_lib.escape(style, quote=True)}">{inner.strip()}</span>'
        )
        state.preserved_tags += 1
        state.preserved_html.append(fragment)
        return fragment

    def _render_link(self, node: Tag, inner: str, state: _ConversionState) -> str:
        href = (_attr(node, "href") or "").strip()
        text = inner.strip()
        if not href:
            return inner
        state.converted_tags += 1
        if text.startswith("[") and text.endswith("]"):
            text = text[1:-1]
        return f"[{text or href}]({href})"

    def _render_pre(self, node: Tag, state: _ConversionState) -> str:
        state.converted_tags += 1
        language = ""
        code = node.find("code")
        if isinstance(code, Tag):
            for cls in code.get("class") or []:
                if cls.startswith("language-"):
                    language = cls[len("language-") :]
                    break
        body = node.get_text().strip("\n")
        index = len(state.code_blocks)
        state.code_blocks.append(f"```{language}\n{body}\n```")
        return f"\n\n{_CODE_SLOT.format(index=index)}\n\n"

    def _render_list(self, node: Tag, state: _ConversionState) -> list[str]:
        ordered = node.name.lower() == "ol"
        counter = 1
        if ordered:
            try:
                counter = int(_attr(node, "start") or 1)
            except ValueError:
                counter = 1

        lines: list[str] = []
        for child in node.children:
            if isinstance(child, Tag) and child.name.lower() in ("ul", "ol"):
                lines.extend(f"  {line}" for line in self._render_list(child, state))
                continue
            if isinstance(child, Tag) and child.name.lower() == "li":
                body = self._render_list_item(child, state)
            elif isinstance(child, NavigableString) and not isinstance(
                child, PreformattedString
            ):
                text = " ".join(str(child).split())
                if not text:
                    continue
                body = [text]
            else:
                continue

            marker = f"{counter}. " if ordered else "- "
            counter += 1
            first, *rest = body or [""]
            lines.append(f"{marker}{first}")
            lines.extend(f"  {line}" for line in rest)
        return lines

    def _render_list_item(self, node: Tag, state: _ConversionState) -> list[str]:
        parts: list[str] = []
        for child in node.children:
            if isinstance(child, Tag) and child.name.lower() in ("ul", "ol"):
                state.converted_tags += 1
                parts.append("\n" + "\n".join(self._render_list(child, state)) + "\n")
            else:
                parts.append(self._render(child, state, in_cell=False))
        text = "".join(parts)
        lines = []
        for line in text.split("\n"):
            if not line.strip():
                continue
            # Nested list lines keep their indentation
            lines.append(line.rstrip() if line.startswith("  ") else line.strip())
        return lines

    # -- tables -----------------------------------------------------------

    @staticmethod
    def _table_rows(table: Tag) -> list[list[Tag]]:
        rows = []
        for row in table.find_all("tr"):
            if row.find_parent("table") is not table:
                continue
            rows.append(row.find_all(["td", "th"], recursive=False))
        return rows

    def analyze_table(self, table: Tag) -> TableShape:
        rows = self._table_rows(table)
        columns = max(
            (sum(_span(cell, "colspan") for cell in row) for row in rows), default=0
        )
        merged = any(
            _span(cell, "colspan") > 1 or _span(cell, "rowspan") > 1
            for row in rows
            for cell in row
        )
        return TableShape(
            rows=len(rows),
            columns=columns,
            merged_cells=merged,
            nested=table.find("table") is not None,
        )

    def is_simple_table(self, shape: TableShape) -> bool:
        thresholds = self.config.table_thresholds
        return (
            shape.rows > 0
            and not shape.nested
            and shape.columns <= thresholds.max_columns
            and shape.rows <= thresholds.max_rows
            and (thresholds.allow_merged_cells or not shape.merged_cells)
        )

    def _render_table(self, table: Tag, state: _ConversionState) -> str:
        shape = self.analyze_table(table)
        if self.is_simple_table(shape):
            if self.config.convert_simple_tables:
                return self._pipe_table(table, state, shape)
            return self._preserve_table(table, state)

        if self.config.preserve_complex_tables or shape.rows == 0:
            return self._preserve_table(table, state)

        state.warnings.append(
            f"Complex table ({shape.columns} columns, {shape.rows} rows) "
            "converted to a pipe table; structure may be lost"
        )
        return self._pipe_table(table, state, shape)

    def _preserve_table(self, table: Tag, state: _ConversionState) -> str:
        for media in table.find_all(list(MEDIA_TAGS)):
            if not isinstance(media, Tag) or media.parent is None:
                continue
            if media.name == "source" and media.find_parent(["audio", "video"]):
                continue
            replacement = self._render_media(media, state)
            media.replace_with(NavigableString(replacement))
        fragment = str(table)
        state.preserved_tags += 1
        state.preserved_html.append(fragment)
        return _block(fragment)

    def _pipe_table(
        self, table: Tag, state: _ConversionState, shape: TableShape
    ) -> str:
        state.converted_tags += 1
        rows: list[list[str]] = []
        for row in self._table_rows(table):
            cells: list[str] = []
            for cell in row:
                text = self._render_children(cell, state, in_cell=True)
                text = " ".join(text.replace("\n", "<br>").split())
                if text.endswith("<br>"):
                    text = text[: -len("<br>")].rstrip()
                cells.append(text.replace("|", "\\|"))
                cells.extend("" for _ in range(_span(cell, "colspan") - 1))
            rows.append(cells)

        width = max(shape.columns, 1)
        lines = []
        for index, cells in enumerate(rows):
            padded = cells + [""] * (width - len(cells))
            lines.append("| " + " | ".join(padded) + " |")
            if index == 0:
                lines.append("| " + " | ".join("---" for _ in padded) + " |")
        return _block("\n".join(lines))

    # -- media ------------------------------------------------------------

    def _render_media(self, node: Tag, state: _ConversionState) -> str:
        name = node.name.lower()
        src = _attr(node, "src")
        if not src and name in ("audio", "video"):
            source = node.find("source")
            if isinstance(source, Tag):
                src = _attr(source, "src")
        if not src or not src.strip():
            return ""

        alt = _attr(node, "alt")
        if is_external_source(src):
            if name == "img":
                return f"![{alt or ''}]({src.strip()})"
            return f"[{media_name_from_src(src) or src}]({src.strip()})"

        original = unquote(media_name_from_src(src))
        if name == "audio":
            media_type = media_type_for(original, MediaType.AUDIO)
        elif name == "video":
            media_type = media_type_for(original, MediaType.VIDEO)
        else:
            media_type = media_type_for(original)

        index = len(state.media_refs)
        placeholder = PLACEHOLDER_TEMPLATE.format(index=index)
        attributes = {
            key: _attr(node, key) or ""
            for key in sorted(node.attrs)
            if key not in ("src", "alt", "width", "height")
        }
        state.media_refs.append(
            MediaReference(
                id=f"media-{index}",
                type=media_type,
                original_src=original,
                placeholder=placeholder,
                alt_text=alt,
                width=_pixels(_attr(node, "width")),
                height=_pixels(_attr(node, "height")),
                attributes=attributes,
            )
        )
        return placeholder

    # -- cleanup ----------------------------------------------------------

    def _cleanup(self, markdown: str, state: _ConversionState) -> str:
        markdown = _TRAILING_SPACE.sub("\n", markdown)
        markdown = _LEADING_SINGLE_SPACE.sub("\n", markdown)
        markdown = _EXCESS_NEWLINES.sub("\n\n", markdown).strip()
        markdown = _CODE_SLOT_PATTERN.sub(
            lambda match: state.code_blocks[int(match.group(1))], markdown
        )
        markdown = self._render_clozes(markdown, state)
        return _LEFTOVER_SENTINELS.sub("", markdown)


def render_media_reference(
    ref: MediaReference, path: str, media_format: MediaFormat
) -> str:
    """Render one media reference against its saved path."""
    if media_format == MediaFormat.MARKDOWN:
        label = ref.alt_text or ref.original_src
        return f"![{label}](<{path}>)"
    size = ""
    if ref.type == MediaType.IMAGE and ref.width:
        size = f"|{ref.width}x{ref.height}" if ref.height else f"|{ref.width}"
    return f"![[{path}{size}]]"


def resolve_media_placeholders(
    markdown: str,
    refs: list[MediaReference],
    path_map: dict[str, str],
    media_format: MediaFormat = MediaFormat.WIKILINK,
) -> str:
    """Replace media placeholders with links to saved paths.

    References absent from ``path_map`` are rendered against their
    original source name so the content stays readable.
    """
    for ref in refs:
        path = path_map.get(ref.original_src)
        if path is None:
            logger.debug("Unresolved media reference: %s", ref.original_src)
            path = ref.original_src
        markdown = markdown.replace(
            ref.placeholder, render_media_reference(ref, path, media_format)
        )
    return markdown


__all__ = [
    "CLOZE_PATTERN",
    "PLACEHOLDER_TEMPLATE",
    "ContentConverter",
    "TableShape",
    "is_external_source",
    "media_name_from_src",
    "render_media_reference",
    "resolve_media_placeholders",
]
