"""HTML utility functions for Loom.

This module turns HTML source into a flat stream of start, end and text tokens
that carry their source offsets. Elements are located by walking that stream
with an explicit depth counter, so nested elements with the same tag name close
at the right place and edits can be spliced back into the original text without
reserializing the whole document.

Following the Single Responsibility Principle, this module focuses
exclusively on HTML string inspection and manipulation.

Functions:
    tokenize: Split HTML into offset-carrying tokens.
    find_elements: Locate balanced elements matching a predicate.
    find_first: Locate the first matching element.
    top_level_nodes: Split a fragment into sibling elements and raw text.
    strip_attributes: Remove attributes from every start tag.
    build_start_tag: Serialize a start tag from a tag name and attributes.
    iter_url_references: Collect local URL references (href, src, CSS url()).
    find_includes: Locate server-side include comments.
    merge_attributes: Merge a page element's attributes onto its layout element.
    replace_start_tag: Swap an element's start tag for new attributes.
    rewrite_links: Rewrite href values in every start tag.
    escape_html: Escape special HTML characters in a string.
"""

from __future__ import annotations

import html as _html
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from html.parser import HTMLParser

START = "start"
END = "end"
TEXT = "text"

VOID_ELEMENTS = frozenset(
    {
        "area",
        "base",
        "br",
        "col",
        "embed",
        "hr",
        "img",
        "input",
        "link",
        "meta",
        "param",
        "source",
        "track",
        "wbr",
    }
)

_CSS_URL_RE = re.compile(r"""url\(\s*["']?([^"')]+)["']?\s*\)""")
_SSI_INCLUDE_RE = re.compile(
    r"""<!--\s*#include\s+(virtual|file)\s*=\s*"([^"]+)"\s*-->""", re.IGNORECASE
)

# URL prefixes that never point at a local source file
_URL_SKIP_PREFIXES = (
    "http://",
    "https://",
    "//",
    "mailto:",
    "tel:",
    "#",
    "javascript:",
    "data:",
)


@dataclass(frozen=True)
class HtmlToken:
    """A token in the HTML stream.

    Attributes:
        kind: One of START, END or TEXT.
        tag: Lowercase tag name; empty for text.
        attrs: Attribute pairs in source order; values are unescaped.
        start: Offset of the first character in the source.
        end: Offset just past the last character in the source.
        self_closing: True for ``<tag />`` start tags.
    """

    kind: str
    tag: str
    attrs: tuple[tuple[str, str | None], ...]
    start: int
    end: int
    self_closing: bool = False

    def attr(self, name: str, default: str | None = None) -> str | None:
        for key, value in self.attrs:
            if key == name:
                return value if value is not None else ""
        return default

    def has_attr(self, name: str) -> bool:
        return any(key == name for key, _ in self.attrs)

    @property
    def is_void(self) -> bool:
        return self.self_closing or self.tag in VOID_ELEMENTS


@dataclass(frozen=True)
class Element:
    """A balanced element located in an HTML string.

    Attributes:
        tag: Lowercase tag name.
        attrs: Attribute pairs from the start tag.
        start: Offset of ``<`` of the start tag.
        end: Offset just past the end tag (or the start tag for void elements).
        inner_start: Offset of the first character of the content.
        inner_end: Offset just past the last character of the content.
    """

    tag: str
    attrs: tuple[tuple[str, str | None], ...]
    start: int
    end: int
    inner_start: int
    inner_end: int

    def attr(self, name: str, default: str | None = None) -> str | None:
        for key, value in self.attrs:
            if key == name:
                return value if value is not None else ""
        return default

    def has_attr(self, name: str) -> bool:
        return any(key == name for key, _ in self.attrs)

    def outer(self, source: str) -> str:
        return source[self.start : self.end]

    def inner(self, source: str) -> str:
        return source[self.inner_start : self.inner_end]

    def start_tag(self, source: str) -> str:
        return source[self.start : self.inner_start]

    def end_tag(self, source: str) -> str:
        return source[self.inner_end : self.end]


class _TokenCollector(HTMLParser):
    """HTMLParser subclass that records tag tokens with absolute offsets."""

    def __init__(self, source: str):
        super().__init__(convert_charrefs=False)
        self.source = source
        self.tags: list[HtmlToken] = []
        self._line_offsets = [0]
        for index, char in enumerate(source):
            if char == "\n":
                self._line_offsets.append(index + 1)

    def _offset(self) -> int:
        line, column = self.getpos()
        return self._line_offsets[line - 1] + column

    def _start(self, tag: str, attrs: list, self_closing: bool) -> None:
        start = self._offset()
        raw = self.get_starttag_text() or ""
        self.tags.append(
            HtmlToken(START, tag, tuple(attrs), start, start + len(raw), self_closing)
        )

    def handle_starttag(self, tag, attrs):
        self._start(tag, attrs, False)

    def handle_startendtag(self, tag, attrs):
        self._start(tag, attrs, True)

    def handle_endtag(self, tag):
        start = self._offset()
        close = self.source.find(">", start)
        end = len(self.source) if close < 0 else close + 1
        self.tags.append(HtmlToken(END, tag, (), start, end))


def tokenize(source: str) -> list[HtmlToken]:
    """Split HTML into start, end and text tokens covering the whole source.

    Comments, doctypes and character data become TEXT tokens holding the raw
    source slice, so joining every token's slice reproduces the input.

    Args:
        source: HTML text.

    Returns:
        Tokens in document order.
    """
    collector = _TokenCollector(source)
    collector.feed(source)
    collector.close()

    tokens: list[HtmlToken] = []
    cursor = 0
    for tag in collector.tags:
        if tag.start < cursor:
            continue
        if tag.start > cursor:
            tokens.append(HtmlToken(TEXT, "", (), cursor, tag.start))
        tokens.append(tag)
        cursor = tag.end
    if cursor < len(source):
        tokens.append(HtmlToken(TEXT, "", (), cursor, len(source)))
    return tokens


def _close_index(tokens: list[HtmlToken], open_index: int) -> int | None:
    """Return the index of the end token balancing tokens[open_index]."""
    opener = tokens[open_index]
    depth = 1
    for index in range(open_index + 1, len(tokens)):
        token = tokens[index]
        if token.tag != opener.tag:
            continue
        if token.kind == START and not token.is_void:
            depth += 1
        elif token.kind == END:
            depth -= 1
            if depth == 0:
                return index
    return None


def _element_at(tokens: list[HtmlToken], index: int) -> tuple[Element, int]:
    """Build the element opened at tokens[index]; also return the closing index."""
    opener = tokens[index]
    close = None if opener.is_void else _close_index(tokens, index)
    if close is None:
        element = Element(
            opener.tag, opener.attrs, opener.start, opener.end, opener.end, opener.end
        )
        return element, index
    closer = tokens[close]
    element = Element(
        opener.tag, opener.attrs, opener.start, closer.end, opener.end, closer.start
    )
    return element, close


def find_elements(
    source: str,
    predicate: Callable[[HtmlToken], bool],
    nested: bool = False,
) -> list[Element]:
    """Locate balanced elements whose start tag satisfies a predicate.

    Args:
        source: HTML text.
        predicate: Called with each START token.
        nested: Also return matches inside an earlier match when True.

    Returns:
        Elements in document order.
    """
    tokens = tokenize(source)
    found: list[Element] = []
    skip_until = -1
    for index, token in enumerate(tokens):
        if token.kind != START or index <= skip_until:
            continue
        if not predicate(token):
            continue
        element, close = _element_at(tokens, index)
        found.append(element)
        if not nested:
            skip_until = close
    return found


def find_first(source: str, predicate: Callable[[HtmlToken], bool]) -> Element | None:
    """Return the first element in document order matching the predicate."""
    matches = find_elements(source, predicate)
    return matches[0] if matches else None


def has_tag(tag: str) -> Callable[[HtmlToken], bool]:
    return lambda token: token.tag == tag


def has_attr(name: str) -> Callable[[HtmlToken], bool]:
    return lambda token: token.has_attr(name)


def top_level_nodes(source: str) -> list[Element | str]:
    """Split an HTML fragment into its sibling nodes.

    Args:
        source: HTML fragment such as the contents of ``<head>``.

    Returns:
        Elements for top-level tags and raw strings for text between them.
        Stray end tags are kept as raw strings.
    """
    tokens = tokenize(source)
    nodes: list[Element | str] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.kind == START:
            element, close = _element_at(tokens, index)
            nodes.append(element)
            index = close + 1
            continue
        nodes.append(source[token.start : token.end])
        index += 1
    return nodes


def build_start_tag(
    tag: str, attrs: Iterable[tuple[str, str | None]], self_closing: bool = False
) -> str:
    """Serialize a start tag.

    Args:
        tag: Tag name.
        attrs: Attribute pairs; None values render as boolean attributes.
        self_closing: Emit ``/>`` instead of ``>``.

    Returns:
        Start tag markup.
    """
    parts = [tag]
    for key, value in attrs:
        if value is None:
            parts.append(key)
        else:
            parts.append(f'{key}="{_html.escape(value, quote=True)}"')
    closing = " />" if self_closing else ">"
    return f"<{' '.join(parts)}{closing}"


def strip_attributes(source: str, names: Iterable[str]) -> str:
    """Remove the named attributes from every start tag in the source.

    Start tags that carry none of the attributes are left byte-for-byte intact.
    """
    targets = set(names)
    pieces: list[str] = []
    cursor = 0
    for token in tokenize(source):
        if token.kind != START or not any(key in targets for key, _ in token.attrs):
            continue
        kept = [(key, value) for key, value in token.attrs if key not in targets]
        pieces.append(source[cursor : token.start])
        pieces.append(build_start_tag(token.tag, kept, token.self_closing))
        cursor = token.end
    pieces.append(source[cursor:])
    return "".join(pieces)


def without_attribute(source: str, element: Element, name: str) -> str:
    """Return the element's outer HTML with one attribute removed from its start tag."""
    kept = [(key, value) for key, value in element.attrs if key != name]
    start_tag = element.start_tag(source)
    self_closing = start_tag.rstrip().endswith("/>")
    rebuilt = build_start_tag(element.tag, kept, self_closing)
    return rebuilt + source[element.inner_start : element.end]


@dataclass(frozen=True)
class SsiInclude:
    """A ``<!--#include ... -->`` directive.

    Attributes:
        kind: "virtual" (source-root relative) or "file" (host relative).
        path: Path as written.
        start: Offset of the comment in the source.
        end: Offset just past the comment.
    """

    kind: str
    path: str
    start: int
    end: int


def find_includes(source: str) -> list[SsiInclude]:
    """Locate server-side include comments in document order."""
    return [
        SsiInclude(match.group(1).lower(), match.group(2), match.start(), match.end())
        for match in _SSI_INCLUDE_RE.finditer(source)
    ]


def merge_attributes(
    host: Iterable[tuple[str, str | None]],
    page: Iterable[tuple[str, str | None]],
    drop: Iterable[str] = (),
) -> list[tuple[str, str | None]]:
    """Merge a page element's attributes onto the matching layout element.

    The host ``id`` wins, ``class`` values are unioned in order and every
    other page attribute replaces the host's.

    Args:
        host: Attributes of the layout element.
        page: Attributes of the page element.
        drop: Attribute names left out of the result.

    Returns:
        Merged attribute pairs, host order first.
    """
    dropped = set(drop)
    merged: dict[str, str | None] = {
        key: value for key, value in host if key not in dropped
    }
    for key, value in page:
        if key in dropped:
            continue
        if key == "id":
            if not merged.get("id"):
                merged["id"] = value
        elif key == "class":
            classes = (merged.get("class") or "").split() + (value or "").split()
            merged["class"] = " ".join(dict.fromkeys(classes))
        else:
            merged[key] = value
    return list(merged.items())


def replace_start_tag(
    source: str, element: Element, attrs: Iterable[tuple[str, str | None]]
) -> str:
    """Return the source with the element's start tag rebuilt from ``attrs``."""
    rebuilt = build_start_tag(element.tag, attrs)
    return source[: element.start] + rebuilt + source[element.inner_start :]


def rewrite_links(source: str, transform: Callable[[str], str]) -> str:
    """Apply ``transform`` to every href value.

    Start tags whose href is unchanged are left byte-for-byte intact.
    """
    pieces: list[str] = []
    cursor = 0
    for token in tokenize(source):
        if token.kind != START or not token.has_attr("href"):
            continue
        href = token.attr("href") or ""
        rewritten = transform(href)
        if rewritten == href:
            continue
        attrs = [(key, rewritten if key == "href" else value) for key, value in token.attrs]
        pieces.append(source[cursor : token.start])
        pieces.append(build_start_tag(token.tag, attrs, token.self_closing))
        cursor = token.end
    pieces.append(source[cursor:])
    return "".join(pieces)


def is_local_url(url: str) -> bool:
    """Return True for references that may point at a file in the source tree."""
    stripped = url.strip()
    if not stripped:
        return False
    return not stripped.lower().startswith(_URL_SKIP_PREFIXES)


def iter_url_references(source: str) -> list[str]:
    """Collect local href/src attribute values and CSS ``url()`` targets.

    Query strings and fragments are dropped. The result is deduplicated in
    first-seen order.
    """
    found: list[str] = []
    for token in tokenize(source):
        if token.kind != START:
            continue
        for key in ("href", "src"):
            value = token.attr(key)
            if value and is_local_url(value):
                found.append(value)
    for match in _CSS_URL_RE.finditer(source):
        value = match.group(1)
        if is_local_url(value):
            found.append(value)
    cleaned: list[str] = []
    for value in found:
        value = value.strip().split("#", 1)[0].split("?", 1)[0]
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


def escape_html(text: str) -> str:
    """Escape special HTML characters in a string.

    Converts the following characters to their HTML entity equivalents:
    - & becomes &amp;
    - < becomes &lt;
    - > becomes &gt;
    - " becomes &quot;

    Args:
        text: The string to escape.

    Returns:
        The escaped string, safe for inclusion in HTML.

    Examples:
        >>> escape_html('<script>alert("XSS")</script>')
        '&lt;script&gt;alert(&quot;XSS&quot;)&lt;/script&gt;'

        >>> escape_html('Tom & Jerry')
        'Tom &amp; Jerry'
    """
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )
