"""Head merging for Loom.

Head content contributed by pages and fragments is never pasted verbatim into
a layout. Instead each top-level element is merged into the layout's ``<head>``
by a deduplication key derived from its tag and identifying attribute:

- ``<title>``, ``<base>`` and ``<meta>`` (keyed by name, property, http-equiv
  or charset): the later (page) version replaces the earlier one in place.
- ``<link>`` (keyed by rel and href) and ``<script src>`` / ``<style href>``:
  the first registered version is kept.
- Inline ``<script>`` and ``<style>`` blocks, comments and elements carrying
  ``data-allow-duplicate`` have no key and are always kept.

Key classes:
- HeadElement: A top-level head element with its deduplication key.
- HeadMerger: Merges head fragments in order.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .html_utils import Element, find_first, has_tag, top_level_nodes

ALLOW_DUPLICATE_ATTR = "data-allow-duplicate"

# Tags whose later occurrence replaces the earlier one.
LAST_WINS_TAGS = frozenset({"title", "meta", "base"})


@dataclass(frozen=True)
class HeadElement:
    """A top-level element (or comment) inside ``<head>``.

    Attributes:
        tag: Lowercase tag name; empty for comments and stray text.
        html: Original markup of the element.
        key: Deduplication key, or None when the element is never deduplicated.
    """

    tag: str
    html: str
    key: str | None


def dedup_key(element: Element) -> str | None:
    """Compute the deduplication key of a head element."""
    if element.has_attr(ALLOW_DUPLICATE_ATTR):
        return None
    tag = element.tag
    if tag in ("title", "base"):
        return tag
    if tag == "meta":
        for attr in ("name", "property", "http-equiv"):
            value = element.attr(attr)
            if value:
                return f"meta:{attr}:{value.strip().lower()}"
        if element.has_attr("charset"):
            return "meta:charset"
        return None
    if tag == "link":
        href = element.attr("href")
        if not href:
            return None
        rel = (element.attr("rel") or "").strip().lower()
        return f"link:{rel}:{href.strip()}"
    if tag == "script":
        src = element.attr("src")
        return f"script:{src.strip()}" if src else None
    if tag == "style":
        href = element.attr("href")
        return f"style:{href.strip()}" if href else None
    return None


def parse_head(html: str) -> list[HeadElement]:
    """Split head markup into HeadElements, dropping whitespace between them."""
    elements: list[HeadElement] = []
    for node in top_level_nodes(html):
        if isinstance(node, Element):
            elements.append(HeadElement(node.tag, node.outer(html), dedup_key(node)))
        elif node.strip():
            elements.append(HeadElement("", node.strip(), None))
    return elements


class HeadMerger:
    """Merges head fragments in registration order.

    The first fragment is typically the layout's head and later fragments are
    contributed by fragments and the page.
    """

    def merge(self, fragments: Iterable[str]) -> list[HeadElement]:
        """Merge head fragments into one ordered element list.

        Args:
            fragments: Head markup in order of registration.

        Returns:
            Deduplicated elements in document order.
        """
        merged: list[HeadElement] = []
        index: dict[str, int] = {}
        for fragment in fragments:
            for element in parse_head(fragment):
                if element.key is None:
                    merged.append(element)
                    continue
                position = index.get(element.key)
                if position is None:
                    index[element.key] = len(merged)
                    merged.append(element)
                elif element.tag in LAST_WINS_TAGS:
                    merged[position] = element
        return merged

    def merge_html(self, fragments: Iterable[str]) -> str:
        return "\n".join(element.html for element in self.merge(fragments))

    def merge_into_document(
        self, document: str, head_content: str, document_wins: bool = False
    ) -> tuple[str, list[HeadElement]] | None:
        """Merge head content into a document's ``<head>``.

        A missing ``<head>`` is created right after the ``<html>`` start tag.

        Args:
            document: Full or partial HTML document.
            head_content: Head markup to merge after the existing head.
            document_wins: Merge ``head_content`` before the existing head
                instead, so the document's own title and meta win ties.

        Returns:
            Tuple of (updated document, merged elements), or None if the
            document has neither ``<head>`` nor ``<html>``.
        """
        head = find_first(document, has_tag("head"))
        if head is not None:
            existing = head.inner(document)
            order = [head_content, existing] if document_wins else [existing, head_content]
            elements = self.merge(order)
            body = "\n".join(element.html for element in elements)
            rebuilt = f"{head.start_tag(document)}\n{body}\n</head>"
            return document[: head.start] + rebuilt + document[head.end :], elements
        html = find_first(document, has_tag("html"))
        if html is None:
            return None
        elements = self.merge([head_content])
        body = "\n".join(element.html for element in elements)
        insert_at = html.inner_start
        rebuilt = f"\n<head>\n{body}\n</head>"
        return document[:insert_at] + rebuilt + document[insert_at:], elements
