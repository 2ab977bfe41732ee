"""Frontmatter and metadata extraction for Loom.

Markdown pages and fragments may start with a YAML frontmatter block. The
frontmatter selects a layout (``layout:``) and supplies head metadata such as
the title and description, which is turned into head elements that merge into
the layout's ``<head>`` like any other head slot content.

Key functions:
- extract_frontmatter: Split YAML frontmatter from the body.
- extract_title: Find a page title from frontmatter, the first heading or the filename.
- synthesize_head: Build head elements from frontmatter values.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from .html_utils import escape_html
from .utils import titleize

FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n|$)", re.DOTALL)

_MARKDOWN_HEADING_RE = re.compile(r"^#\s+(.+?)\s*#*\s*$", re.MULTILINE)
_HTML_HEADING_RE = re.compile(r"<h1\b[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")


def extract_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Extract YAML frontmatter from content.

    Args:
        text: Raw file content.

    Returns:
        Tuple of (frontmatter dict, remaining content).
    """
    match = FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1)) or {}
        if not isinstance(data, dict):
            return {}, text
        return data, text[match.end() :]
    except yaml.YAMLError:
        return {}, text


def extract_title(frontmatter: dict[str, Any], body: str, path: Path) -> str:
    """Find the title for a page.

    Looks at the frontmatter ``title`` first, then a level-1 heading in either
    Markdown or HTML, falling back to titleizing the filename.
    """
    title = frontmatter.get("title")
    if isinstance(title, str) and title.strip():
        return title.strip()
    match = _MARKDOWN_HEADING_RE.search(body)
    if match:
        return match.group(1).strip()
    match = _HTML_HEADING_RE.search(body)
    if match:
        text = _TAG_RE.sub("", match.group(1)).strip()
        if text:
            return text
    return titleize(path.name)


def synthesize_head(frontmatter: dict[str, Any]) -> str:
    """Build head elements from frontmatter.

    Supported keys:
        title: Becomes ``<title>``.
        description: Becomes ``<meta name="description">``.
        meta: Mapping of name to content, each becoming a ``<meta>``.
        head: Raw HTML appended verbatim.

    Args:
        frontmatter: Parsed frontmatter.

    Returns:
        Head markup, one element per line; empty when nothing applies.
    """
    lines: list[str] = []
    title = frontmatter.get("title")
    if isinstance(title, str) and title.strip():
        lines.append(f"<title>{escape_html(title.strip())}</title>")
    description = frontmatter.get("description")
    if isinstance(description, str) and description.strip():
        lines.append(
            f'<meta name="description" content="{escape_html(description.strip())}">'
        )
    meta = frontmatter.get("meta")
    if isinstance(meta, dict):
        for name, content in meta.items():
            if content is None:
                continue
            lines.append(
                f'<meta name="{escape_html(str(name))}" content="{escape_html(str(content))}">'
            )
    raw = frontmatter.get("head")
    if isinstance(raw, str) and raw.strip():
        lines.append(raw.strip())
    return "\n".join(lines)
