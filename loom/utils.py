"""Utility functions for Loom.

This module contains small path and string helpers used throughout the codebase.

Key functions:
    titleize: Convert filenames to human-readable titles.
    is_markdown: Check if a path is a Markdown file.
    is_html: Check if a path is an HTML file.
    is_within: Check whether a path lies inside a directory.
    relative_posix: Express a path relative to a root in posix form.
    output_path_for: Map a page or copied file to its output location.
    pretty_url: Rewrite a link to an HTML page as a directory URL.
    resolve_include_path: Resolve a server-side include directive.
    ensure_clean_dir: Ensure a directory exists and is empty.
    collapse_path: Normalize ``.`` and ``..`` segments lexically.
"""

from __future__ import annotations

import posixpath
import re
import shutil
from pathlib import Path

MARKDOWN_SUFFIXES = (".md", ".markdown")
HTML_SUFFIXES = (".html", ".htm")

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*:", re.IGNORECASE)


def titleize(filename: str) -> str:
    """Convert a filename to a human-readable title.

    Removes date prefixes (YYYY-MM-DD), replaces hyphens and underscores
    with spaces, and capitalizes each word.

    Args:
        filename: Filename with or without extension.

    Returns:
        Human-readable title string.

    Examples:
        >>> titleize("2024-01-15-hello-world.md")
        'Hello World'

        >>> titleize("getting-started.md")
        'Getting Started'
    """
    base = Path(filename).stem
    if "-" in base:
        parts = base.split("-")
        if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
            base = "-".join(parts[3:])
    words = re.split(r"[\s\-_]+", base)
    return " ".join(word.capitalize() for word in words if word) or "Untitled"


def is_markdown(path: Path) -> bool:
    return path.suffix.lower() in MARKDOWN_SUFFIXES


def is_html(path: Path) -> bool:
    return path.suffix.lower() in HTML_SUFFIXES


def is_within(path: Path, root: Path) -> bool:
    """Return True if ``path`` equals ``root`` or lies beneath it."""
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def relative_posix(path: Path, root: Path) -> str:
    """Return ``path`` relative to ``root`` in posix form.

    Paths outside the root are returned as absolute posix strings.
    """
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()


def output_path_for(
    source: Path, source_root: Path, output_root: Path, emit: bool, pretty: bool = False
) -> Path:
    """Map a source file to its output location.

    Emitted Markdown pages are written as ``.html`` next to where the source
    would land; every other file keeps its relative path. With ``pretty``,
    emitted pages other than ``index`` are written as ``name/index.html``.

    Args:
        source: Absolute source path.
        source_root: Root of the source tree.
        output_root: Root of the output tree.
        emit: Whether the file is composed (True) or copied (False).
        pretty: Use directory-style output for emitted pages.

    Returns:
        Absolute output path.
    """
    rel = source.relative_to(source_root)
    if emit and is_markdown(source):
        rel = rel.with_suffix(".html")
    if emit and pretty and is_html(rel) and rel.stem.lower() != "index":
        rel = rel.with_suffix("") / "index.html"
    return output_root / rel


def pretty_url(href: str, page: Path, source_root: Path) -> str:
    """Rewrite a local link to an HTML page as a directory URL.

    External links, fragment-only links and links to anything other than
    ``.html``/``.htm`` are returned unchanged. Query strings and fragments
    are kept.

    Examples:
        >>> pretty_url("about.html#team", Path("/s/index.html"), Path("/s"))
        '/about/#team'
        >>> pretty_url("../index.html", Path("/s/blog/post.html"), Path("/s"))
        '/'
    """
    stripped = href.strip()
    if not stripped or stripped.startswith(("#", "//")) or _SCHEME_RE.match(stripped):
        return href
    cut = len(stripped)
    for marker in ("?", "#"):
        index = stripped.find(marker)
        if index != -1:
            cut = min(cut, index)
    path, suffix = stripped[:cut], stripped[cut:]
    if not path.lower().endswith(HTML_SUFFIXES):
        return href
    if not path.startswith("/"):
        page_dir = relative_posix(page.parent, source_root)
        page_dir = "" if page_dir == "." else page_dir
        path = posixpath.join("/", page_dir, path)
    path = posixpath.normpath(path)
    if not path.startswith("/"):
        path = "/" + path
    base = path.rsplit(".", 1)[0]
    if base in ("/index", "/"):
        return "/" + suffix
    if base.endswith("/index"):
        return base[: -len("index")] + suffix
    return base + "/" + suffix


def resolve_include_path(kind: str, value: str, host: Path, source_root: Path) -> Path | None:
    """Resolve an ``<!--#include virtual|file="..." -->`` target.

    ``virtual`` paths are relative to the source root; ``file`` paths are
    relative to the including file unless they start with ``/``.

    Returns:
        The collapsed path, or None when it escapes the source root.
    """
    value = value.strip()
    if kind == "virtual" or value.startswith("/"):
        candidate = source_root / value.lstrip("/")
    else:
        candidate = host.parent / value
    candidate = collapse_path(candidate)
    return candidate if is_within(candidate, source_root) else None


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    If the directory exists, it and all its contents are removed,
    then it is recreated as an empty directory.

    Args:
        path: Path to the directory to clean.
    """
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def collapse_path(path: Path) -> Path:
    """Collapse ``.`` and ``..`` segments without touching the filesystem."""
    parts: list[str] = []
    for part in path.parts:
        if part == "..":
            if len(parts) > 1:
                parts.pop()
        elif part != ".":
            parts.append(part)
    return Path(*parts) if parts else path
