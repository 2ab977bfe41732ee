"""Layout and import resolution for Loom.

A page's layout is chosen by a fixed precedence chain; the first step that
yields an existing file wins and every evaluated step is recorded so callers
can report why a layout applied:

1. Explicit directive: ``data-layout`` in the document, or ``layout:`` in
   Markdown frontmatter.
2. Default-layout pattern rules (``pattern=layout``), last match wins.
3. A default-layout filename without a pattern.
4. Discovery: the conventional layout file in the page's directory and each
   ancestor below the source root, then the source root, then the includes
   directory.
5. No layout.

References in steps 1-3 and in ``data-import`` attributes share one resolver:
root-absolute (``/x``), file-relative (``./x``, ``../x`` or any path with a
separator or extension) or a bare short name searched across ancestor
directories and the includes directory.

Key classes:
- ResolutionStep: One evaluated step of the chain.
- LayoutResolution: Outcome with the full resolution chain.
- DefaultLayoutRule: A parsed ``default_layouts`` entry.
- LayoutResolver: Resolves layouts and references, caching discovery walks.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .config import BuildConfig
from .errors import FileSystemError, ValidationError
from .extractors import extract_frontmatter
from .filesystem import LocalFileSystem
from .html_utils import find_first
from .logging import get_logger
from .patterns import GlobPattern
from .protocols import FileSystem
from .utils import collapse_path, is_markdown, is_within, relative_posix

logger = get_logger("layouts")

LAYOUT_ATTR = "data-layout"
LAYOUT_EXTENSIONS = (".html", ".htm")
FRAGMENT_EXTENSIONS = (".html", ".htm", ".md")

_NO_LAYOUT_VALUES = {"false", "none", "off", "no"}


def is_layout_filename(name: str) -> bool:
    """Return True for conventional layout names such as ``_layout.html``."""
    lowered = name.lower()
    return lowered.startswith("_") and lowered.endswith(("layout.html", "layout.htm"))


@dataclass
class ResolutionStep:
    """A single evaluated step of layout resolution.

    Attributes:
        step: Position in the precedence chain (1-5).
        type: explicit, pattern, filename, discovery or none.
        applied: Whether this step decided the layout.
        result: Layout reference or path the step produced, if any.
        note: Extra diagnostic detail.
    """

    step: int
    type: str
    applied: bool
    result: str | None = None
    note: str | None = None


@dataclass
class LayoutResolution:
    """Outcome of resolving a page's layout.

    Attributes:
        layout_path: Absolute layout path, or None for no layout.
        source: Step type that decided, "none", or "error" after an I/O failure.
        resolution_chain: Every evaluated step in order.
        error: Description of an I/O failure that degraded resolution.
    """

    layout_path: Path | None
    source: str
    resolution_chain: list[ResolutionStep] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class DefaultLayoutRule:
    """A ``default_layouts`` entry: ``pattern=layout`` or a bare layout."""

    layout: str
    pattern: GlobPattern | None = None

    @classmethod
    def parse(cls, entry: str, case_sensitive: bool = False) -> DefaultLayoutRule:
        """Parse a configuration entry.

        Raises:
            ValidationError: If the entry is empty or the pattern is invalid.
        """
        pattern_text, sep, layout = entry.partition("=")
        if not sep:
            layout, pattern_text = pattern_text, ""
        layout = layout.strip()
        if not layout:
            raise ValidationError(f"Default layout entry has no layout: {entry!r}")
        if not pattern_text.strip():
            return cls(layout=layout)
        return cls(
            layout=layout,
            pattern=GlobPattern.compile(pattern_text.strip(), case_sensitive=case_sensitive),
        )


class LayoutResolver:
    """Resolves layouts and fragment references for pages.

    Attributes:
        config: Build configuration.
        fs: Filesystem used for every lookup.
    """

    def __init__(self, config: BuildConfig, fs: FileSystem | None = None):
        self.config = config
        self.fs = fs or LocalFileSystem()
        rules = [
            DefaultLayoutRule.parse(entry, config.case_sensitive)
            for entry in config.default_layouts
        ]
        self.pattern_rules = [rule for rule in rules if rule.pattern is not None]
        fallbacks = [rule for rule in rules if rule.pattern is None]
        self.fallback_rule = fallbacks[-1] if fallbacks else None
        self._discovery_cache: dict[tuple[Path, Path], Path | None] = {}
        self._lock = threading.Lock()

    def clear_cache(self) -> None:
        with self._lock:
            self._discovery_cache.clear()

    # ------------------------------------------------------------------
    # Layout resolution

    def resolve(
        self, file: Path, content: str, source_root: Path | None = None
    ) -> LayoutResolution:
        """Resolve the layout for a page.

        Args:
            file: Absolute page path.
            content: Raw page content.
            source_root: Source root; defaults to the configured one.

        Returns:
            LayoutResolution. Never raises for a missing layout.
        """
        root = source_root or self.config.source_root
        chain: list[ResolutionStep] = []

        directive = self.explicit_directive(file, content)
        if directive is not None:
            if directive.strip().lower() in _NO_LAYOUT_VALUES:
                chain.append(ResolutionStep(1, "explicit", True, None, "layout disabled"))
                return LayoutResolution(None, "explicit", chain)
            found = self._resolve_step(1, "explicit", directive, file, root, chain)
            if found is not None:
                return LayoutResolution(found, "explicit", chain)

        rel = relative_posix(file, root)
        rule = self._match_pattern_rule(rel)
        if rule is not None:
            found = self._resolve_step(2, "pattern", rule.layout, file, root, chain)
            if found is not None:
                return LayoutResolution(found, "pattern", chain)

        if self.fallback_rule is not None:
            found = self._resolve_step(
                3, "filename", self.fallback_rule.layout, file, root, chain
            )
            if found is not None:
                return LayoutResolution(found, "filename", chain)

        try:
            discovered = self.discover(file, root)
        except (OSError, FileSystemError) as exc:
            note = f"layout discovery failed: {exc}"
            logger.warning("%s: %s", file, note)
            chain.append(ResolutionStep(4, "discovery", False, None, note))
            chain.append(ResolutionStep(5, "none", True))
            return LayoutResolution(None, "error", chain, error=note)
        if discovered is not None:
            chain.append(ResolutionStep(4, "discovery", True, str(discovered)))
            return LayoutResolution(discovered, "discovery", chain)
        chain.append(ResolutionStep(4, "discovery", False, None, "no layout file found"))
        chain.append(ResolutionStep(5, "none", True))
        return LayoutResolution(None, "none", chain)

    def explicit_directive(self, file: Path, content: str) -> str | None:
        """Return the layout named by the document itself, if any."""
        if is_markdown(file):
            frontmatter, _ = extract_frontmatter(content)
            value = frontmatter.get("layout")
            if value is False:
                return "false"
            return str(value) if value else None
        element = find_first(content, lambda token: token.has_attr(LAYOUT_ATTR))
        if element is None:
            return None
        value = element.attr(LAYOUT_ATTR)
        return value.strip() if value and value.strip() else None

    def _match_pattern_rule(self, rel: str) -> DefaultLayoutRule | None:
        matched: DefaultLayoutRule | None = None
        for rule in self.pattern_rules:
            if rule.pattern is not None and rule.pattern.matches(rel):
                matched = None if rule.pattern.negated else rule
        return matched

    def _resolve_step(
        self,
        step: int,
        step_type: str,
        reference: str,
        file: Path,
        root: Path,
        chain: list[ResolutionStep],
    ) -> Path | None:
        found, searched = self.resolve_reference(
            reference, file, root, extensions=LAYOUT_EXTENSIONS
        )
        if found is not None:
            chain.append(ResolutionStep(step, step_type, True, str(found)))
            return found
        note = f"layout {reference!r} not found ({len(searched)} candidates searched)"
        logger.warning("%s: %s", file, note)
        chain.append(ResolutionStep(step, step_type, False, reference, note))
        return None

    # ------------------------------------------------------------------
    # Discovery

    def discover(self, file: Path, source_root: Path) -> Path | None:
        """Find the nearest conventional layout for a file.

        Results are cached per (file, source_root).

        Raises:
            OSError: If the filesystem fails for a reason other than absence.
        """
        key = (file, source_root)
        with self._lock:
            if key in self._discovery_cache:
                return self._discovery_cache[key]
        try:
            found = self._walk_for_layout(file, source_root)
        except (OSError, FileSystemError):
            with self._lock:
                self._discovery_cache[key] = None
            raise
        with self._lock:
            self._discovery_cache[key] = found
        return found

    def _layout_names(self) -> list[str]:
        name = self.config.layout_filename
        stem = PurePosixPath(name).stem
        names = [name]
        for ext in LAYOUT_EXTENSIONS:
            candidate = f"{stem}{ext}"
            if candidate not in names:
                names.append(candidate)
        return names

    def _walk_for_layout(self, file: Path, source_root: Path) -> Path | None:
        names = self._layout_names()
        directory = file.parent
        while directory != source_root and is_within(directory, source_root):
            for name in names:
                candidate = directory / name
                if candidate != file and self.fs.is_file(candidate):
                    return candidate
            directory = directory.parent
        for name in names:
            candidate = source_root / name
            if candidate != file and self.fs.is_file(candidate):
                return candidate
        includes = source_root / self.config.includes_dir
        for name in [*names, "layout.html", "layout.htm"]:
            candidate = includes / name
            if candidate != file and self.fs.is_file(candidate):
                return candidate
        return None

    # ------------------------------------------------------------------
    # Reference resolution

    def resolve_reference(
        self,
        reference: str,
        from_file: Path,
        source_root: Path | None = None,
        extensions: Sequence[str] = FRAGMENT_EXTENSIONS,
    ) -> tuple[Path | None, list[Path]]:
        """Resolve a layout or import reference to a file.

        Args:
            reference: Reference as written (``/x.html``, ``./x.html``, ``card``...).
            from_file: File containing the reference.
            source_root: Source root; defaults to the configured one.
            extensions: Extensions tried for references without one.

        Returns:
            Tuple of (resolved path or None, candidates searched in order).
        """
        root = source_root or self.config.source_root
        ref = reference.strip()
        searched: list[Path] = []
        if not ref:
            return None, searched

        if ref.startswith("/"):
            bases = [root / ref.lstrip("/")]
        elif ref.startswith(("./", "../")):
            bases = [from_file.parent / ref]
        elif "/" in ref or PurePosixPath(ref).suffix:
            bases = [from_file.parent / ref, root / ref, root / self.config.includes_dir / ref]
        else:
            short_names = self.short_name_candidates(ref, from_file, root, extensions)
            return self._first_existing(short_names, root)

        candidates: list[Path] = []
        for base in bases:
            candidates.append(base)
            if not PurePosixPath(ref).suffix:
                candidates.extend(base.with_name(base.name + ext) for ext in extensions)
        return self._first_existing(candidates, root)

    def short_name_candidates(
        self,
        name: str,
        from_file: Path,
        source_root: Path,
        extensions: Sequence[str] = LAYOUT_EXTENSIONS,
    ) -> list[Path]:
        """List short-name candidates in search order.

        Each directory from the file's own up to the source root is tried with
        the variants ``name``, ``_name``, ``name.layout`` and ``_name.layout``
        for every extension, followed by the includes directory.
        """
        bare = name.lstrip("_")
        variants = [name, f"_{bare}", f"{name}.layout", f"_{bare}.layout"]
        unique_variants = list(dict.fromkeys(variants))

        directories: list[Path] = []
        directory = from_file.parent
        while is_within(directory, source_root):
            directories.append(directory)
            if directory == source_root:
                break
            directory = directory.parent
        if source_root not in directories:
            directories.append(source_root)
        directories.append(source_root / self.config.includes_dir)

        candidates: list[Path] = []
        for directory in directories:
            for variant in unique_variants:
                for ext in extensions:
                    candidates.append(directory / f"{variant}{ext}")
        return candidates

    def _first_existing(self, candidates: list[Path], root: Path) -> tuple[Path | None, list[Path]]:
        searched: list[Path] = []
        for candidate in candidates:
            resolved = collapse_path(candidate)
            if resolved in searched:
                continue
            searched.append(resolved)
            if not is_within(resolved, root):
                continue
            if self.fs.is_file(resolved):
                return resolved, searched
        return None, searched

