"""Change impact analysis for Loom.

Given a changed file, the analyzer answers two questions for the watch loop:
which pages must be rebuilt, and how big is the blast radius. Dependents come
from the build cache's dependency graph. A file the graph has never seen, such
as a newly added fragment or an asset referenced only by pages that failed to
build, falls back to a best-effort textual scan of the HTML and Markdown
files in the changed file's directory and its ancestors.

Key classes:
- ImpactLevel: low, medium or high by dependent count.
- ChangeImpact: Dependents and severity for one changed file.
- RebuildPlan: What an incremental rebuild must do for a batch of events.
- ChangeImpactAnalyzer: Computes impacts and rebuild plans.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from .cache import BuildCache
from .classifier import Action, FileClassifier
from .config import CONFIG_FILENAME, BuildConfig
from .errors import FileSystemError
from .filesystem import LocalFileSystem
from .html_utils import find_elements, find_includes, iter_url_references
from .layouts import LAYOUT_ATTR, LayoutResolver, is_layout_filename
from .logging import get_logger
from .protocols import FileSystem
from .slots import IMPORT_ATTR
from .utils import (
    HTML_SUFFIXES,
    MARKDOWN_SUFFIXES,
    collapse_path,
    is_within,
    resolve_include_path,
)

if TYPE_CHECKING:
    from .watcher import WatchEvent

logger = get_logger("impact")

SCANNED_SUFFIXES = HTML_SUFFIXES + MARKDOWN_SUFFIXES

LOW_IMPACT_MAX = 1
MEDIUM_IMPACT_MAX = 10


class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def impact_level_for(count: int) -> ImpactLevel:
    """Map a dependent count to a severity: 0-1 low, 2-10 medium, more is high."""
    if count <= LOW_IMPACT_MAX:
        return ImpactLevel.LOW
    if count <= MEDIUM_IMPACT_MAX:
        return ImpactLevel.MEDIUM
    return ImpactLevel.HIGH


@dataclass
class ChangeImpact:
    """Impact of one changed file.

    Attributes:
        path: The changed file.
        dependent_pages: Files whose output depends on it, sorted.
        impact_level: Severity by dependent count.
        source: "graph" when taken from the cache, "scan" for the textual fallback.
    """

    path: Path
    dependent_pages: list[Path]
    impact_level: ImpactLevel
    source: str = "graph"


@dataclass
class RebuildPlan:
    """Work derived from a batch of watch events.

    Attributes:
        pages: Pages to recompose.
        copies: Files to copy again.
        removed: Source files that no longer exist.
        impacts: Impact of every event, in event order.
        full_rebuild: True when the change cannot be scoped (config, new layouts).
    """

    pages: set[Path] = field(default_factory=set)
    copies: set[Path] = field(default_factory=set)
    removed: set[Path] = field(default_factory=set)
    impacts: list[ChangeImpact] = field(default_factory=list)
    full_rebuild: bool = False


class ChangeImpactAnalyzer:
    """Computes rebuild sets from the dependency graph.

    Attributes:
        cache: Build cache holding the dependency graph.
        config: Build configuration.
        classifier: Used to keep only emitted pages in rebuild sets.
        resolver: Resolves import references during the textual fallback.
    """

    def __init__(
        self,
        cache: BuildCache,
        config: BuildConfig,
        classifier: FileClassifier | None = None,
        resolver: LayoutResolver | None = None,
        fs: FileSystem | None = None,
    ):
        self.cache = cache
        self.config = config
        self.fs = fs or LocalFileSystem()
        self.classifier = classifier or FileClassifier.from_config(config)
        self.resolver = resolver or LayoutResolver(config, self.fs)

    def get_change_impact(self, path: Path) -> ChangeImpact:
        """Compute the pages affected by a change to ``path``.

        Args:
            path: Absolute path of the changed file.

        Returns:
            ChangeImpact with deduplicated dependents.
        """
        source = "graph"
        if self.cache.has_entry(path):
            dependents = self.cache.get_dependents(path)
        elif self._is_page(path):
            dependents = set()
        else:
            dependents = self._scan_for_references(path)
            source = "scan"
        dependents.discard(path)
        pages = sorted(dependents)
        return ChangeImpact(path, pages, impact_level_for(len(pages)), source)

    def get_rebuild_set(self, events: Iterable[WatchEvent]) -> set[Path]:
        """Pages to recompose for a batch of events."""
        return self.get_rebuild_plan(events).pages

    def get_rebuild_plan(self, events: Iterable[WatchEvent]) -> RebuildPlan:
        """Turn a batch of watch events into a rebuild plan."""
        plan = RebuildPlan()
        root = self.config.source_root
        for event in events:
            path = event.path
            if path.name == CONFIG_FILENAME and path.parent == self.config.project_root.resolve():
                plan.full_rebuild = True
                continue
            if not is_within(path, root):
                continue
            if event.type == "add" and is_layout_filename(path.name):
                # Discovery may now pick this layout for pages the graph never linked to it.
                plan.full_rebuild = True
            impact = self.get_change_impact(path)
            plan.impacts.append(impact)
            for page in impact.dependent_pages:
                if self._is_page(page) and self.fs.is_file(page):
                    plan.pages.add(page)
            if event.type == "remove":
                plan.removed.add(path)
                continue
            action = self.classifier.classify(path.relative_to(root)).action
            if action == Action.EMIT:
                plan.pages.add(path)
            elif action == Action.COPY:
                plan.copies.add(path)
        plan.pages -= plan.removed
        plan.copies -= plan.removed
        return plan

    def _is_page(self, path: Path) -> bool:
        root = self.config.source_root
        if not is_within(path, root):
            return False
        return self.classifier.classify(path.relative_to(root)).action == Action.EMIT

    # ------------------------------------------------------------------
    # Textual fallback

    def _scan_for_references(self, path: Path) -> set[Path]:
        """Find files near ``path`` that reference it, plus their own dependents."""
        root = self.config.source_root
        found: set[Path] = set()
        for directory in self._scan_directories(path, root):
            try:
                children = self.fs.list_dir(directory)
            except FileSystemError as exc:
                logger.debug("Skipping %s during reference scan: %s", directory, exc)
                continue
            for candidate in children:
                if candidate == path or candidate.suffix.lower() not in SCANNED_SUFFIXES:
                    continue
                if not self.fs.is_file(candidate):
                    continue
                if self._references(candidate, path, root):
                    found.add(candidate)
        for referrer in list(found):
            found |= self.cache.get_dependents(referrer)
        return found

    @staticmethod
    def _scan_directories(path: Path, root: Path) -> list[Path]:
        directories: list[Path] = []
        directory = path.parent
        while is_within(directory, root):
            directories.append(directory)
            if directory == root:
                break
            directory = directory.parent
        return directories

    def _references(self, candidate: Path, target: Path, root: Path) -> bool:
        try:
            text = self.fs.read_text(candidate)
        except (OSError, FileSystemError) as exc:
            logger.debug("Could not read %s during reference scan: %s", candidate, exc)
            return False

        directives = find_elements(
            text,
            lambda token: token.has_attr(IMPORT_ATTR) or token.has_attr(LAYOUT_ATTR),
            nested=True,
        )
        for element in directives:
            for attr in (IMPORT_ATTR, LAYOUT_ATTR):
                reference = element.attr(attr)
                if reference and self._resolves_to(reference, candidate, target, root):
                    return True

        for include in find_includes(text):
            if resolve_include_path(include.kind, include.path, candidate, root) == target:
                return True

        for reference in iter_url_references(text):
            if reference.startswith("/"):
                resolved = root / reference.lstrip("/")
            else:
                resolved = candidate.parent / reference
            if collapse_path(resolved) == target:
                return True
        return False

    def _resolves_to(self, reference: str, source: Path, target: Path, root: Path) -> bool:
        resolved, searched = self.resolver.resolve_reference(reference, source, root)
        if resolved is not None:
            return resolved == target
        return target in searched


__all__ = [
    "ChangeImpact",
    "ChangeImpactAnalyzer",
    "ImpactLevel",
    "RebuildPlan",
    "impact_level_for",
]
