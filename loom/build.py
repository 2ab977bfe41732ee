"""Site building functionality for Loom.

This module drives full and incremental builds. Every file under the source
root is classified; EMIT pages are composed and written, COPY files are copied
verbatim, and everything else is left out of the output. Each successful page
records its dependencies in the build cache, so later builds skip pages whose
inputs have not changed.

Key classes:
- BuildError: A page failure with file context.
- BuildResult: Outcome of a build pass.
- SiteBuilder: Holds the per-project components and runs builds.

Key functions:
- build_site: Build a project once.
- rebuild_changed: Rebuild only what a batch of watch events affects.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .assets import AssetCopier
from .cache import BuildCache
from .classifier import Action, FileClassifier
from .composer import Composer
from .config import BuildConfig
from .errors import FileSystemError, LoomError
from .filesystem import LocalFileSystem
from .html_utils import find_elements, find_includes
from .impact import ChangeImpactAnalyzer
from .layouts import LAYOUT_ATTR, LAYOUT_EXTENSIONS, LayoutResolver, is_layout_filename
from .logging import get_logger
from .protocols import FileSystem, MarkdownRenderer
from .slots import IMPORT_ATTR
from .utils import (
    ensure_clean_dir,
    is_html,
    is_within,
    output_path_for,
    relative_posix,
    resolve_include_path,
)

if TYPE_CHECKING:
    from .watcher import WatchEvent

logger = get_logger("build")

SKIPPED_DIR_NAMES = frozenset({".git", "node_modules", "__pycache__"})


class BuildError(Exception):
    """Error during site build with file context.

    Attributes:
        source_path: Path to the source file that caused the error.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}")


@dataclass
class BuildResult:
    """Result of a site build operation.

    Attributes:
        pages: Pages composed and written.
        copied: Files copied verbatim.
        skipped: Pages and copies skipped because their output was fresh.
        removed: Output files deleted for removed sources.
        errors: One BuildError per failed page.
        cancelled: Pages left unbuilt because the pass was superseded.
        warnings: Recoverable problems reported while composing.
        output_dir: Directory where the site was built.
    """

    output_dir: Path
    pages: list[Path] = field(default_factory=list)
    copied: list[Path] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)
    errors: list[BuildError] = field(default_factory=list)
    cancelled: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def failed(self, fail_on: str | None = None) -> bool:
        """Return True if the build fails at the given severity.

        Page errors always fail a build; with ``fail_on="warning"`` recoverable
        warnings such as missing fragments fail it too.
        """
        if self.errors:
            return True
        return fail_on == "warning" and bool(self.warnings)


class SiteBuilder:
    """Builds one project, keeping its cache and resolvers between passes.

    Attributes:
        config: Build configuration.
        fs: Filesystem used for reads.
        classifier: Routes each source file.
        resolver: Layout and reference resolver shared with the composer.
        composer: Composes pages.
        cache: Dependency-aware build cache.
        analyzer: Computes rebuild sets for watch events.
    """

    def __init__(
        self,
        config: BuildConfig,
        renderer: MarkdownRenderer | None = None,
        fs: FileSystem | None = None,
    ):
        self.config = config
        self.fs = fs or LocalFileSystem()
        self.classifier = FileClassifier.from_config(config)
        self.resolver = LayoutResolver(config, self.fs)
        self.composer = Composer(config, renderer, self.fs, self.resolver)
        self.cache = BuildCache(config.cache_root, enabled=config.cache)
        self.analyzer = ChangeImpactAnalyzer(
            self.cache, config, self.classifier, self.resolver, self.fs
        )
        self.copier = AssetCopier(config.source_root, config.output_root, self.cache)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Full builds

    def build(self, clean: bool = False, cancel: threading.Event | None = None) -> BuildResult:
        """Build every page and copy every passthrough file.

        Args:
            clean: Wipe the output directory and the cache first.
            cancel: Set from another thread to stop before the next page.

        Returns:
            BuildResult; page failures are collected, not raised.

        Raises:
            FileNotFoundError: If the source directory does not exist.
        """
        with self._lock:
            return self._build(clean, cancel)

    def _build(self, clean: bool, cancel: threading.Event | None) -> BuildResult:
        source_root = self.config.source_root
        if not source_root.is_dir():
            raise FileNotFoundError(f"Expected source directory at {source_root}")
        output_root = self.config.output_root
        if clean:
            self.cache.clear()
            ensure_clean_dir(output_root)
        else:
            output_root.mkdir(parents=True, exist_ok=True)
        self.resolver.clear_cache()

        files = self.iter_source_files()
        self.register_auto_ignored(files)
        classified = self.classifier.classify_many(
            relative_posix(path, source_root) for path in files
        )
        pages: list[Path] = []
        copies: list[Path] = []
        for path in files:
            action = classified[relative_posix(path, source_root)].action
            if action == Action.EMIT:
                pages.append(path)
            elif action == Action.COPY:
                copies.append(path)

        result = BuildResult(output_dir=output_root)
        self._copy_files(copies, result)
        self._build_pages(pages, result, force=False, cancel=cancel)
        self._persist()
        logger.info(
            "Built %d page(s), copied %d file(s), skipped %d, %d error(s)",
            len(result.pages),
            len(result.copied),
            len(result.skipped),
            len(result.errors),
        )
        return result

    def iter_source_files(self) -> list[Path]:
        """List every file under the source root, sorted, skipping output and cache."""
        source_root = self.config.source_root
        excluded = [self.config.output_root, self.config.cache_root]
        files: list[Path] = []
        for directory, dirnames, filenames in os.walk(source_root):
            current = Path(directory)
            dirnames[:] = sorted(
                name
                for name in dirnames
                if name not in SKIPPED_DIR_NAMES
                and not any(is_within(current / name, root) for root in excluded)
            )
            files.extend(current / name for name in sorted(filenames))
        return files

    def register_auto_ignored(self, files: list[Path]) -> None:
        """Mark layouts and imported fragments so they are never emitted on their own."""
        if not self.config.auto_ignore:
            return
        source_root = self.config.source_root
        self.classifier.clear_auto_ignored()
        for path in files:
            if is_layout_filename(path.name):
                self.classifier.add_auto_ignored(relative_posix(path, source_root), "layout")
        for rule in [*self.resolver.pattern_rules, self.resolver.fallback_rule]:
            if rule is None:
                continue
            target, _ = self.resolver.resolve_reference(
                rule.layout, source_root / "index.html", source_root, LAYOUT_EXTENSIONS
            )
            if target is not None:
                self.classifier.add_auto_ignored(
                    relative_posix(target, source_root), "default layout"
                )
        for path in files:
            if not self.classifier.is_renderable(path.name):
                continue
            for target, reason in self._referenced_fragments(path):
                self.classifier.add_auto_ignored(relative_posix(target, source_root), reason)

    def _referenced_fragments(self, path: Path) -> list[tuple[Path, str]]:
        try:
            text = self.fs.read_text(path)
        except (OSError, FileSystemError) as exc:
            logger.debug("Could not scan %s for fragments: %s", path, exc)
            return []
        found: list[tuple[Path, str]] = []
        elements = find_elements(
            text,
            lambda token: token.has_attr(IMPORT_ATTR) or token.has_attr(LAYOUT_ATTR),
            nested=True,
        )
        for element in elements:
            reference = element.attr(IMPORT_ATTR)
            if reference:
                target, _ = self.resolver.resolve_reference(
                    reference, path, self.config.source_root
                )
                if target is not None:
                    found.append((target, "imported fragment"))
            reference = element.attr(LAYOUT_ATTR)
            if reference and is_html(path):
                target, _ = self.resolver.resolve_reference(
                    reference, path, self.config.source_root, LAYOUT_EXTENSIONS
                )
                if target is not None:
                    found.append((target, "layout"))
        for include in find_includes(text):
            target = resolve_include_path(
                include.kind, include.path, path, self.config.source_root
            )
            if target is not None and self.fs.is_file(target):
                found.append((target, "included file"))
        return found

    # ------------------------------------------------------------------
    # Incremental builds

    def rebuild_changed(
        self, events: Iterable[WatchEvent], cancel: threading.Event | None = None
    ) -> BuildResult:
        """Rebuild the pages a batch of watch events affects.

        Removed sources have their output deleted and their dependents
        rebuilt. A change to loom.yaml or a newly added layout triggers a
        full build.
        """
        with self._lock:
            return self._rebuild_changed(list(events), cancel)

    def _rebuild_changed(
        self, events: list[WatchEvent], cancel: threading.Event | None
    ) -> BuildResult:
        plan = self.analyzer.get_rebuild_plan(events)
        if plan.full_rebuild:
            logger.info("Configuration or layout set changed; rebuilding everything")
            return self._build(False, cancel)

        self.resolver.clear_cache()
        self.register_auto_ignored(self.iter_source_files())
        result = BuildResult(output_dir=self.config.output_root)
        for impact in plan.impacts:
            logger.debug(
                "%s affects %d page(s) (%s)",
                impact.path,
                len(impact.dependent_pages),
                impact.impact_level.value,
            )
        for path in sorted(plan.removed):
            self._remove_output(path, result)
        # Pages may have been reclassified by the refreshed auto-ignore set.
        pages = [page for page in sorted(plan.pages) if self._action(page) == Action.EMIT]
        self._copy_files(sorted(plan.copies), result, force=True)
        self._build_pages(pages, result, force=True, cancel=cancel)
        self._persist()
        return result

    def _action(self, path: Path) -> Action:
        return self.classifier.classify(relative_posix(path, self.config.source_root)).action

    def _remove_output(self, source: Path, result: BuildResult) -> None:
        output = self.cache.output_for(source)
        if output is None:
            emit = self.classifier.is_renderable(source.name)
            output = output_path_for(
                source,
                self.config.source_root,
                self.config.output_root,
                emit=emit,
                pretty=self.config.pretty_urls,
            )
        if is_within(output, self.config.output_root) and output.is_file():
            output.unlink()
            result.removed.append(output)
            logger.info("Removed %s", output)
        self.cache.remove(source)

    # ------------------------------------------------------------------
    # Pages and copies

    def _copy_files(self, copies: list[Path], result: BuildResult, force: bool = False) -> None:
        for source in copies:
            try:
                destination = self.copier.copy(source, force=force)
            except LoomError as exc:
                result.errors.append(BuildError(source, exc.message, exc))
                continue
            if destination is None:
                result.skipped.append(source)
            else:
                result.copied.append(source)

    def _build_pages(
        self,
        pages: list[Path],
        result: BuildResult,
        force: bool,
        cancel: threading.Event | None = None,
    ) -> None:
        if self.config.jobs > 1 and len(pages) > 1:
            with ThreadPoolExecutor(max_workers=self.config.jobs) as executor:
                outcomes = list(
                    executor.map(lambda page: self._build_page(page, force, cancel), pages)
                )
        else:
            outcomes = [self._build_page(page, force, cancel) for page in pages]
        for page, (status, error, warnings) in zip(pages, outcomes):
            result.warnings.extend(warnings)
            if error is not None:
                result.errors.append(error)
            elif status == "cancelled":
                result.cancelled.append(page)
            elif status == "skipped":
                result.skipped.append(page)
            else:
                result.pages.append(page)
        if result.cancelled:
            logger.info("Build superseded; %d page(s) left for the next pass", len(result.cancelled))

    def _build_page(
        self, page: Path, force: bool, cancel: threading.Event | None = None
    ) -> tuple[str, BuildError | None, list[str]]:
        if cancel is not None and cancel.is_set():
            return "cancelled", None, []
        output = output_path_for(
            page,
            self.config.source_root,
            self.config.output_root,
            emit=True,
            pretty=self.config.pretty_urls,
        )
        if not force and self.cache.is_up_to_date(page, output):
            logger.debug("Skipping fresh page %s", page)
            return "skipped", None, []
        try:
            document = self.composer.compose(page)
        except LoomError as exc:
            logger.error("%s: %s", page, exc.message)
            return "failed", BuildError(page, exc.message, exc), []
        except Exception as exc:
            message = _format_error_message(exc)
            logger.error("%s: %s", page, message)
            return "failed", BuildError(page, message, exc), []
        try:
            _write_page(output, document.html)
        except OSError as exc:
            return "failed", BuildError(page, _format_error_message(exc), exc), document.warnings
        self.cache.record(page, output, document.dependency_paths)
        return "built", None, document.warnings

    def _persist(self) -> None:
        if not self.cache.enabled or not self.cache.dirty:
            return
        if not self.cache.persist():
            logger.warning("Build cache was not saved; the next build starts cold")


def build_site(
    config: BuildConfig,
    clean: bool = False,
    renderer: MarkdownRenderer | None = None,
) -> BuildResult:
    """Build the entire static site.

    Args:
        config: Project configuration.
        clean: Wipe the output directory and the build cache first.
        renderer: Markdown renderer; mistune is used by default.

    Returns:
        BuildResult with the pages written, files copied and page errors.
    """
    return SiteBuilder(config, renderer=renderer).build(clean=clean)


def rebuild_changed(
    config: BuildConfig,
    events: Iterable[WatchEvent],
    builder: SiteBuilder | None = None,
    cancel: threading.Event | None = None,
) -> BuildResult:
    """Rebuild only what ``events`` affect, using a persistent builder if given."""
    builder = builder or SiteBuilder(config)
    return builder.rebuild_changed(events, cancel=cancel)


def _format_error_message(exc: Exception) -> str:
    """Format an exception into a user-friendly error message.

    Args:
        exc: The exception to format.

    Returns:
        A human-readable error message.
    """
    error_type = type(exc).__name__
    error_msg = str(exc)

    if error_type == "UnicodeDecodeError":
        return f"File is not valid UTF-8: {error_msg}"
    if isinstance(exc, FileNotFoundError):
        return f"File not found: {exc.filename or error_msg}"
    if isinstance(exc, PermissionError):
        return f"Permission denied: {exc.filename or error_msg}"

    return f"{error_type}: {error_msg}"


def _write_page(output: Path, rendered: str) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, "w", encoding="utf-8") as f:
        f.write(rendered)
