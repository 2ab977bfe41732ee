"""Composition engine for Loom.

A page is composed by resolving every include and ``data-import`` element it
contains, recursively, and then wrapping the result in its layout:

1. Server-side includes (``<!--#include virtual="..." -->`` and
   ``<!--#include file="..." -->``) are replaced by the included file, which
   is inlined verbatim after its own includes are expanded.
2. The page's own imports are processed. Each import element names a source
   (root-absolute, file-relative or a short name); the fragment is loaded,
   Markdown is rendered, the fragment's own imports are composed, and the
   content nested in the import element is injected into the fragment's slots.
   A fragment's ``<head>`` is lifted out and kept as component head content.
   The result replaces the import element in the host.
3. If a layout resolves, the page becomes caller content for the layout, which
   is composed exactly like an import one level deep. Head content is merged
   into the layout's head in the order layout, components, page, so the page
   wins ties. Attributes of the page's ``<html>`` and ``<body>`` are merged onto
   the layout's.
4. At the outermost pass, unfilled slots fall back to their own content,
   directive attributes are removed and, with pretty URLs, links to pages are
   rewritten as directory URLs.

Cycles raise CircularImportError and chains deeper than ``max_depth`` raise
DepthExceededError; both abort the page. A missing fragment or include leaves
a visible comment and a warning, or raises FragmentNotFoundError in strict
mode.

Every file read while composing is reported back as a DependencyEdge so the
build cache can record it; composition itself has no side effects on the
cache.

Key classes:
- DependencyEdge: A page-to-dependency edge with its kind.
- ImportNode: A resolved import with its caller content.
- ComposedDocument: The composed HTML with its head elements and dependencies.
- Composer: Composes pages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import BuildConfig
from .errors import CircularImportError, DepthExceededError, FragmentNotFoundError
from .extractors import extract_frontmatter, extract_title, synthesize_head
from .filesystem import LocalFileSystem
from .head import HeadElement, HeadMerger, parse_head
from .html_utils import (
    find_first,
    find_includes,
    has_attr,
    has_tag,
    iter_url_references,
    merge_attributes,
    replace_start_tag,
    rewrite_links,
    strip_attributes,
)
from .layouts import LAYOUT_ATTR, LayoutResolution, LayoutResolver
from .logging import get_logger
from .protocols import FileSystem, MarkdownRenderer
from .renderers import MarkdownRenderer as DefaultMarkdownRenderer
from .slots import (
    IMPORT_ATTR,
    TARGET_ATTR,
    SlotContent,
    extract_targets,
    finalize_slots,
    inject_slots,
    partition_slot_content,
)
from .templates import BoilerplateRenderer
from .utils import (
    collapse_path,
    is_markdown,
    is_within,
    pretty_url,
    resolve_include_path,
)

logger = get_logger("composer")

HEAD_SLOT = "head"
DIRECTIVE_ATTRS = (IMPORT_ATTR, TARGET_ATTR, LAYOUT_ATTR, "data-allow-duplicate")
MERGED_TAGS = ("html", "body")


class EdgeKind(str, Enum):
    LAYOUT = "layout"
    FRAGMENT = "fragment"
    ASSET = "asset"


@dataclass(frozen=True)
class DependencyEdge:
    """A dependency discovered while composing a page.

    Attributes:
        page: The page being composed.
        dependency: File the page's output depends on.
        kind: layout, fragment or asset.
    """

    page: Path
    dependency: Path
    kind: EdgeKind


@dataclass
class ImportNode:
    """An import element after resolution.

    Attributes:
        src: Reference as written in ``data-import``.
        resolved_path: Resolved fragment path, or None if not found.
        slot_content: Caller content nested in the import element.
        searched_paths: Candidates checked during resolution.
    """

    src: str
    resolved_path: Path | None
    slot_content: SlotContent
    searched_paths: list[Path] = field(default_factory=list)


@dataclass
class ComposedDocument:
    """Result of composing one page.

    Attributes:
        page: Source page path.
        html: Final HTML.
        head_elements: Elements of the final ``<head>``.
        layout: Layout resolution used for the page.
        dependencies: Edges for every file read or referenced.
        warnings: Recoverable problems such as missing fragments.
    """

    page: Path
    html: str
    head_elements: list[HeadElement] = field(default_factory=list)
    layout: LayoutResolution | None = None
    dependencies: set[DependencyEdge] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)

    @property
    def dependency_paths(self) -> list[Path]:
        """Sorted unique dependency paths, excluding the page itself."""
        paths = {edge.dependency for edge in self.dependencies if edge.dependency != self.page}
        return sorted(paths)


@dataclass
class _CompositionState:
    """Mutable state scoped to a single compose() call."""

    page: Path
    root: Path
    edges: set[DependencyEdge] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)
    component_heads: list[str] = field(default_factory=list)
    pending_head: list[str] = field(default_factory=list)
    sources: dict[Path, str] = field(default_factory=dict)

    def add_edge(self, path: Path, kind: EdgeKind) -> None:
        self.edges.add(DependencyEdge(self.page, path, kind))


class Composer:
    """Composes pages from fragments and layouts.

    Attributes:
        config: Build configuration.
        renderer: Markdown renderer.
        fs: Filesystem used for reads and existence checks.
        resolver: Layout and reference resolver; shares its discovery cache.
    """

    def __init__(
        self,
        config: BuildConfig,
        renderer: MarkdownRenderer | None = None,
        fs: FileSystem | None = None,
        resolver: LayoutResolver | None = None,
    ):
        self.config = config
        self.renderer = renderer or DefaultMarkdownRenderer()
        self.fs = fs or LocalFileSystem()
        self.resolver = resolver or LayoutResolver(config, self.fs)
        self.head_merger = HeadMerger()
        self.boilerplate = BoilerplateRenderer()

    def compose(self, page: Path, source_root: Path | None = None) -> ComposedDocument:
        """Compose a page into its final HTML.

        Args:
            page: Absolute page path.
            source_root: Source root; defaults to the configured one.

        Returns:
            ComposedDocument with the consulted dependencies.

        Raises:
            CircularImportError: If an import chain repeats a file.
            DepthExceededError: If imports nest deeper than max_depth.
            FragmentNotFoundError: If a fragment is missing in strict mode.
            FileSystemError: If the page or a fragment cannot be read.
        """
        root = source_root or self.config.source_root
        state = _CompositionState(page=page, root=root)
        raw = self._read(page, state)

        frontmatter: dict = {}
        body = raw
        if is_markdown(page):
            frontmatter, body = extract_frontmatter(raw)
            html = self.renderer.render(body, page)
        else:
            html = raw
        extra_head = synthesize_head(frontmatter)

        html = self._process_includes(html, page, [page], state)
        html = self._process_imports(html, page, [page], state)

        resolution = self.resolver.resolve(page, raw, root)
        if resolution.layout_path is not None:
            state.add_edge(resolution.layout_path, EdgeKind.LAYOUT)
            content = self._page_slot_content(html, extra_head)
            page_attrs = self._page_attributes(html)
            html = self._compose_fragment(
                resolution.layout_path, content, [page], state, EdgeKind.LAYOUT
            )
            html = self._merge_page_attributes(html, page_attrs)
        else:
            if is_markdown(page):
                title = extract_title(frontmatter, body, page)
                lang = frontmatter.get("lang")
                html = self.boilerplate.render(
                    title, html, lang=lang if isinstance(lang, str) and lang else "en"
                )
            # Without a layout the page is the document; its own head wins.
            html = self._merge_component_heads(html, state)
            if extra_head:
                state.pending_head.append(extra_head)

        html = self._merge_pending_head(html, state)
        html = finalize_slots(html)
        html = strip_attributes(html, DIRECTIVE_ATTRS)
        if self.config.pretty_urls:
            html = rewrite_links(html, lambda href: pretty_url(href, page, root))
        self._record_assets(html, state)

        head = find_first(html, has_tag("head"))
        head_elements = parse_head(head.inner(html)) if head is not None else []
        return ComposedDocument(
            page=page,
            html=html,
            head_elements=head_elements,
            layout=resolution,
            dependencies=state.edges,
            warnings=state.warnings,
        )

    # ------------------------------------------------------------------
    # Includes

    def _process_includes(
        self, html: str, host: Path, stack: list[Path], state: _CompositionState
    ) -> str:
        """Inline server-side include comments, expanding nested includes first."""
        includes = find_includes(html)
        if not includes:
            return html
        pieces: list[str] = []
        cursor = 0
        for include in includes:
            pieces.append(html[cursor : include.start])
            cursor = include.end
            target = resolve_include_path(include.kind, include.path, host, state.root)
            if target is None or not self.fs.is_file(target):
                searched = [target] if target is not None else []
                pieces.append(self._missing_include(include.path, searched, host, state))
                continue
            self._check_nesting(target, stack)
            state.add_edge(target, EdgeKind.FRAGMENT)
            included = self._read(target, state)
            if is_markdown(target):
                _, included = extract_frontmatter(included)
                included = self.renderer.render(included, target)
            pieces.append(self._process_includes(included, target, [*stack, target], state))
        pieces.append(html[cursor:])
        return "".join(pieces)

    def _missing_include(
        self, src: str, searched: list[Path], host: Path, state: _CompositionState
    ) -> str:
        error = FragmentNotFoundError(src, searched, file_path=host)
        if self.config.strict or not error.is_recoverable():
            raise error
        message = f"{host}: Include not found: {src}"
        state.warnings.append(message)
        logger.warning(message)
        return f"<!-- Include not found: {src.replace('--', '- -')} -->"

    # ------------------------------------------------------------------
    # Imports

    def _process_imports(
        self, html: str, host: Path, stack: list[Path], state: _CompositionState
    ) -> str:
        """Resolve import elements in document order until none remain."""
        while True:
            element = find_first(html, has_attr(IMPORT_ATTR))
            if element is None:
                return html
            node = self._resolve_import(
                element.attr(IMPORT_ATTR) or "",
                partition_slot_content(element.inner(html)),
                host,
                state,
            )
            if node.resolved_path is None:
                replacement = self._missing_fragment(node, host, state)
            else:
                replacement = self._compose_fragment(
                    node.resolved_path, node.slot_content, stack, state, EdgeKind.FRAGMENT
                )
            html = html[: element.start] + replacement + html[element.end :]

    def _resolve_import(
        self, src: str, content: SlotContent, host: Path, state: _CompositionState
    ) -> ImportNode:
        resolved, searched = self.resolver.resolve_reference(src, host, state.root)
        return ImportNode(
            src=src.strip(),
            resolved_path=resolved,
            slot_content=content,
            searched_paths=searched,
        )

    def _missing_fragment(
        self, node: ImportNode, host: Path, state: _CompositionState
    ) -> str:
        error = FragmentNotFoundError(node.src, node.searched_paths, file_path=host)
        if self.config.strict or not error.is_recoverable():
            raise error
        message = f"{host}: {error.message}"
        state.warnings.append(message)
        logger.warning(message)
        safe = f"{error.message} ({node.src})".replace("--", "- -")
        return f"<!-- Import error: {safe} -->"

    def _check_nesting(self, target: Path, stack: list[Path]) -> None:
        if target in stack:
            raise CircularImportError([*stack, target])
        depth = len(stack)
        if depth > self.config.max_depth:
            raise DepthExceededError(target, depth, self.config.max_depth)

    def _compose_fragment(
        self,
        target: Path,
        content: SlotContent,
        stack: list[Path],
        state: _CompositionState,
        kind: EdgeKind,
    ) -> str:
        """Compose a fragment (or layout) and inject the caller's content."""
        self._check_nesting(target, stack)
        state.add_edge(target, kind)

        raw = self._read(target, state)
        if is_markdown(target):
            frontmatter, body = extract_frontmatter(raw)
            html = self.renderer.render(body, target)
            head = synthesize_head(frontmatter)
            if head:
                state.component_heads.append(head)
        else:
            html = raw

        html = self._process_includes(html, target, [*stack, target], state)
        html = self._process_imports(html, target, [*stack, target], state)
        if kind == EdgeKind.FRAGMENT:
            html = self._lift_head(html, state)
        return self._inject(html, content, state, kind)

    def _lift_head(self, html: str, state: _CompositionState) -> str:
        """Move a fragment's head content into the component heads; return its body."""
        html, targeted = extract_targets(html, HEAD_SLOT)
        head = find_first(html, has_tag("head"))
        if head is not None:
            if head.inner(html).strip():
                state.component_heads.append(head.inner(html))
            body = find_first(html, has_tag("body"))
            if body is not None:
                html = body.inner(html)
            else:
                document = find_first(html, has_tag("html"))
                source = document.inner(html) if document is not None else html
                html = source.replace(head.outer(html), "", 1)
        state.component_heads.extend(part for part in targeted if part.strip())
        return html

    def _inject(
        self, html: str, content: SlotContent, state: _CompositionState, kind: EdgeKind
    ) -> str:
        named = {name: value for name, value in content.named.items() if name != HEAD_SLOT}
        html = inject_slots(html, SlotContent(default=content.default, named=named))
        head = content.named.get(HEAD_SLOT)
        if kind == EdgeKind.FRAGMENT:
            if head and head.strip():
                state.component_heads.append(head)
            return html
        # Layout head first, then components, then the page.
        parts = [*state.component_heads, head or ""]
        state.component_heads.clear()
        combined = "\n".join(part for part in parts if part.strip())
        if not combined:
            return html
        merged = self.head_merger.merge_into_document(html, combined)
        if merged is None:
            state.pending_head.append(combined)
            return html
        return merged[0]

    def _merge_component_heads(self, html: str, state: _CompositionState) -> str:
        if not state.component_heads:
            return html
        combined = "\n".join(state.component_heads)
        state.component_heads.clear()
        merged = self.head_merger.merge_into_document(html, combined, document_wins=True)
        if merged is None:
            logger.debug(
                "%s: dropping component head content; document has no <head> or <html>",
                state.page,
            )
            return html
        return merged[0]

    def _merge_pending_head(self, html: str, state: _CompositionState) -> str:
        if not state.pending_head:
            return html
        merged = self.head_merger.merge_into_document(html, "\n".join(state.pending_head))
        if merged is None:
            logger.debug(
                "%s: dropping head content; document has no <head> or <html>", state.page
            )
            return html
        return merged[0]

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    def _page_attributes(html: str) -> dict[str, tuple[tuple[str, str | None], ...]]:
        """Collect the attributes of the page's own ``<html>`` and ``<body>``."""
        found: dict[str, tuple[tuple[str, str | None], ...]] = {}
        for tag in MERGED_TAGS:
            element = find_first(html, has_tag(tag))
            if element is not None and element.attrs:
                found[tag] = element.attrs
        return found

    @staticmethod
    def _merge_page_attributes(
        html: str, page_attrs: dict[str, tuple[tuple[str, str | None], ...]]
    ) -> str:
        for tag, attrs in page_attrs.items():
            if all(key in DIRECTIVE_ATTRS for key, _ in attrs):
                continue
            element = find_first(html, has_tag(tag))
            if element is None:
                continue
            merged = merge_attributes(element.attrs, attrs, drop=DIRECTIVE_ATTRS)
            html = replace_start_tag(html, element, merged)
        return html

    def _page_slot_content(self, html: str, extra_head: str) -> SlotContent:
        """Turn composed page markup into caller content for its layout."""
        head_parts: list[str] = []
        head = find_first(html, has_tag("head"))
        body = find_first(html, has_tag("body"))
        if head is not None:
            head_parts.append(head.inner(html))
        if body is not None:
            source = body.inner(html)
        else:
            document = find_first(html, has_tag("html"))
            if document is not None:
                source = document.inner(html)
                if head is not None:
                    source = source.replace(head.outer(html), "", 1)
            else:
                source = html
        content = partition_slot_content(source)
        targeted_head = content.named.pop(HEAD_SLOT, None)
        if targeted_head:
            head_parts.append(targeted_head)
        if extra_head:
            head_parts.append(extra_head)
        if any(part.strip() for part in head_parts):
            content.named[HEAD_SLOT] = "\n".join(head_parts)
        return content

    def _read(self, path: Path, state: _CompositionState) -> str:
        cached = state.sources.get(path)
        if cached is None:
            cached = self.fs.read_text(path)
            state.sources[path] = cached
        return cached

    def _record_assets(self, html: str, state: _CompositionState) -> None:
        """Record local files referenced by the output as asset dependencies."""
        for reference in iter_url_references(html):
            if reference.startswith("/"):
                candidate = state.root / reference.lstrip("/")
            else:
                candidate = state.page.parent / reference
            candidate = collapse_path(candidate)
            if candidate == state.page or not is_within(candidate, state.root):
                continue
            if self.fs.is_file(candidate):
                state.add_edge(candidate, EdgeKind.ASSET)

