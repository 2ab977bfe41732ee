"""File classification for Loom.

Every file in the source tree is routed to exactly one action:

- EMIT: compose and write as a page.
- COPY: copy verbatim into the output directory.
- SKIP: leave out of the build without comment.
- IGNORED: explicitly excluded by an ignore rule or auto-ignore.

Rules are evaluated in three tiers, highest precedence first:

1. Explicit: ``render`` patterns (or disabling auto-ignore) force renderable
   files to EMIT.
2. Ignore: the auto-ignored set (layouts, fragments, underscore partials),
   general ``ignore`` patterns, .gitignore rules, then the render-only and
   copy-only ignore lists, which constrain tier 3 rather than decide.
3. Default: renderable extensions emit, copy patterns and recognized asset
   extensions copy, everything else is skipped.

Key classes:
- Action: The four routing outcomes.
- Tier: The three precedence tiers.
- ClassificationResult: Outcome with tier, reason and deciding pattern.
- FileClassifier: Holds registered pattern lists and classifies paths.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path, PurePosixPath

from .config import BuildConfig
from .logging import get_logger
from .patterns import PatternList, load_gitignore, normalize_path

logger = get_logger("classifier")

RENDERABLE_EXTENSIONS = frozenset({".html", ".htm", ".md", ".markdown"})

ASSET_EXTENSIONS = frozenset(
    {
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".svg",
        ".webp",
        ".ico",
        ".avif",
        ".woff",
        ".woff2",
        ".ttf",
        ".otf",
        ".eot",
        ".css",
        ".js",
        ".mjs",
        ".json",
        ".map",
        ".pdf",
        ".txt",
        ".xml",
        ".webmanifest",
        ".mp4",
        ".webm",
        ".mp3",
    }
)


class Action(str, Enum):
    EMIT = "EMIT"
    COPY = "COPY"
    SKIP = "SKIP"
    IGNORED = "IGNORED"


class Tier(IntEnum):
    EXPLICIT = 1
    IGNORE = 2
    DEFAULT = 3


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one path.

    Attributes:
        path: Normalized path relative to the source root.
        action: Routing outcome.
        tier: Tier that decided the outcome.
        reason: Human-readable explanation.
        matched_pattern: Pattern that decided the outcome, if any.
    """

    path: str
    action: Action
    tier: Tier
    reason: str
    matched_pattern: str | None = None


class FileClassifier:
    """Classifies source files through ordered pattern tiers.

    Classification is a pure function of the path and the registered patterns;
    registering patterns is the only way to change results.

    Attributes:
        auto_ignore: Whether auto-ignore rules are active.
        case_sensitive: Whether patterns match case-sensitively.
        assets_dir: Directory that is always copied.
        warnings: Non-fatal diagnostics raised while registering patterns.
    """

    def __init__(
        self,
        auto_ignore: bool = True,
        case_sensitive: bool = False,
        assets_dir: str = "assets",
    ):
        self.auto_ignore = auto_ignore
        self.case_sensitive = case_sensitive
        self.assets_dir = assets_dir.strip("/")
        self.warnings: list[str] = []
        self.render = PatternList("render", case_sensitive=case_sensitive)
        self.ignore = PatternList("ignore", case_sensitive=case_sensitive)
        self.ignore_render = PatternList("ignore_render", case_sensitive=case_sensitive)
        self.ignore_copy = PatternList("ignore_copy", case_sensitive=case_sensitive)
        self.gitignore = PatternList("gitignore", case_sensitive=case_sensitive)
        self.copy = PatternList(
            "copy", [f"{self.assets_dir}/**"], case_sensitive=case_sensitive
        )
        self._auto_ignored: dict[str, str] = {}

    @classmethod
    def from_config(cls, config: BuildConfig) -> FileClassifier:
        """Create a classifier with every pattern list from the configuration.

        Raises:
            ValidationError: If a configured pattern is invalid.
        """
        classifier = cls(
            auto_ignore=config.auto_ignore,
            case_sensitive=config.case_sensitive,
            assets_dir=config.assets_dir,
        )
        classifier.add_render_patterns(config.render)
        classifier.add_ignore_patterns(config.ignore)
        classifier.add_ignore_render_patterns(config.ignore_render)
        classifier.add_ignore_copy_patterns(config.ignore_copy)
        classifier.add_copy_patterns(config.copy)
        if config.gitignore:
            classifier.add_gitignore_patterns(load_gitignore(config.source_root / ".gitignore"))
        return classifier

    def add_render_patterns(self, patterns: Iterable[str]) -> None:
        self.render.add(patterns)

    def add_ignore_patterns(self, patterns: Iterable[str]) -> None:
        self.ignore.add(patterns)

    def add_ignore_render_patterns(self, patterns: Iterable[str]) -> None:
        self.ignore_render.add(patterns)

    def add_ignore_copy_patterns(self, patterns: Iterable[str]) -> None:
        patterns = list(patterns)
        self.ignore_copy.add(patterns)
        self._check_conflicts(self.copy.sources, patterns)

    def add_copy_patterns(self, patterns: Iterable[str]) -> None:
        patterns = list(patterns)
        self.copy.add(patterns)
        self._check_conflicts(patterns, self.ignore_copy.sources)

    def add_gitignore_patterns(self, patterns: Iterable[str]) -> None:
        self.gitignore.add(patterns)

    def add_auto_ignored(self, path: str | Path, reason: str) -> None:
        """Mark a file (typically a layout or fragment) as never emitted."""
        self._auto_ignored[normalize_path(path)] = reason

    def clear_auto_ignored(self) -> None:
        self._auto_ignored.clear()

    def _check_conflicts(self, copy: Iterable[str], ignore_copy: Iterable[str]) -> None:
        for pattern in set(copy) & set(ignore_copy):
            message = (
                f"Pattern {pattern!r} is registered as both copy and ignore_copy; "
                "ignore_copy takes precedence"
            )
            self.warnings.append(message)
            logger.warning(message)

    @staticmethod
    def is_renderable(path: str | Path) -> bool:
        return PurePosixPath(normalize_path(path)).suffix.lower() in RENDERABLE_EXTENSIONS

    @staticmethod
    def is_asset(path: str | Path) -> bool:
        return PurePosixPath(normalize_path(path)).suffix.lower() in ASSET_EXTENSIONS

    @staticmethod
    def is_partial(path: str | Path) -> bool:
        """Return True if the file or any parent directory starts with an underscore."""
        return any(part.startswith("_") for part in PurePosixPath(normalize_path(path)).parts)

    def classify(self, path: str | Path) -> ClassificationResult:
        """Classify a path relative to the source root.

        Args:
            path: Relative path, in posix or native form.

        Returns:
            ClassificationResult describing the routing decision.
        """
        rel = normalize_path(path)
        renderable = self.is_renderable(rel)

        # Tier 1
        if renderable and not self.auto_ignore:
            return self._result(rel, Action.EMIT, Tier.EXPLICIT, "auto-ignore disabled")
        if renderable:
            pattern = self.render.last_match(rel)
            if pattern is not None:
                return self._result(
                    rel, Action.EMIT, Tier.EXPLICIT, "matches render pattern", pattern.source
                )

        # Tier 2
        if self.auto_ignore:
            reason = self._auto_ignored.get(rel)
            if reason is not None:
                return self._result(rel, Action.IGNORED, Tier.IGNORE, reason)
            if renderable and self.is_partial(rel):
                return self._result(
                    rel, Action.IGNORED, Tier.IGNORE, "underscore partial or layout"
                )
        pattern = self.ignore.last_match(rel)
        if pattern is not None:
            return self._result(
                rel, Action.IGNORED, Tier.IGNORE, "matches ignore pattern", pattern.source
            )
        pattern = self.gitignore.last_match(rel)
        if pattern is not None:
            return self._result(
                rel, Action.IGNORED, Tier.IGNORE, "matches .gitignore rule", pattern.source
            )
        render_ignore = self.ignore_render.last_match(rel)
        copy_ignore = self.ignore_copy.last_match(rel)

        # Tier 3
        copy_match = self.copy.last_match(rel)
        if renderable and render_ignore is not None:
            if copy_match is not None and copy_ignore is None:
                return self._result(
                    rel,
                    Action.COPY,
                    Tier.DEFAULT,
                    "render-ignored but matches copy pattern",
                    copy_match.source,
                )
            return self._result(
                rel,
                Action.IGNORED,
                Tier.IGNORE,
                "matches ignore_render pattern",
                render_ignore.source,
            )
        if copy_ignore is not None:
            if renderable:
                return self._result(
                    rel,
                    Action.EMIT,
                    Tier.DEFAULT,
                    "renderable file excluded from copying",
                    copy_ignore.source,
                )
            return self._result(
                rel,
                Action.IGNORED,
                Tier.IGNORE,
                "matches ignore_copy pattern",
                copy_ignore.source,
            )
        if renderable:
            return self._result(rel, Action.EMIT, Tier.DEFAULT, "renderable extension")
        if copy_match is not None:
            return self._result(
                rel, Action.COPY, Tier.DEFAULT, "matches copy pattern", copy_match.source
            )
        if self.is_asset(rel):
            last = self.copy.last_matching(rel)
            if last is not None and last.negated:
                return self._result(
                    rel, Action.SKIP, Tier.DEFAULT, "excluded by negated copy pattern", last.source
                )
            return self._result(rel, Action.COPY, Tier.DEFAULT, "asset extension")
        return self._result(rel, Action.SKIP, Tier.DEFAULT, "no matching rule")

    def classify_many(self, paths: Iterable[str | Path]) -> dict[str, ClassificationResult]:
        results = {}
        for path in paths:
            result = self.classify(path)
            results[result.path] = result
        return results

    @staticmethod
    def _result(
        path: str,
        action: Action,
        tier: Tier,
        reason: str,
        pattern: str | None = None,
    ) -> ClassificationResult:
        return ClassificationResult(
            path=path, action=action, tier=tier, reason=reason, matched_pattern=pattern
        )
