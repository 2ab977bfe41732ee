"""Glob pattern handling for Loom.

Patterns use gitignore-style globbing: ``*`` matches within a path segment,
``**`` matches across segments, braces expand and a leading ``!`` negates.
Pattern lists are evaluated in registration order and the last pattern that
changes the match state wins, so later negations carve exceptions out of
earlier includes and later includes re-add them.

Matching is segment-wise: a pattern is split on ``/`` and every segment other
than ``**`` is matched against one path segment with ``fnmatchcase``.

Key classes:
- GlobPattern: A single validated pattern.
- PatternList: An ordered, named list of patterns with last-match-wins semantics.

Key functions:
- validate_pattern: Reject syntactically invalid patterns.
- expand_braces: Expand ``{a,b}`` alternatives into plain patterns.
- gitignore_to_globs: Translate .gitignore lines into equivalent glob patterns.
- normalize_path: Convert a path into the posix form patterns match against.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path, PurePath

from .errors import ValidationError
from .logging import get_logger

logger = get_logger("patterns")

GLOBSTAR = "**"

_BROAD_PATTERNS = {"**", "**/*"}
_SPECIAL_CHARS = "*?[]{}!\\"


def normalize_path(path: str | PurePath) -> str:
    """Normalize a relative path for matching.

    Args:
        path: Path relative to the source root.

    Returns:
        Posix path without a leading ``./`` or ``/``.
    """
    text = path.as_posix() if isinstance(path, PurePath) else str(path).replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    return text.lstrip("/")


def validate_pattern(pattern: str) -> None:
    """Check a pattern for syntax errors.

    Args:
        pattern: Pattern as registered, optionally starting with ``!``.

    Raises:
        ValidationError: If the pattern is empty or has unbalanced brackets or braces.
    """
    if not isinstance(pattern, str) or not pattern.strip():
        raise ValidationError("Glob pattern must be a non-empty string")
    body = pattern[1:] if pattern.startswith("!") else pattern
    if not body.strip():
        raise ValidationError(f"Negated glob pattern has no body: {pattern!r}")

    brace_depth = 0
    i = 0
    while i < len(body):
        char = body[i]
        if char == "\\":
            i += 2
            continue
        if char == "[":
            close = _find_class_end(body, i)
            if close < 0:
                raise ValidationError(
                    f"Invalid glob pattern {pattern!r}: unclosed '['",
                    suggestions=["Escape a literal bracket as \\["],
                )
            i = close + 1
            continue
        if char == "{":
            brace_depth += 1
        elif char == "}":
            brace_depth -= 1
            if brace_depth < 0:
                raise ValidationError(f"Invalid glob pattern {pattern!r}: unexpected '}}'")
        i += 1
    if brace_depth:
        raise ValidationError(f"Invalid glob pattern {pattern!r}: unclosed '{{'")


def _find_class_end(body: str, start: int) -> int:
    """Return the index of the ``]`` closing the class opened at ``start``, or -1."""
    i = start + 1
    if i < len(body) and body[i] in "!^":
        i += 1
    # A leading ']' is a literal member of the class.
    if i < len(body) and body[i] == "]":
        i += 1
    while i < len(body):
        if body[i] == "\\":
            i += 2
            continue
        if body[i] == "]":
            return i
        i += 1
    return -1


def expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` groups, outermost first.

    Args:
        pattern: A validated pattern body.

    Returns:
        Every alternative, in order; the pattern itself when it has no braces.

    Examples:
        >>> expand_braces("{css,js}/*.{min,map}")
        ['css/*.min', 'css/*.map', 'js/*.min', 'js/*.map']
    """
    start = _find_unescaped(pattern, "{")
    if start < 0:
        return [pattern]
    depth = 0
    options: list[str] = []
    current = start + 1
    i = start
    while i < len(pattern):
        char = pattern[i]
        if char == "\\":
            i += 2
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                options.append(pattern[current:i])
                break
        elif char == "," and depth == 1:
            options.append(pattern[current:i])
            current = i + 1
        i += 1
    else:
        return [pattern]
    prefix, suffix = pattern[:start], pattern[i + 1 :]
    expanded: list[str] = []
    for option in options:
        expanded.extend(expand_braces(f"{prefix}{option}{suffix}"))
    return expanded


def _find_unescaped(text: str, target: str) -> int:
    i = 0
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == target:
            return i
        i += 1
    return -1


def _segment_to_fnmatch(segment: str) -> str:
    """Rewrite escapes and ``[^...]`` classes into fnmatch syntax."""
    out: list[str] = []
    i = 0
    while i < len(segment):
        char = segment[i]
        if char == "\\" and i + 1 < len(segment):
            escaped = segment[i + 1]
            out.append(f"[{escaped}]" if escaped in _SPECIAL_CHARS else escaped)
            i += 2
            continue
        if char == "[" and segment[i + 1 : i + 2] == "^":
            out.append("[!")
            i += 2
            continue
        out.append(char)
        i += 1
    return "".join(out)


def _split_segments(body: str) -> tuple[str, ...]:
    segments: list[str] = []
    for segment in body.split("/"):
        if not segment:
            continue
        # Consecutive globstars behave like one.
        if segment == GLOBSTAR and segments and segments[-1] == GLOBSTAR:
            continue
        segments.append(segment if segment == GLOBSTAR else _segment_to_fnmatch(segment))
    return tuple(segments)


def _match_segments(parts: tuple[str, ...], segments: tuple[str, ...]) -> bool:
    if not segments:
        return not parts
    head, rest = segments[0], segments[1:]
    if head == GLOBSTAR:
        return any(_match_segments(parts[i:], rest) for i in range(len(parts) + 1))
    if not parts or not fnmatchcase(parts[0], head):
        return False
    return _match_segments(parts[1:], rest)


@dataclass(frozen=True)
class GlobPattern:
    """A validated glob pattern.

    Attributes:
        source: Pattern text as registered, including any ``!`` prefix.
        body: Pattern text without the negation prefix.
        negated: Whether a match excludes rather than includes.
        case_sensitive: Whether matching respects case.
        alternatives: Brace-expanded bodies split into segments.
    """

    source: str
    body: str
    negated: bool
    case_sensitive: bool = False
    alternatives: tuple[tuple[str, ...], ...] = ()

    @classmethod
    def compile(cls, pattern: str, case_sensitive: bool = False) -> GlobPattern:
        validate_pattern(pattern)
        negated = pattern.startswith("!")
        body = pattern[1:] if negated else pattern
        # Backslashes are escapes here, not Windows separators.
        while body.startswith("./"):
            body = body[2:]
        body = body.lstrip("/")
        folded = body if case_sensitive else body.lower()
        alternatives = tuple(_split_segments(option) for option in expand_braces(folded))
        return cls(
            source=pattern,
            body=body,
            negated=negated,
            case_sensitive=case_sensitive,
            alternatives=alternatives,
        )

    def matches(self, path: str) -> bool:
        """Return True if the glob body matches the normalized path."""
        target = path if self.case_sensitive else path.lower()
        parts = tuple(part for part in target.split("/") if part)
        return any(_match_segments(parts, segments) for segments in self.alternatives)


class PatternList:
    """Ordered pattern list with last-match-wins evaluation.

    Attributes:
        name: Label used in diagnostics (e.g. "copy", "ignore").
        case_sensitive: Whether patterns match case-sensitively.
    """

    def __init__(
        self,
        name: str,
        patterns: Iterable[str] = (),
        case_sensitive: bool = False,
    ):
        self.name = name
        self.case_sensitive = case_sensitive
        self._patterns: list[GlobPattern] = []
        self.add(patterns)

    def add(self, patterns: Iterable[str]) -> None:
        """Register patterns at the end of the list.

        All patterns are validated before any is registered, so a bad entry
        leaves the list unchanged.

        Raises:
            ValidationError: If any pattern is invalid.
        """
        compiled = [self._compile(p) for p in patterns]
        self._patterns.extend(compiled)

    def prepend(self, patterns: Iterable[str]) -> None:
        """Register patterns with the lowest precedence."""
        compiled = [self._compile(p) for p in patterns]
        self._patterns[:0] = compiled

    def clear(self) -> None:
        self._patterns.clear()

    def _compile(self, pattern: str) -> GlobPattern:
        compiled = GlobPattern.compile(pattern, case_sensitive=self.case_sensitive)
        if compiled.body in _BROAD_PATTERNS:
            logger.warning(
                "Pattern %r in %s patterns matches every file and may slow classification",
                pattern,
                self.name,
            )
        return compiled

    def last_match(self, path: str) -> GlobPattern | None:
        """Return the pattern that decided a positive match, if any.

        Patterns are walked in order; a positive match switches the state on,
        a negated match switches it off. The last positive pattern is returned
        only when the final state is matched.
        """
        matched = False
        winner: GlobPattern | None = None
        for pattern in self._patterns:
            if pattern.matches(path):
                matched = not pattern.negated
                winner = pattern if matched else None
        return winner if matched else None

    def last_matching(self, path: str) -> GlobPattern | None:
        """Return the last pattern whose glob matches, negated or not."""
        found: GlobPattern | None = None
        for pattern in self._patterns:
            if pattern.matches(path):
                found = pattern
        return found

    def matches(self, path: str) -> bool:
        return self.last_match(path) is not None

    @property
    def sources(self) -> list[str]:
        return [p.source for p in self._patterns]

    def __iter__(self) -> Iterator[GlobPattern]:
        return iter(self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def __repr__(self) -> str:
        return f"PatternList({self.name!r}, {self.sources!r})"


def gitignore_to_globs(lines: Iterable[str]) -> list[str]:
    """Translate .gitignore lines into glob patterns.

    Comments and blank lines are dropped, ``!`` negations are preserved in
    order, a trailing ``/`` limits a rule to directory contents and a pattern
    without an inner slash matches at any depth.

    Args:
        lines: Raw lines of a .gitignore file.

    Returns:
        Glob patterns suitable for a PatternList.
    """
    globs: list[str] = []
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        negate = line.startswith("!")
        if negate:
            line = line[1:]
        if line.startswith("\\"):
            line = line[1:]
        directory_only = line.endswith("/")
        line = line.rstrip("/")
        anchored = line.startswith("/")
        line = line.lstrip("/")
        if line.startswith("./"):
            line = line[2:]
        if not line:
            continue
        base = line if anchored or "/" in line else f"**/{line}"
        prefix = "!" if negate else ""
        if directory_only:
            globs.append(f"{prefix}{base}/**")
        else:
            globs.append(f"{prefix}{base}")
            globs.append(f"{prefix}{base}/**")
    return globs


def load_gitignore(path: Path) -> list[str]:
    """Read a .gitignore file into glob patterns, or [] if it does not exist."""
    if not path.is_file():
        return []
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return []
    globs: list[str] = []
    for candidate in gitignore_to_globs(text.splitlines()):
        try:
            validate_pattern(candidate)
        except ValidationError as exc:
            logger.warning("Skipping .gitignore rule %r: %s", candidate, exc.message)
            continue
        globs.append(candidate)
    return globs
