"""Error taxonomy for Loom.

Every error raised by the composition and build engine derives from LoomError,
which carries the offending file, a human-readable message and optional
suggestions for fixing the problem.

Key classes:
- LoomError: Base class with file context and CLI formatting.
- ValidationError: Invalid pattern or configuration value.
- CircularImportError: A fragment imports itself through a chain of imports.
- DepthExceededError: An import chain nests deeper than the configured limit.
- FragmentNotFoundError: An import or layout reference did not resolve.
- CacheIOError: The build cache could not be read or written.
- FileSystemError: A filesystem operation failed.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class LoomError(Exception):
    """Base error with file context.

    Attributes:
        message: Human-readable error message.
        file_path: Source file the error relates to, if known.
        suggestions: Hints shown to the user below the message.
    """

    recoverable = False

    def __init__(
        self,
        message: str,
        file_path: Path | None = None,
        suggestions: Sequence[str] | None = None,
    ):
        self.message = message
        self.file_path = file_path
        self.suggestions = list(suggestions or [])
        super().__init__(message)

    def is_recoverable(self) -> bool:
        """Return True if the build can continue after this error."""
        return self.recoverable

    def format_for_cli(self) -> str:
        """Format the error with its file and suggestions for terminal output.

        Returns:
            Multi-line string suitable for printing.
        """
        lines = [self.message]
        if self.file_path is not None:
            lines.append(f"  File: {self.file_path}")
        for suggestion in self.suggestions:
            lines.append(f"  Hint: {suggestion}")
        return "\n".join(lines)


class ValidationError(LoomError):
    """Raised for an invalid glob pattern or configuration value."""


class CircularImportError(LoomError):
    """Raised when a fragment is imported while it is already being composed.

    Attributes:
        chain: Resolved paths from the outermost import to the repeated one.
    """

    def __init__(self, chain: Sequence[Path]):
        self.chain = list(chain)
        rendered = " -> ".join(str(path) for path in self.chain)
        super().__init__(
            f"Circular import detected: {rendered}",
            file_path=self.chain[-1] if self.chain else None,
            suggestions=["Remove one of the data-import references in the chain"],
        )


class DepthExceededError(LoomError):
    """Raised when nested imports go deeper than the configured maximum."""

    def __init__(self, path: Path, depth: int, max_depth: int):
        self.path = path
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Import depth {depth} exceeds maximum of {max_depth}",
            file_path=path,
            suggestions=["Flatten nested imports or raise max_depth in loom.yaml"],
        )


class FragmentNotFoundError(LoomError):
    """Raised when an import source cannot be found.

    Attributes:
        src: The reference as written in the document.
        searched_paths: Candidate paths that were checked, in order.
    """

    recoverable = True

    def __init__(
        self,
        src: str,
        searched_paths: Sequence[Path] | None = None,
        file_path: Path | None = None,
    ):
        self.src = src
        self.searched_paths = list(searched_paths or [])
        suggestions = [f"Searched: {path}" for path in self.searched_paths[:5]]
        super().__init__(
            f"Fragment not found: {src}",
            file_path=file_path,
            suggestions=suggestions,
        )


class CacheIOError(LoomError):
    """Raised when the build cache cannot be read or written."""

    recoverable = True


class FileSystemError(LoomError):
    """Raised when a filesystem operation fails.

    Attributes:
        operation: Name of the failed operation (read, write, stat, ...).
        path: Path the operation was applied to.
        original_error: The underlying OSError.
    """

    def __init__(
        self,
        operation: str,
        path: Path,
        original_error: Exception | None = None,
    ):
        self.operation = operation
        self.path = path
        self.original_error = original_error
        detail = f": {original_error}" if original_error else ""
        super().__init__(f"Failed to {operation} {path}{detail}", file_path=path)
