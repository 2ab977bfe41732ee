"""Protocol definitions for Loom.

This module defines the interfaces (protocols) the composition engine depends
on, following the Dependency Inversion Principle (DIP) of SOLID.

These protocols enable:
- Loose coupling between the composer and markdown/filesystem implementations
- Easy testing through in-memory implementations
- Swapping the markdown engine without touching composition code
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class MarkdownRenderer(Protocol):
    """Protocol for rendering Markdown fragments and pages to HTML."""

    @abstractmethod
    def render(self, text: str, path: Path) -> str:
        """Render Markdown to HTML.

        Args:
            text: Markdown source with frontmatter already removed.
            path: Source file the text came from (for diagnostics and links).

        Returns:
            Rendered HTML.
        """
        ...


@runtime_checkable
class FileSystem(Protocol):
    """Minimal filesystem capability used by resolution and composition.

    Implementations raise FileSystemError for failures that are not a
    plain absence of the file.
    """

    @abstractmethod
    def read_text(self, path: Path) -> str:
        """Read a file as UTF-8 text."""
        ...

    @abstractmethod
    def is_file(self, path: Path) -> bool:
        """Return True if the path is a regular file."""
        ...

    @abstractmethod
    def list_dir(self, path: Path) -> list[Path]:
        """List the direct children of a directory, sorted by name."""
        ...
