"""Local filesystem implementation of the FileSystem protocol."""

from __future__ import annotations

from pathlib import Path

from .errors import FileSystemError


class LocalFileSystem:
    """Reads from the local disk.

    Missing files surface as FileNotFoundError so callers can treat them as
    an absence signal; every other OSError is wrapped in FileSystemError.
    """

    def read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except (OSError, UnicodeDecodeError) as exc:
            raise FileSystemError("read", path, exc) from exc

    def is_file(self, path: Path) -> bool:
        return path.is_file()

    def list_dir(self, path: Path) -> list[Path]:
        try:
            return sorted(path.iterdir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise FileSystemError("list", path, exc) from exc
