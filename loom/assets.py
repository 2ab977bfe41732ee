"""Copying of passthrough files for Loom.

Files classified as COPY are written to the output tree byte for byte at
their relative path. No minification or image processing happens here.

Key classes:
- AssetCopier: Copies files and skips ones the cache reports as fresh.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from .cache import BuildCache
from .errors import FileSystemError
from .logging import get_logger
from .utils import output_path_for

logger = get_logger("assets")


class AssetCopier:
    """Copies COPY-classified files into the output directory.

    Attributes:
        source_root (Path): Root of the source tree.
        output_root (Path): Root of the output tree.
        cache (BuildCache | None): Used to skip unchanged files.
    """

    def __init__(self, source_root: Path, output_root: Path, cache: BuildCache | None = None):
        self.source_root = source_root
        self.output_root = output_root
        self.cache = cache

    def destination_for(self, source: Path) -> Path:
        return output_path_for(source, self.source_root, self.output_root, emit=False)

    def copy(self, source: Path, force: bool = False) -> Path | None:
        """Copy one file, preserving metadata.

        Args:
            source: Absolute source path.
            force: Copy even when the cache says the output is fresh.

        Returns:
            The destination path, or None if the copy was skipped.

        Raises:
            FileSystemError: If the copy fails.
        """
        destination = self.destination_for(source)
        if not force and self.cache is not None and self.cache.is_up_to_date(source, destination):
            logger.debug("Skipping fresh copy %s", source)
            return None
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
        except OSError as exc:
            raise FileSystemError("copy", source, exc) from exc
        if self.cache is not None:
            self.cache.record(source, destination, [])
        return destination
