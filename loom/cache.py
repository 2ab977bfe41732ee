"""Dependency-aware build cache for Loom.

The cache remembers, for every page, the content hash of the page and of every
file its output was composed from at the time of that page's last successful
build. Each page keeps its own snapshot, so rebuilding one dependent of a
changed fragment never makes the other dependents look fresh. A page is up to
date only when its output exists and none of the hashes in its snapshot has
changed. Hashes are content-addressed (sha256 of the bytes), never derived from
mtimes, so touching a file without changing it does not trigger a rebuild and
reverting a change makes the page fresh again.

Two JSON documents are persisted under the cache directory:

- ``hash-cache.json``: path -> sha256 digest recorded at the last build.
- ``deps-cache.json``: page -> dependency paths, page -> output path, and
  page -> {path: digest} snapshots.

Loading never fails: a missing, unreadable or malformed file yields a cold
cache. Persisting is best effort and reports failure through the log.

Key classes:
- CacheEntry: Snapshot of what the cache knows about one file.
- BuildCache: Hash table plus dependency graph with staleness checks.
"""

from __future__ import annotations

import hashlib
import json
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import CacheIOError
from .logging import get_logger

logger = get_logger("cache")

HASH_CACHE_FILE = "hash-cache.json"
DEPS_CACHE_FILE = "deps-cache.json"
ERROR_HASH = "error"

_CACHE_VERSION = 2
_CHUNK_SIZE = 65536


@dataclass
class CacheEntry:
    """What the cache knows about one file.

    Attributes:
        file_path: The file.
        content_hash: Hash of the current content ("error" if unreadable).
        recorded_hash: Hash recorded at the last successful build, if any.
        dependencies: Recorded dependency paths (pages only).
        output_path: Output written for the file at the last build, if any.
    """

    file_path: Path
    content_hash: str
    recorded_hash: str | None = None
    dependencies: list[Path] = field(default_factory=list)
    output_path: Path | None = None


class BuildCache:
    """Content-hash cache with a page dependency graph.

    All state is guarded by a lock so pages composed on worker threads can
    record results concurrently.

    Attributes:
        cache_dir: Directory holding the persisted documents, or None for memory only.
        enabled: When False nothing is loaded or persisted and nothing is fresh.
    """

    def __init__(self, cache_dir: Path | None, enabled: bool = True):
        self.cache_dir = cache_dir
        self.enabled = enabled
        self._hashes: dict[str, str] = {}
        self._current: dict[str, str] = {}
        self._dependencies: dict[str, list[str]] = {}
        self._outputs: dict[str, str] = {}
        self._snapshots: dict[str, dict[str, str]] = {}
        self._lock = threading.RLock()
        self._dirty = False
        if self.cache_dir is not None and self.enabled:
            self.load()

    # ------------------------------------------------------------------
    # Hashing

    def hash_file(self, path: Path) -> str:
        """Return the sha256 digest of a file, or "error" if it cannot be read."""
        digest = hashlib.sha256()
        try:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                    digest.update(chunk)
        except OSError:
            result = ERROR_HASH
        else:
            result = digest.hexdigest()
        with self._lock:
            self._current[_key(path)] = result
        return result

    def hash_files(self, paths: Iterable[Path]) -> dict[Path, str]:
        return {Path(path): self.hash_file(Path(path)) for path in paths}

    def has_file_changed(self, path: Path) -> bool:
        """Return True if the file differs from its recorded hash.

        Missing or unreadable files and files without a recorded hash always
        count as changed.
        """
        current = self.hash_file(path)
        if current == ERROR_HASH:
            return True
        with self._lock:
            recorded = self._hashes.get(_key(path))
        return recorded is None or recorded != current

    def has_group_changed(self, paths: Iterable[Path]) -> bool:
        return any(self.has_file_changed(Path(path)) for path in paths)

    def update_file_hash(self, path: Path) -> str:
        """Record the file's current hash as the new baseline."""
        current = self.hash_file(path)
        with self._lock:
            if current == ERROR_HASH:
                self._hashes.pop(_key(path), None)
            else:
                self._hashes[_key(path)] = current
            self._dirty = True
        return current

    # ------------------------------------------------------------------
    # Dependency graph

    def set_dependencies(self, page: Path, dependencies: Iterable[Path]) -> None:
        """Replace the recorded dependency set of a page."""
        page_key = _key(page)
        keys = sorted({_key(dep) for dep in dependencies if _key(dep) != page_key})
        with self._lock:
            self._dependencies[page_key] = keys
            self._dirty = True

    def add_dependency(self, page: Path, dependency: Path) -> None:
        page_key, dep_key = _key(page), _key(dependency)
        if page_key == dep_key:
            return
        with self._lock:
            deps = self._dependencies.setdefault(page_key, [])
            if dep_key not in deps:
                deps.append(dep_key)
                deps.sort()
                self._dirty = True

    def get_dependencies(self, page: Path) -> list[Path]:
        with self._lock:
            return [Path(dep) for dep in self._dependencies.get(_key(page), [])]

    def get_dependents(self, path: Path, transitive: bool = True) -> set[Path]:
        """Return the pages whose recorded dependencies include ``path``.

        Args:
            path: A dependency (fragment, layout or asset).
            transitive: Also follow dependents of dependents.

        Returns:
            Dependent paths, never including ``path`` itself.
        """
        start = _key(path)
        with self._lock:
            reverse: dict[str, set[str]] = {}
            for page, deps in self._dependencies.items():
                for dep in deps:
                    reverse.setdefault(dep, set()).add(page)
        found: set[str] = set()
        queue = [start]
        while queue:
            current = queue.pop()
            for dependent in reverse.get(current, ()):
                if dependent in found or dependent == start:
                    continue
                found.add(dependent)
                if transitive:
                    queue.append(dependent)
        return {Path(item) for item in found}

    def has_entry(self, path: Path) -> bool:
        """Return True if the graph knows the path as a page or a dependency."""
        key = _key(path)
        with self._lock:
            if key in self._dependencies:
                return True
            return any(key in deps for deps in self._dependencies.values())

    def is_page(self, path: Path) -> bool:
        with self._lock:
            return _key(path) in self._dependencies

    def pages(self) -> list[Path]:
        with self._lock:
            return [Path(page) for page in sorted(self._dependencies)]

    def output_for(self, page: Path) -> Path | None:
        with self._lock:
            output = self._outputs.get(_key(page))
        return Path(output) if output else None

    # ------------------------------------------------------------------
    # Staleness

    def is_up_to_date(self, input_path: Path, output_path: Path) -> bool:
        """Return True if ``output_path`` is current for ``input_path``.

        The output must exist, and the input and every recorded dependency
        (followed transitively) must hash to the values captured when this
        page was last recorded.
        """
        if not self.enabled:
            return False
        if not output_path.exists():
            return False
        with self._lock:
            snapshot = dict(self._snapshots.get(_key(input_path), {}))
        if not snapshot:
            return False
        for path in [input_path, *self._all_dependencies(input_path)]:
            recorded = snapshot.get(_key(path))
            if recorded is None:
                # Reached only through another page's graph.
                changed = self.has_file_changed(path)
            else:
                current = self.hash_file(path)
                changed = current == ERROR_HASH or current != recorded
            if changed:
                logger.debug("%s is stale: %s changed", input_path, path)
                return False
        return True

    def _all_dependencies(self, page: Path) -> list[Path]:
        start = _key(page)
        seen: set[str] = set()
        ordered: list[str] = []
        with self._lock:
            queue = list(self._dependencies.get(start, []))
            while queue:
                current = queue.pop(0)
                if current in seen or current == start:
                    continue
                seen.add(current)
                ordered.append(current)
                queue.extend(self._dependencies.get(current, []))
        return [Path(item) for item in ordered]

    def record(
        self, page: Path, output_path: Path | None, dependencies: Iterable[Path]
    ) -> None:
        """Record a successful build of ``page`` as the new baseline."""
        dependencies = list(dependencies)
        self.set_dependencies(page, dependencies)
        snapshot: dict[str, str] = {}
        for path in [page, *dependencies]:
            digest = self.update_file_hash(path)
            if digest != ERROR_HASH:
                snapshot[_key(path)] = digest
        with self._lock:
            self._snapshots[_key(page)] = snapshot
            if output_path is None:
                self._outputs.pop(_key(page), None)
            else:
                self._outputs[_key(page)] = _key(output_path)
            self._dirty = True

    def remove(self, path: Path) -> None:
        """Forget a file as a page; dependents keep referencing it and go stale."""
        key = _key(path)
        with self._lock:
            self._hashes.pop(key, None)
            self._current.pop(key, None)
            self._dependencies.pop(key, None)
            self._outputs.pop(key, None)
            self._snapshots.pop(key, None)
            self._dirty = True

    def get_entry(self, path: Path) -> CacheEntry:
        current = self.hash_file(path)
        key = _key(path)
        with self._lock:
            output = self._outputs.get(key)
            return CacheEntry(
                file_path=path,
                content_hash=current,
                recorded_hash=self._hashes.get(key),
                dependencies=[Path(dep) for dep in self._dependencies.get(key, [])],
                output_path=Path(output) if output else None,
            )

    # ------------------------------------------------------------------
    # Persistence

    def load(self) -> None:
        """Load persisted state, falling back to a cold cache on any failure."""
        if self.cache_dir is None:
            return
        try:
            hashes_doc = _read_document(self.cache_dir / HASH_CACHE_FILE)
            deps_doc = _read_document(self.cache_dir / DEPS_CACHE_FILE)
            hashes = _string_map(hashes_doc.get("hashes"))
            dependencies = _list_map(deps_doc.get("dependencies"))
            outputs = _string_map(deps_doc.get("outputs"))
            snapshots = _snapshot_map(deps_doc.get("snapshots"))
        except FileNotFoundError:
            self._reset()
            return
        except CacheIOError as exc:
            logger.warning("Ignoring build cache: %s", exc.message)
            self._reset()
            return
        with self._lock:
            self._hashes = hashes
            self._dependencies = dependencies
            self._outputs = outputs
            self._snapshots = snapshots
            self._current = {}
            self._dirty = False

    def persist(self) -> bool:
        """Write the cache to disk.

        Returns:
            True on success; failures are logged and never raised.
        """
        if self.cache_dir is None or not self.enabled:
            return False
        with self._lock:
            hashes_doc = {"version": _CACHE_VERSION, "hashes": dict(self._hashes)}
            deps_doc = {
                "version": _CACHE_VERSION,
                "dependencies": {page: list(deps) for page, deps in self._dependencies.items()},
                "outputs": dict(self._outputs),
                "snapshots": {page: dict(hashes) for page, hashes in self._snapshots.items()},
            }
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            _write_document(self.cache_dir / HASH_CACHE_FILE, hashes_doc)
            _write_document(self.cache_dir / DEPS_CACHE_FILE, deps_doc)
        except OSError as exc:
            error = CacheIOError(f"Could not write build cache: {exc}", file_path=self.cache_dir)
            logger.warning(error.message)
            return False
        with self._lock:
            self._dirty = False
        return True

    def clear(self) -> None:
        """Forget everything and delete the persisted documents."""
        self._reset()
        if self.cache_dir is None:
            return
        for name in (HASH_CACHE_FILE, DEPS_CACHE_FILE):
            try:
                (self.cache_dir / name).unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Could not delete %s: %s", self.cache_dir / name, exc)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "cache_dir": str(self.cache_dir) if self.cache_dir else None,
                "hashed_files": len(self._hashes),
                "pages": len(self._dependencies),
                "dependency_edges": sum(len(deps) for deps in self._dependencies.values()),
                "dirty": self._dirty,
            }

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _reset(self) -> None:
        with self._lock:
            self._hashes = {}
            self._current = {}
            self._dependencies = {}
            self._outputs = {}
            self._snapshots = {}
            self._dirty = False


def _key(path: Path) -> str:
    return str(Path(path))


def _read_document(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CacheIOError(f"{path.name} is unreadable: {exc}", file_path=path) from exc
    if not isinstance(data, dict) or data.get("version") != _CACHE_VERSION:
        raise CacheIOError(f"{path.name} has an unsupported format", file_path=path)
    return data


def _write_document(path: Path, payload: dict[str, Any]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp, path)


def _string_map(raw: object) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise CacheIOError("expected a mapping of strings")
    return {
        key: value
        for key, value in raw.items()
        if isinstance(key, str) and isinstance(value, str)
    }


def _list_map(raw: object) -> dict[str, list[str]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise CacheIOError("expected a mapping of lists")
    result: dict[str, list[str]] = {}
    for key, value in raw.items():
        if isinstance(key, str) and isinstance(value, list):
            result[key] = [item for item in value if isinstance(item, str)]
    return result


def _snapshot_map(raw: object) -> dict[str, dict[str, str]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise CacheIOError("expected a mapping of snapshots")
    return {key: _string_map(value) for key, value in raw.items() if isinstance(key, str)}
