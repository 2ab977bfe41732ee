"""Build configuration for Loom.

Configuration is read from ``loom.yaml`` at the project root, layered over
DEFAULT_CONFIG and then over explicit overrides (usually CLI flags). The result
is a BuildConfig object that is passed to every component; nothing in Loom reads
configuration from module-level state, so repeated or concurrent builds in the
same process never interfere with each other.

Key functions:
- load_config: Load and validate configuration for a project.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ValidationError

CONFIG_FILENAME = "loom.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "source_dir": "site",
    "output_dir": "output",
    "cache_dir": ".loom-cache",
    "includes_dir": "_includes",
    "assets_dir": "assets",
    "layout_filename": "_layout.html",
    "max_depth": 10,
    "strict": False,
    "cache": True,
    "auto_ignore": True,
    "case_sensitive": False,
    "gitignore": True,
    "debounce_ms": 300,
    "jobs": 1,
    "pretty_urls": False,
    "fail_on": None,
    "render": [],
    "ignore": [],
    "ignore_render": [],
    "ignore_copy": [],
    "copy": [],
    "default_layouts": [],
}

_LIST_KEYS = ("render", "ignore", "ignore_render", "ignore_copy", "copy", "default_layouts")
_BOOL_KEYS = ("strict", "cache", "auto_ignore", "case_sensitive", "gitignore", "pretty_urls")
FAIL_ON_LEVELS = ("warning", "error")
_STR_KEYS = (
    "source_dir",
    "output_dir",
    "cache_dir",
    "includes_dir",
    "assets_dir",
    "layout_filename",
)


@dataclass
class BuildConfig:
    """Resolved configuration for a single project.

    Attributes:
        project_root: Directory containing loom.yaml.
        source_dir: Source tree, relative to project_root.
        output_dir: Build output, relative to project_root.
        cache_dir: Persistent build cache, relative to project_root.
        includes_dir: Reserved fragment directory inside the source tree.
        assets_dir: Directory inside the source tree that is always copied.
        layout_filename: Conventional layout name used by discovery.
        max_depth: Maximum nesting of imports per page.
        strict: Treat missing fragments as fatal.
        cache: Enable skip-if-fresh builds.
        auto_ignore: Ignore partials and known layouts/fragments automatically.
        case_sensitive: Match glob patterns case-sensitively.
        gitignore: Derive ignore rules from the source tree's .gitignore.
        debounce_ms: Watch loop coalescing window.
        jobs: Number of worker threads for page composition.
        pretty_urls: Write pages as ``name/index.html`` and rewrite links to them.
        fail_on: Severity that fails a build: "error", "warning" or None.
    """

    project_root: Path
    source_dir: str = "site"
    output_dir: str = "output"
    cache_dir: str = ".loom-cache"
    includes_dir: str = "_includes"
    assets_dir: str = "assets"
    layout_filename: str = "_layout.html"
    max_depth: int = 10
    strict: bool = False
    cache: bool = True
    auto_ignore: bool = True
    case_sensitive: bool = False
    gitignore: bool = True
    debounce_ms: int = 300
    jobs: int = 1
    pretty_urls: bool = False
    fail_on: str | None = None
    render: list[str] = field(default_factory=list)
    ignore: list[str] = field(default_factory=list)
    ignore_render: list[str] = field(default_factory=list)
    ignore_copy: list[str] = field(default_factory=list)
    copy: list[str] = field(default_factory=list)
    default_layouts: list[str] = field(default_factory=list)

    @property
    def source_root(self) -> Path:
        return (self.project_root / self.source_dir).resolve()

    @property
    def output_root(self) -> Path:
        return (self.project_root / self.output_dir).resolve()

    @property
    def cache_root(self) -> Path:
        return (self.project_root / self.cache_dir).resolve()

    @property
    def includes_root(self) -> Path:
        return self.source_root / self.includes_dir

    def replace(self, **changes: Any) -> BuildConfig:
        """Return a validated copy with the given fields changed."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(changes)
        return _from_mapping(values)


def load_config(
    project_root: Path, overrides: dict[str, Any] | None = None
) -> BuildConfig:
    """Load project configuration from loom.yaml.

    Args:
        project_root: Root directory of the project.
        overrides: Values that take precedence over the file; None values are ignored.

    Returns:
        Validated BuildConfig.

    Raises:
        ValidationError: If loom.yaml is malformed or holds invalid values.
    """
    config_path = project_root / CONFIG_FILENAME
    values = {
        key: list(value) if isinstance(value, list) else value
        for key, value in DEFAULT_CONFIG.items()
    }
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValidationError(
                f"Could not parse {CONFIG_FILENAME}: {exc}", file_path=config_path
            ) from exc
        if not isinstance(loaded, dict):
            raise ValidationError(
                f"{CONFIG_FILENAME} must contain a mapping", file_path=config_path
            )
        unknown = sorted(set(loaded) - set(DEFAULT_CONFIG))
        if unknown:
            raise ValidationError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                file_path=config_path,
            )
        values.update(loaded)
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    values["project_root"] = Path(project_root)
    return _from_mapping(values)


def _from_mapping(values: dict[str, Any]) -> BuildConfig:
    """Validate raw values and build a BuildConfig."""
    for key in _LIST_KEYS:
        value = values.get(key)
        if value is None:
            values[key] = []
        elif isinstance(value, str):
            values[key] = [value]
        elif not isinstance(value, (list, tuple)) or not all(
            isinstance(item, str) for item in value
        ):
            raise ValidationError(f"'{key}' must be a list of strings")
        else:
            values[key] = list(value)
    for key in _BOOL_KEYS:
        if not isinstance(values.get(key), bool):
            raise ValidationError(f"'{key}' must be true or false")
    for key in _STR_KEYS:
        if not isinstance(values.get(key), str) or not values[key].strip():
            raise ValidationError(f"'{key}' must be a non-empty string")
    for key, minimum in (("max_depth", 1), ("jobs", 1), ("debounce_ms", 0)):
        value = values.get(key)
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            raise ValidationError(f"'{key}' must be an integer >= {minimum}")
    fail_on = values.get("fail_on")
    if fail_on is not None and fail_on not in FAIL_ON_LEVELS:
        raise ValidationError(
            f"'fail_on' must be one of: {', '.join(FAIL_ON_LEVELS)}",
            suggestions=["Use 'warning' to fail on missing fragments, 'error' on page failures"],
        )
    return BuildConfig(**values)
