"""Loom static site composer.

This package assembles a static site from a tree of HTML and Markdown sources by
cascading composition: pages import fragments, fragments import fragments, and
layouts wrap pages through named and default slots. Builds are incremental; a
content-hash dependency graph decides which pages are stale and which pages a
changed file affects.

The main entry point is the CLI module, which provides commands for building,
watching, classifying and cleaning a project.

Architecture follows SOLID principles:
- Single Responsibility: Classification, layout resolution, composition, caching
  and impact analysis each live in their own module
- Open/Closed: Pattern lists and layout rules extend behaviour through configuration
- Dependency Inversion: The composer depends on renderer and filesystem protocols
"""

__all__ = ["__version__"]
__version__ = "0.3.0"
