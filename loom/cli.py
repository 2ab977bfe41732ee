"""Command-line interface for Loom.

This module defines the CLI commands using Click framework.
It provides commands for building sites, watching for changes, inspecting
file classification and clearing build state.

Commands:
- build: Build the site into the output directory.
- watch: Build, then rebuild incrementally as files change.
- classify: Show how files are routed (emit, copy, skip, ignored).
- clean: Remove the output directory and the build cache.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import click

from . import __version__
from .config import FAIL_ON_LEVELS, BuildConfig, load_config
from .errors import LoomError
from .logging import configure_logging

_ACTION_COLORS = {"EMIT": "green", "COPY": "cyan", "SKIP": "white", "IGNORED": "yellow"}


def _project_options(func):
    func = click.option(
        "--log-file", type=click.Path(path_type=Path), help="Also log to this file"
    )(func)
    func = click.option("--verbose", "-v", is_flag=True, help="Show debug output")(func)
    func = click.option(
        "--output", "output_dir", help="Output directory (overrides loom.yaml)"
    )(func)
    func = click.option(
        "--source", "source_dir", help="Source directory (overrides loom.yaml)"
    )(func)
    func = click.option(
        "--project",
        "project_root",
        type=click.Path(path_type=Path, file_okay=False),
        default=".",
        show_default=True,
        help="Project root containing loom.yaml",
    )(func)
    return func


def _load(project_root: Path, verbose: bool, log_file: Path | None, **overrides) -> BuildConfig:
    configure_logging(verbose=verbose, log_file=log_file)
    try:
        return load_config(project_root.resolve(), overrides)
    except LoomError as exc:
        raise click.ClickException(exc.format_for_cli()) from None


def _relative(path: Path, root: Path) -> Path:
    try:
        return path.relative_to(root)
    except ValueError:
        return path


def _report(result, config: BuildConfig) -> None:
    root = config.project_root.resolve()
    for warning in result.warnings:
        click.echo(click.style(f"Warning: {warning}", fg="yellow"), err=True)
    if result.errors:
        click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
        for error in result.errors:
            rel_path = _relative(error.source_path, root)
            click.echo(click.style(f"  File: {rel_path}", fg="yellow"), err=True)
            click.echo(click.style(f"  Error: {error.message}", fg="white"), err=True)
    summary = (
        f"Built {len(result.pages)} pages, copied {len(result.copied)} files "
        f"({len(result.skipped)} up to date) into {result.output_dir}"
    )
    click.echo(summary)


@click.group()
@click.version_option(version=__version__, prog_name="loom")
def cli():
    """Loom static site composer."""


@cli.command()
@_project_options
@click.option("--clean", is_flag=True, help="Wipe output and cache before building")
@click.option("--strict", is_flag=True, help="Fail pages with missing fragments")
@click.option("--no-cache", is_flag=True, help="Rebuild every page")
@click.option("--jobs", "-j", type=int, help="Worker threads for page composition")
@click.option("--pretty-urls", is_flag=True, help="Write pages as name/index.html and rewrite links")
@click.option(
    "--fail-on",
    type=click.Choice(FAIL_ON_LEVELS),
    help="Lowest severity that makes the build exit non-zero",
)
@click.option("--dry-run", is_flag=True, help="Report classification without writing output")
def build(
    project_root: Path,
    source_dir: str | None,
    output_dir: str | None,
    verbose: bool,
    log_file: Path | None,
    clean: bool,
    strict: bool,
    no_cache: bool,
    jobs: int | None,
    pretty_urls: bool,
    fail_on: str | None,
    dry_run: bool,
):
    """Build the site into the output directory."""
    config = _load(
        project_root,
        verbose,
        log_file,
        source_dir=source_dir,
        output_dir=output_dir,
        strict=True if strict else None,
        cache=False if no_cache else None,
        jobs=jobs,
        pretty_urls=True if pretty_urls else None,
        fail_on=fail_on,
    )
    if dry_run:
        _report_classification(config)
        click.echo("No output files written (dry run).")
        return
    from .build import build_site

    try:
        result = build_site(config, clean=clean)
    except FileNotFoundError as exc:
        raise click.ClickException(str(exc)) from None
    except LoomError as exc:
        raise click.ClickException(exc.format_for_cli()) from None
    _report(result, config)
    if result.failed(config.fail_on):
        if not result.errors:
            click.echo(
                click.style("Build failed: warnings reported with --fail-on warning", fg="red"),
                err=True,
            )
        raise SystemExit(1)


@cli.command()
@_project_options
@click.option("--debounce", "debounce_ms", type=int, help="Coalescing window in milliseconds")
def watch(
    project_root: Path,
    source_dir: str | None,
    output_dir: str | None,
    verbose: bool,
    log_file: Path | None,
    debounce_ms: int | None,
):
    """Build, then rebuild incrementally as files change."""
    config = _load(
        project_root,
        verbose,
        log_file,
        source_dir=source_dir,
        output_dir=output_dir,
        debounce_ms=debounce_ms,
    )
    from .build import SiteBuilder
    from .watcher import ChangeWatcher

    try:
        builder = SiteBuilder(config)
        _report(builder.build(), config)
    except FileNotFoundError as exc:
        raise click.ClickException(str(exc)) from None
    except LoomError as exc:
        raise click.ClickException(exc.format_for_cli()) from None

    def on_change(events, cancel):
        names = ", ".join(str(_relative(event.path, config.source_root)) for event in events)
        click.echo(f"Change detected ({names}); rebuilding...")
        result = builder.rebuild_changed(events, cancel=cancel)
        if result.cancelled:
            click.echo("Newer changes arrived; restarting rebuild")
            return
        _report(result, config)

    def on_error(exc: BaseException) -> None:
        message = exc.format_for_cli() if isinstance(exc, LoomError) else str(exc)
        click.echo(click.style(f"Rebuild failed: {message}", fg="red"), err=True)

    watcher = ChangeWatcher(config, on_change, on_error)
    click.echo(f"Watching {config.source_root} (Ctrl+C to stop)")
    try:
        asyncio.run(watcher.run())
    except KeyboardInterrupt:
        click.echo("Stopped watching")


@cli.command()
@_project_options
@click.argument("paths", nargs=-1)
def classify(
    project_root: Path,
    source_dir: str | None,
    output_dir: str | None,
    verbose: bool,
    log_file: Path | None,
    paths: tuple[str, ...],
):
    """Show how files are routed.

    PATHS are relative to the source directory; every source file is listed
    when none are given.
    """
    config = _load(project_root, verbose, log_file, source_dir=source_dir, output_dir=output_dir)
    _report_classification(config, paths)


def _report_classification(config: BuildConfig, paths: tuple[str, ...] = ()) -> None:
    """Print each file's action, reason and layout, then a summary by action."""
    from .build import SiteBuilder
    from .classifier import Action
    from .utils import relative_posix

    try:
        builder = SiteBuilder(config)
    except LoomError as exc:
        raise click.ClickException(exc.format_for_cli()) from None
    source_root = config.source_root
    files = builder.iter_source_files() if source_root.is_dir() else []
    builder.register_auto_ignored(files)
    targets = list(paths) or [relative_posix(path, source_root) for path in files]
    for warning in builder.classifier.warnings:
        click.echo(click.style(f"Warning: {warning}", fg="yellow"), err=True)
    counts = {action: 0 for action in Action}
    for target in targets:
        result = builder.classifier.classify(target)
        counts[result.action] += 1
        action = click.style(
            f"{result.action.value:<8}", fg=_ACTION_COLORS[result.action.value]
        )
        detail = f"tier {int(result.tier)}: {result.reason}"
        if result.matched_pattern:
            detail += f" ({result.matched_pattern})"
        if result.action == Action.EMIT:
            detail += f"; {_layout_detail(builder, source_root / target, source_root)}"
        click.echo(f"{action}{result.path}  [{detail}]")
    summary = ", ".join(f"{counts[action]} {action.value}" for action in Action)
    click.echo(f"Files classified: {len(targets)} total ({summary})")


def _layout_detail(builder, page: Path, source_root: Path) -> str:
    try:
        content = builder.fs.read_text(page)
    except (OSError, LoomError):
        return "layout unknown"
    resolution = builder.resolver.resolve(page, content, source_root)
    if resolution.layout_path is None:
        return "no layout"
    layout = _relative(resolution.layout_path, source_root).as_posix()
    return f"layout={layout} ({resolution.source})"


@cli.command()
@_project_options
def clean(
    project_root: Path,
    source_dir: str | None,
    output_dir: str | None,
    verbose: bool,
    log_file: Path | None,
):
    """Remove the output directory and the build cache."""
    config = _load(project_root, verbose, log_file, source_dir=source_dir, output_dir=output_dir)
    protected = {config.project_root.resolve(), config.source_root}
    for target in (config.output_root, config.cache_root):
        if target in protected:
            raise click.ClickException(f"Refusing to remove {target}")
        if target.exists():
            shutil.rmtree(target)
            click.echo(f"Removed {target}")


def main():
    """Entry point for the CLI application."""
    cli()
