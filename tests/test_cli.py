from pathlib import Path

import pytest
from click.testing import CliRunner

from loom import __version__
from loom.cli import cli


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr("loom.cli.configure_logging", lambda **kwargs: None)


def create_project(tmp_path: Path) -> Path:
    project = tmp_path / "mysite"
    site = project / "site"
    (site / "assets" / "css").mkdir(parents=True)
    (project / "loom.yaml").write_text("output_dir: public\n", encoding="utf-8")
    (site / "_layout.html").write_text(
        "<html><body><slot></slot></body></html>", encoding="utf-8"
    )
    (site / "index.html").write_text("<p>Home</p>", encoding="utf-8")
    (site / "assets" / "css" / "main.css").write_text("body {}", encoding="utf-8")
    return project


def test_cli_build(tmp_path):
    project = create_project(tmp_path)
    runner = CliRunner()
    result = runner.invoke(cli, ["build", "--project", str(project)])
    assert result.exit_code == 0, result.output
    assert "Built 1 pages, copied 1 files (0 up to date)" in result.output
    assert (project / "public" / "index.html").read_text(encoding="utf-8") == (
        "<html><body><p>Home</p></body></html>"
    )

    result = runner.invoke(cli, ["build", "--project", str(project)])
    assert "Built 0 pages, copied 0 files (2 up to date)" in result.output

    result = runner.invoke(cli, ["build", "--project", str(project), "--no-cache"])
    assert "Built 1 pages, copied 1 files" in result.output


def test_cli_build_output_override(tmp_path):
    project = create_project(tmp_path)
    result = CliRunner().invoke(
        cli, ["build", "--project", str(project), "--output", "dist", "--jobs", "2"]
    )
    assert result.exit_code == 0, result.output
    assert (project / "dist" / "index.html").exists()


def test_cli_build_reports_page_errors(tmp_path):
    project = create_project(tmp_path)
    (project / "site" / "bad.html").write_text('<div data-import="loop.html"></div>', encoding="utf-8")
    (project / "site" / "loop.html").write_text('<div data-import="loop.html"></div>', encoding="utf-8")
    result = CliRunner().invoke(cli, ["build", "--project", str(project)])
    assert result.exit_code == 1
    assert "Build failed:" in result.output
    assert "File: site/bad.html" in result.output
    assert "Circular import detected" in result.output


def test_cli_build_strict_fails_on_missing_fragment(tmp_path):
    project = create_project(tmp_path)
    (project / "site" / "extra.html").write_text('<div data-import="gone"></div>', encoding="utf-8")
    runner = CliRunner()
    assert runner.invoke(cli, ["build", "--project", str(project)]).exit_code == 0
    result = runner.invoke(cli, ["build", "--project", str(project), "--strict", "--clean"])
    assert result.exit_code == 1
    assert "Fragment not found: gone" in result.output


def test_cli_build_fail_on_warning(tmp_path):
    project = create_project(tmp_path)
    (project / "site" / "extra.html").write_text('<div data-import="gone"></div>', encoding="utf-8")
    runner = CliRunner()
    result = runner.invoke(cli, ["build", "--project", str(project), "--fail-on", "error"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(
        cli, ["build", "--project", str(project), "--fail-on", "warning", "--no-cache"]
    )
    assert result.exit_code == 1
    assert "--fail-on warning" in result.output
    result = runner.invoke(cli, ["build", "--project", str(project), "--fail-on", "never"])
    assert result.exit_code == 2


def test_cli_build_dry_run_writes_nothing(tmp_path):
    project = create_project(tmp_path)
    result = CliRunner().invoke(cli, ["build", "--project", str(project), "--dry-run"])
    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert "EMIT    index.html  [tier 3: renderable extension; layout=_layout.html (discovery)]" in lines
    assert "Files classified: 3 total (1 EMIT, 1 COPY, 0 SKIP, 1 IGNORED)" in lines
    assert lines[-1] == "No output files written (dry run)."
    assert not (project / "public").exists()


def test_cli_build_pretty_urls(tmp_path):
    project = create_project(tmp_path)
    (project / "site" / "about.html").write_text('<a href="index.html">Home</a>', encoding="utf-8")
    result = CliRunner().invoke(cli, ["build", "--project", str(project), "--pretty-urls"])
    assert result.exit_code == 0, result.output
    assert (project / "public" / "about" / "index.html").read_text(encoding="utf-8") == (
        '<html><body><a href="/">Home</a></body></html>'
    )


def test_cli_build_without_source(tmp_path):
    result = CliRunner().invoke(cli, ["build", "--project", str(tmp_path)])
    assert result.exit_code == 1
    assert "Expected source directory" in result.output


def test_cli_rejects_invalid_config(tmp_path):
    project = create_project(tmp_path)
    (project / "loom.yaml").write_text("outptu_dir: x\n", encoding="utf-8")
    result = CliRunner().invoke(cli, ["build", "--project", str(project)])
    assert result.exit_code == 1
    assert "Unknown configuration keys: outptu_dir" in result.output


def test_cli_classify(tmp_path):
    project = create_project(tmp_path)
    (project / "site" / "notes.draft").write_text("x", encoding="utf-8")
    result = CliRunner().invoke(cli, ["classify", "--project", str(project)])
    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert "IGNORED _layout.html  [tier 2: layout]" in lines
    assert "EMIT    index.html  [tier 3: renderable extension; layout=_layout.html (discovery)]" in lines
    assert "COPY    assets/css/main.css  [tier 3: matches copy pattern (assets/**)]" in lines
    assert "SKIP    notes.draft  [tier 3: no matching rule]" in lines
    assert lines[-1] == "Files classified: 4 total (1 EMIT, 1 COPY, 1 SKIP, 1 IGNORED)"


def test_cli_classify_named_paths(tmp_path):
    project = create_project(tmp_path)
    result = CliRunner().invoke(
        cli, ["classify", "--project", str(project), "blog/post.md", "robots.txt"]
    )
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == [
        "EMIT    blog/post.md  [tier 3: renderable extension; layout unknown]",
        "COPY    robots.txt  [tier 3: asset extension]",
        "Files classified: 2 total (1 EMIT, 1 COPY, 0 SKIP, 0 IGNORED)",
    ]


def test_cli_clean(tmp_path):
    project = create_project(tmp_path)
    runner = CliRunner()
    runner.invoke(cli, ["build", "--project", str(project)])
    assert (project / "public").exists()
    assert (project / ".loom-cache").exists()
    result = runner.invoke(cli, ["clean", "--project", str(project)])
    assert result.exit_code == 0, result.output
    assert not (project / "public").exists()
    assert not (project / ".loom-cache").exists()


def test_cli_clean_refuses_project_root(tmp_path):
    project = create_project(tmp_path)
    result = CliRunner().invoke(cli, ["clean", "--project", str(project), "--output", "."])
    assert result.exit_code == 1
    assert "Refusing to remove" in result.output
    assert (project / "site" / "index.html").exists()


def test_cli_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
