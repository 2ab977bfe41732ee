from pathlib import Path

from loom import utils


def test_titleize_strips_date_prefix():
    assert utils.titleize("2024-01-02-post-title.md") == "Post Title"
    assert utils.titleize("getting_started.html") == "Getting Started"
    assert utils.titleize("---.md") == "Untitled"


def test_suffix_checks():
    assert utils.is_markdown(Path("a.MD"))
    assert utils.is_markdown(Path("a.markdown"))
    assert utils.is_html(Path("a.htm"))
    assert not utils.is_html(Path("a.md"))


def test_is_within_and_relative_posix(tmp_path):
    root = tmp_path / "site"
    assert utils.is_within(root / "a" / "b.html", root)
    assert utils.is_within(root, root)
    assert not utils.is_within(tmp_path / "other", root)
    assert utils.relative_posix(root / "a" / "b.html", root) == "a/b.html"
    assert utils.relative_posix(tmp_path / "x.html", root) == (tmp_path / "x.html").as_posix()


def test_output_path_for(tmp_path):
    src, out = tmp_path / "site", tmp_path / "output"
    assert utils.output_path_for(src / "blog" / "post.md", src, out, emit=True) == (
        out / "blog" / "post.html"
    )
    assert utils.output_path_for(src / "notes.md", src, out, emit=False) == out / "notes.md"
    assert utils.output_path_for(src / "index.html", src, out, emit=True) == out / "index.html"


def test_collapse_path():
    assert utils.collapse_path(Path("/site/blog/../img/./a.png")) == Path("/site/img/a.png")
    assert utils.collapse_path(Path("/site/../../x")) == Path("/x")


def test_ensure_clean_dir(tmp_path):
    target = tmp_path / "build"
    target.mkdir()
    (target / "old.txt").write_text("old", encoding="utf-8")
    utils.ensure_clean_dir(target)
    assert list(target.iterdir()) == []

    missing = tmp_path / "missing-dir"
    utils.ensure_clean_dir(missing)
    assert missing.exists()


def test_output_path_for_pretty_urls(tmp_path):
    src, out = tmp_path / "site", tmp_path / "output"
    assert utils.output_path_for(src / "about.md", src, out, emit=True, pretty=True) == (
        out / "about" / "index.html"
    )
    assert utils.output_path_for(src / "blog" / "post.html", src, out, emit=True, pretty=True) == (
        out / "blog" / "post" / "index.html"
    )
    assert utils.output_path_for(src / "index.html", src, out, emit=True, pretty=True) == (
        out / "index.html"
    )
    assert utils.output_path_for(src / "a.html", src, out, emit=False, pretty=True) == out / "a.html"


def test_pretty_url():
    page, root = Path("/s/blog/post.html"), Path("/s")
    assert utils.pretty_url("other.html", page, root) == "/blog/other/"
    assert utils.pretty_url("/docs/index.htm?q=1", page, root) == "/docs/?q=1"
    assert utils.pretty_url("../index.html", page, root) == "/"
    assert utils.pretty_url("https://example.com/a.html", page, root) == "https://example.com/a.html"
    assert utils.pretty_url("#top", page, root) == "#top"
    assert utils.pretty_url("style.css", page, root) == "style.css"


def test_resolve_include_path(tmp_path):
    root = tmp_path / "site"
    host = root / "blog" / "post.html"
    assert utils.resolve_include_path("virtual", "/shared/a.html", host, root) == (
        root / "shared" / "a.html"
    )
    assert utils.resolve_include_path("virtual", "shared/a.html", host, root) == (
        root / "shared" / "a.html"
    )
    assert utils.resolve_include_path("file", "a.html", host, root) == root / "blog" / "a.html"
    assert utils.resolve_include_path("file", "/a.html", host, root) == root / "a.html"
    assert utils.resolve_include_path("file", "../../x.html", host, root) is None
