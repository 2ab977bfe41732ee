from pathlib import Path

import pytest

from loom.composer import Composer, EdgeKind
from loom.config import load_config
from loom.errors import CircularImportError, DepthExceededError, FragmentNotFoundError


def create_site(tmp_path: Path, files: dict[str, str]) -> Path:
    site = tmp_path / "site"
    site.mkdir(exist_ok=True)
    for rel, content in files.items():
        target = site / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return site.resolve()


def make_composer(tmp_path: Path, **overrides) -> Composer:
    return Composer(load_config(tmp_path, overrides))


LAYOUT = (
    "<!DOCTYPE html>\n"
    "<html><head><title>Site</title>"
    '<link rel="stylesheet" href="/style.css"></head>'
    '<body><header><slot name="nav">Default nav</slot></header>'
    "<main><slot></slot></main></body></html>"
)


def test_import_with_named_and_default_slots(tmp_path):
    site = create_site(
        tmp_path,
        {
            "_includes/card.html": (
                '<div class="card"><h2><slot name="title">Untitled</slot></h2>'
                "<slot>No body</slot></div>"
            ),
            "index.html": (
                "<html><head><title>Home</title></head><body>"
                '<div data-import="card"><span data-target="title">Hello</span><p>Body</p></div>'
                "</body></html>"
            ),
        },
    )
    document = make_composer(tmp_path).compose(site / "index.html")
    assert document.html == (
        "<html><head><title>Home</title></head><body>"
        '<div class="card"><h2><span>Hello</span></h2><p>Body</p></div>'
        "</body></html>"
    )
    assert document.dependency_paths == [site / "_includes" / "card.html"]
    kinds = {edge.kind for edge in document.dependencies}
    assert kinds == {EdgeKind.FRAGMENT}


def test_unfilled_import_slots_use_fallbacks(tmp_path):
    site = create_site(
        tmp_path,
        {
            "_includes/card.html": '<h2><slot name="title">Untitled</slot></h2><slot>No body</slot>',
            "index.html": '<div data-import="card"></div>',
        },
    )
    document = make_composer(tmp_path).compose(site / "index.html")
    assert document.html == "<h2>Untitled</h2>No body"


def test_layout_wraps_page_and_merges_head(tmp_path):
    site = create_site(
        tmp_path,
        {
            "_layout.html": LAYOUT,
            "style.css": "body {}",
            "about.html": (
                "<html><head><title>About</title>"
                '<link rel="stylesheet" href="/style.css"></head>'
                "<body><h1>About</h1></body></html>"
            ),
        },
    )
    document = make_composer(tmp_path).compose(site / "about.html")
    html = document.html
    assert "<title>About</title>" in html
    assert "<title>Site</title>" not in html
    assert html.count('href="/style.css"') == 1
    assert "<main><h1>About</h1></main>" in html
    assert "<header>Default nav</header>" in html
    assert "<slot" not in html
    assert document.layout.source == "discovery"
    assert [e.key for e in document.head_elements] == ["title", "link:stylesheet:/style.css"]
    assert document.dependency_paths == [site / "_layout.html", site / "style.css"]
    kinds = {edge.dependency.name: edge.kind for edge in document.dependencies}
    assert kinds == {"_layout.html": EdgeKind.LAYOUT, "style.css": EdgeKind.ASSET}


def test_page_targets_fill_layout_slots(tmp_path):
    site = create_site(
        tmp_path,
        {
            "_layout.html": LAYOUT,
            "page.html": (
                '<nav data-target="nav"><a href="/">Home</a></nav>'
                '<template data-target="head"><meta name="description" content="x"></template>'
                "<p>Content</p>"
            ),
        },
    )
    html = make_composer(tmp_path).compose(site / "page.html").html
    assert '<header><nav><a href="/">Home</a></nav></header>' in html
    assert "<main><p>Content</p></main>" in html
    assert '<meta name="description" content="x">' in html
    assert "data-target" not in html


def test_explicit_layout_directive_is_stripped(tmp_path):
    site = create_site(
        tmp_path,
        {
            "layouts/plain.html": "<html><body><slot></slot></body></html>",
            "page.html": '<html data-layout="/layouts/plain.html"><body><p>x</p></body></html>',
        },
    )
    document = make_composer(tmp_path).compose(site / "page.html")
    assert document.html == "<html><body><p>x</p></body></html>"
    assert document.layout.source == "explicit"


def test_markdown_page_without_layout_gets_boilerplate(tmp_path):
    site = create_site(
        tmp_path,
        {"post.md": "---\ntitle: My Post\ndescription: Intro\n---\n# Heading\n\nText\n"},
    )
    html = make_composer(tmp_path).compose(site / "post.md").html
    assert html.startswith("<!DOCTYPE html>")
    assert html.count("<title>") == 1
    assert "<title>My Post</title>" in html
    assert '<meta name="description" content="Intro">' in html
    assert '<h1 id="heading">Heading</h1>' in html


def test_markdown_title_falls_back_to_heading(tmp_path):
    site = create_site(tmp_path, {"notes.md": "# Release Notes\n\nBody\n"})
    html = make_composer(tmp_path).compose(site / "notes.md").html
    assert "<title>Release Notes</title>" in html


def test_markdown_page_frontmatter_merges_into_layout_head(tmp_path):
    site = create_site(
        tmp_path,
        {"_layout.html": LAYOUT, "doc.md": "---\ntitle: Doc\n---\nSome *text*\n"},
    )
    html = make_composer(tmp_path).compose(site / "doc.md").html
    assert "<title>Doc</title>" in html
    assert "<em>text</em>" in html


def test_markdown_fragment_import(tmp_path):
    site = create_site(
        tmp_path,
        {"_includes/note.md": "**Note**\n", "index.html": '<div data-import="note.md"></div>'},
    )
    html = make_composer(tmp_path).compose(site / "index.html").html
    assert "<strong>Note</strong>" in html


def test_circular_import_raises_with_chain(tmp_path):
    site = create_site(
        tmp_path,
        {"a.html": '<div data-import="b.html"></div>', "b.html": '<div data-import="a.html"></div>'},
    )
    with pytest.raises(CircularImportError) as excinfo:
        make_composer(tmp_path).compose(site / "a.html")
    chain = excinfo.value.chain
    assert site / "a.html" in chain
    assert site / "b.html" in chain


def build_chain(tmp_path: Path, length: int) -> Path:
    files = {"index.html": '<div data-import="f1"></div>'}
    for i in range(1, length):
        files[f"_includes/f{i}.html"] = f'<div data-import="f{i + 1}"></div>'
    files[f"_includes/f{length}.html"] = "<p>leaf</p>"
    return create_site(tmp_path, files)


def test_ten_deep_chain_succeeds(tmp_path):
    site = build_chain(tmp_path, 10)
    document = make_composer(tmp_path).compose(site / "index.html")
    assert document.html == "<p>leaf</p>"
    assert len(document.dependency_paths) == 10


def test_eleven_deep_chain_fails(tmp_path):
    site = build_chain(tmp_path, 11)
    with pytest.raises(DepthExceededError) as excinfo:
        make_composer(tmp_path).compose(site / "index.html")
    assert excinfo.value.depth == 11
    assert excinfo.value.max_depth == 10


def test_missing_fragment_leaves_comment(tmp_path):
    site = create_site(tmp_path, {"index.html": '<div data-import="nope"></div><p>ok</p>'})
    document = make_composer(tmp_path).compose(site / "index.html")
    assert "<!-- Import error: Fragment not found: nope" in document.html
    assert "<p>ok</p>" in document.html
    assert len(document.warnings) == 1


def test_missing_fragment_is_fatal_in_strict_mode(tmp_path):
    site = create_site(tmp_path, {"index.html": '<div data-import="nope"></div>'})
    with pytest.raises(FragmentNotFoundError) as excinfo:
        make_composer(tmp_path, strict=True).compose(site / "index.html")
    assert excinfo.value.searched_paths


def test_relative_asset_dependency(tmp_path):
    site = create_site(
        tmp_path,
        {"blog/img/a.png": "png", "blog/post.html": '<img src="img/a.png"><img src="img/missing.png">'},
    )
    document = make_composer(tmp_path).compose(site / "blog" / "post.html")
    assert document.dependency_paths == [site / "blog" / "img" / "a.png"]


class UpperRenderer:
    def render(self, text: str, path: Path) -> str:
        return f"<p>{text.strip().upper()}</p>"


def test_custom_markdown_renderer(tmp_path):
    site = create_site(tmp_path, {"page.md": "---\nlayout: false\n---\nhello\n"})
    composer = Composer(load_config(tmp_path), renderer=UpperRenderer())
    assert "<p>HELLO</p>" in composer.compose(site / "page.md").html


TITLED_PAGE = (
    "<html><head><title>Page</title></head><body>"
    '<div data-import="widget.md"></div><div data-import="card"></div>'
    "</body></html>"
)
TITLED_COMPONENTS = {
    "_includes/widget.md": "---\ntitle: Widget\n---\nWidget body\n",
    "_includes/card.html": '<title data-target="head">Card</title><div>card</div>',
}


def test_page_title_beats_component_heads_in_layout(tmp_path):
    site = create_site(
        tmp_path, {"_layout.html": LAYOUT, "index.html": TITLED_PAGE, **TITLED_COMPONENTS}
    )
    html = make_composer(tmp_path).compose(site / "index.html").html
    assert html.count("<title>") == 1
    assert "<title>Page</title>" in html
    assert "<div>card</div>" in html
    assert "data-target" not in html


def test_page_title_beats_component_heads_without_layout(tmp_path):
    site = create_site(tmp_path, {"index.html": TITLED_PAGE, **TITLED_COMPONENTS})
    document = make_composer(tmp_path).compose(site / "index.html")
    assert document.html.count("<title>") == 1
    assert "<title>Page</title>" in document.html
    assert [e.key for e in document.head_elements] == ["title"]


def test_component_head_fills_page_without_title(tmp_path):
    site = create_site(
        tmp_path,
        {
            "_includes/card.html": '<title data-target="head">Card</title><div>card</div>',
            "index.html": '<html><head></head><body><div data-import="card"></div></body></html>',
        },
    )
    html = make_composer(tmp_path).compose(site / "index.html").html
    assert "<title>Card</title>" in html
    assert html.index("<title>Card</title>") < html.index("</head>")


@pytest.mark.parametrize("with_layout", [False, True])
def test_fragment_head_is_lifted_into_document_head(tmp_path, with_layout):
    files = {
        "_includes/card.html": (
            '<head><link rel="stylesheet" href="/card.css"></head><div>card</div>'
        ),
        "index.html": (
            "<html><head><title>Home</title></head>"
            '<body><div data-import="card"></div></body></html>'
        ),
    }
    if with_layout:
        files["_layout.html"] = LAYOUT
    site = create_site(tmp_path, files)
    html = make_composer(tmp_path).compose(site / "index.html").html
    assert html.count("<head>") == 1
    head_end = html.index("</head>")
    assert html.index('<link rel="stylesheet" href="/card.css">') < head_end
    assert html.index("<div>card</div>") > head_end
    assert "<title>Home</title>" in html


def test_fragment_document_contributes_head_and_body(tmp_path):
    site = create_site(
        tmp_path,
        {
            "_includes/badge.html": (
                '<html><head><meta name="badge" content="1"></head>'
                '<body><span class="badge">b</span></body></html>'
            ),
            "index.html": '<html><head></head><body><div data-import="badge"></div></body></html>',
        },
    )
    html = make_composer(tmp_path).compose(site / "index.html").html
    assert '<body><span class="badge">b</span></body>' in html
    assert html.index('<meta name="badge" content="1">') < html.index("</head>")


def test_virtual_and_file_includes_are_inlined(tmp_path):
    site = create_site(
        tmp_path,
        {
            "shared/footer.html": '<footer><!--#include file="note.txt" --></footer>',
            "shared/note.txt": "hi",
            "shared/intro.md": "Some *text*\n",
            "blog/post.html": (
                '<!--#include file="/shared/intro.md" --><main>x</main>'
                '<!--#include virtual="/shared/footer.html" -->'
            ),
        },
    )
    document = make_composer(tmp_path).compose(site / "blog" / "post.html")
    assert "<em>text</em>" in document.html
    assert document.html.endswith("<main>x</main><footer>hi</footer>")
    assert document.dependency_paths == [
        site / "shared" / "footer.html",
        site / "shared" / "intro.md",
        site / "shared" / "note.txt",
    ]


def test_included_markup_can_import_fragments(tmp_path):
    site = create_site(
        tmp_path,
        {
            "_includes/card.html": "<div>card</div>",
            "shared/cards.html": '<section><div data-import="card"></div></section>',
            "index.html": '<!--#include virtual="/shared/cards.html" -->',
        },
    )
    html = make_composer(tmp_path).compose(site / "index.html").html
    assert html == "<section><div>card</div></section>"


def test_missing_include_leaves_comment(tmp_path):
    site = create_site(
        tmp_path,
        {
            "index.html": (
                '<!--#include virtual="/nope.html" --><p>ok</p>'
                '<!--#include file="../../outside.html" -->'
            )
        },
    )
    document = make_composer(tmp_path).compose(site / "index.html")
    assert document.html == (
        "<!-- Include not found: /nope.html --><p>ok</p>"
        "<!-- Include not found: ../../outside.html -->"
    )
    assert len(document.warnings) == 2


def test_missing_include_is_fatal_in_strict_mode(tmp_path):
    site = create_site(tmp_path, {"index.html": '<!--#include virtual="/nope.html" -->'})
    with pytest.raises(FragmentNotFoundError):
        make_composer(tmp_path, strict=True).compose(site / "index.html")


def test_circular_include_raises(tmp_path):
    site = create_site(
        tmp_path,
        {
            "a.html": '<!--#include file="b.html" -->',
            "b.html": '<!--#include file="a.html" -->',
        },
    )
    with pytest.raises(CircularImportError):
        make_composer(tmp_path).compose(site / "a.html")


def test_page_html_and_body_attributes_merge_onto_layout(tmp_path):
    site = create_site(
        tmp_path,
        {
            "_layout.html": (
                '<html lang="en" class="base"><head><title>S</title></head>'
                '<body id="layout" class="l"><slot></slot></body></html>'
            ),
            "page.html": (
                '<html class="dark" data-theme="night" lang="fr">'
                '<body id="page" class="p l"><p>x</p></body></html>'
            ),
        },
    )
    html = make_composer(tmp_path).compose(site / "page.html").html
    assert '<html lang="fr" class="base dark" data-theme="night">' in html
    assert '<body id="layout" class="l p"><p>x</p></body>' in html


def test_pretty_urls_rewrite_page_links(tmp_path):
    site = create_site(
        tmp_path,
        {
            "blog/post.html": (
                '<a href="../about.html">A</a><a href="index.html#top">I</a>'
                '<a href="https://example.com/x.html">X</a><a href="img.png">P</a>'
            )
        },
    )
    html = make_composer(tmp_path, pretty_urls=True).compose(site / "blog" / "post.html").html
    assert html == (
        '<a href="/about/">A</a><a href="/blog/#top">I</a>'
        '<a href="https://example.com/x.html">X</a><a href="img.png">P</a>'
    )
