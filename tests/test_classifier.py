from pathlib import Path

import pytest

from loom.classifier import Action, FileClassifier, Tier
from loom.config import load_config
from loom.errors import ValidationError
from loom.patterns import gitignore_to_globs


def test_default_routing():
    classifier = FileClassifier()
    assert classifier.classify("index.html").action == Action.EMIT
    assert classifier.classify("blog/post.md").action == Action.EMIT
    assert classifier.classify("assets/logo.png").action == Action.COPY
    assert classifier.classify("images/photo.jpg").action == Action.COPY
    assert classifier.classify("Makefile").action == Action.SKIP

    result = classifier.classify("index.html")
    assert result.tier == Tier.DEFAULT
    assert result.reason == "renderable extension"


def test_underscore_partials_are_ignored():
    classifier = FileClassifier()
    for path in ("_header.html", "_includes/nav.html", "blog/_layout.html"):
        result = classifier.classify(path)
        assert result.action == Action.IGNORED
        assert result.tier == Tier.IGNORE


def test_render_pattern_beats_auto_ignore():
    classifier = FileClassifier()
    classifier.add_render_patterns(["_special.html"])
    result = classifier.classify("_special.html")
    assert result.action == Action.EMIT
    assert result.tier == Tier.EXPLICIT
    assert result.matched_pattern == "_special.html"


def test_disabling_auto_ignore_emits_partials():
    classifier = FileClassifier(auto_ignore=False)
    result = classifier.classify("_partial.html")
    assert result.action == Action.EMIT
    assert result.tier == Tier.EXPLICIT


def test_negated_copy_pattern_skips_asset():
    classifier = FileClassifier()
    classifier.add_copy_patterns(["assets/**", "!assets/secret/**"])
    assert classifier.classify("assets/secret/x.png").action == Action.SKIP
    assert classifier.classify("assets/logo.png").action == Action.COPY


def test_copy_pattern_routes_unknown_extension():
    classifier = FileClassifier()
    classifier.add_copy_patterns(["downloads/**"])
    result = classifier.classify("downloads/archive.tar.gz")
    assert result.action == Action.COPY
    assert result.matched_pattern == "downloads/**"


def test_copy_pattern_does_not_override_emit():
    classifier = FileClassifier()
    classifier.add_copy_patterns(["docs/**"])
    assert classifier.classify("docs/guide.html").action == Action.EMIT


def test_ignore_pattern_wins_over_defaults():
    classifier = FileClassifier()
    classifier.add_ignore_patterns(["drafts/**"])
    assert classifier.classify("drafts/a.html").action == Action.IGNORED
    assert classifier.classify("drafts/img.png").action == Action.IGNORED
    assert classifier.classify("posts/a.html").action == Action.EMIT


def test_ignore_render_with_copy_pattern():
    classifier = FileClassifier()
    classifier.add_ignore_render_patterns(["raw/**"])
    assert classifier.classify("raw/a.html").action == Action.IGNORED

    classifier.add_copy_patterns(["raw/**"])
    result = classifier.classify("raw/a.html")
    assert result.action == Action.COPY
    assert result.tier == Tier.DEFAULT


def test_ignore_copy_excludes_assets_only():
    classifier = FileClassifier()
    classifier.add_ignore_copy_patterns(["**/*.zip", "docs/**"])
    assert classifier.classify("assets/big.zip").action == Action.IGNORED
    assert classifier.classify("docs/page.html").action == Action.EMIT


def test_conflicting_copy_patterns_warn():
    classifier = FileClassifier()
    classifier.add_copy_patterns(["docs/**"])
    classifier.add_ignore_copy_patterns(["docs/**"])
    assert len(classifier.warnings) == 1
    assert "docs/**" in classifier.warnings[0]


def test_gitignore_rules():
    classifier = FileClassifier()
    classifier.add_gitignore_patterns(gitignore_to_globs(["secret/", "*.bak"]))
    assert classifier.classify("secret/a.html").action == Action.IGNORED
    assert classifier.classify("notes.txt.bak").action == Action.IGNORED
    assert classifier.classify("a.html").action == Action.EMIT


def test_auto_ignored_registry():
    classifier = FileClassifier()
    classifier.add_auto_ignored("layouts/base.html", "layout")
    result = classifier.classify("layouts/base.html")
    assert result.action == Action.IGNORED
    assert result.reason == "layout"

    classifier.clear_auto_ignored()
    assert classifier.classify("layouts/base.html").action == Action.EMIT


def test_classification_is_deterministic():
    patterns = ["blog/**", "!blog/drafts/**"]
    paths = ["blog/a.html", "blog/drafts/b.html", "index.md", "assets/x.css"]
    first = FileClassifier()
    second = FileClassifier()
    first.add_ignore_patterns(patterns)
    second.add_ignore_patterns(patterns)
    assert first.classify_many(paths) == second.classify_many(paths)


def test_classify_many_normalizes_keys():
    results = FileClassifier().classify_many(["./index.html", Path("blog") / "post.md"])
    assert set(results) == {"index.html", "blog/post.md"}


def test_invalid_pattern_raises():
    classifier = FileClassifier()
    with pytest.raises(ValidationError):
        classifier.add_render_patterns(["a["])
    assert len(classifier.render) == 0


def test_case_insensitive_by_default():
    classifier = FileClassifier()
    classifier.add_ignore_patterns(["DRAFTS/**"])
    assert classifier.classify("drafts/a.html").action == Action.IGNORED

    strict = FileClassifier(case_sensitive=True)
    strict.add_ignore_patterns(["DRAFTS/**"])
    assert strict.classify("drafts/a.html").action == Action.EMIT


def test_from_config_reads_gitignore(tmp_path):
    (tmp_path / "site").mkdir()
    (tmp_path / "site" / ".gitignore").write_text("tmp/\n", encoding="utf-8")
    (tmp_path / "loom.yaml").write_text("copy:\n  - 'static/**'\n", encoding="utf-8")
    classifier = FileClassifier.from_config(load_config(tmp_path))
    assert classifier.classify("tmp/a.html").action == Action.IGNORED
    assert classifier.classify("static/data.bin").action == Action.COPY
