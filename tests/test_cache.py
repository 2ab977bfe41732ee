import json
from pathlib import Path

from loom.cache import DEPS_CACHE_FILE, ERROR_HASH, HASH_CACHE_FILE, BuildCache


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_dependency_change_and_revert(tmp_path):
    page = write(tmp_path / "site" / "index.html", "<div data-import='d'></div>")
    dep = write(tmp_path / "site" / "_includes" / "d.html", "<p>one</p>")
    out = write(tmp_path / "output" / "index.html", "<p>one</p>")
    cache = BuildCache(tmp_path / ".cache")
    cache.record(page, out, [dep])
    assert cache.is_up_to_date(page, out)

    dep.write_text("<p>two</p>", encoding="utf-8")
    assert not cache.is_up_to_date(page, out)

    dep.write_text("<p>one</p>", encoding="utf-8")
    assert cache.is_up_to_date(page, out)


def test_missing_output_is_stale(tmp_path):
    page = write(tmp_path / "index.html", "x")
    cache = BuildCache(None)
    cache.record(page, tmp_path / "out.html", [])
    assert not cache.is_up_to_date(page, tmp_path / "out.html")


def test_unknown_and_deleted_files_are_changed(tmp_path):
    cache = BuildCache(None)
    page = write(tmp_path / "a.html", "x")
    assert cache.has_file_changed(page)
    cache.update_file_hash(page)
    assert not cache.has_file_changed(page)
    page.unlink()
    assert cache.hash_file(page) == ERROR_HASH
    assert cache.has_file_changed(page)


def test_entry_reports_current_hash(tmp_path):
    cache = BuildCache(None)
    page = write(tmp_path / "a.html", "x")
    cache.record(page, tmp_path / "out" / "a.html", [])
    recorded = cache.get_entry(page).recorded_hash
    page.write_text("y", encoding="utf-8")
    entry = cache.get_entry(page)
    assert entry.recorded_hash == recorded
    assert entry.content_hash != recorded
    assert entry.output_path == tmp_path / "out" / "a.html"


def test_transitive_dependents(tmp_path):
    cache = BuildCache(None)
    a, b, c, frag = (tmp_path / name for name in ("a.html", "b.html", "c.html", "frag.html"))
    cache.set_dependencies(a, [frag])
    cache.set_dependencies(b, [a])
    cache.set_dependencies(c, [tmp_path / "other.html"])
    assert cache.get_dependents(frag) == {a, b}
    assert cache.get_dependents(frag, transitive=False) == {a}
    assert cache.has_entry(frag)
    assert not cache.has_entry(tmp_path / "nowhere.html")


def test_dependencies_never_include_the_page(tmp_path):
    cache = BuildCache(None)
    page = tmp_path / "a.html"
    cache.set_dependencies(page, [page, tmp_path / "b.html"])
    cache.add_dependency(page, page)
    assert cache.get_dependencies(page) == [tmp_path / "b.html"]


def test_persist_and_reload(tmp_path):
    page = write(tmp_path / "site" / "a.html", "a")
    dep = write(tmp_path / "site" / "b.html", "b")
    out = write(tmp_path / "output" / "a.html", "a")
    cache_dir = tmp_path / ".cache"
    cache = BuildCache(cache_dir)
    cache.record(page, out, [dep])
    assert cache.persist()

    document = json.loads((cache_dir / DEPS_CACHE_FILE).read_text(encoding="utf-8"))
    assert document["dependencies"] == {str(page): [str(dep)]}
    assert not list(cache_dir.glob("*.tmp"))

    reloaded = BuildCache(cache_dir)
    assert reloaded.is_up_to_date(page, out)
    assert reloaded.get_dependencies(page) == [dep]
    assert reloaded.output_for(page) == out


def test_corrupt_cache_loads_cold(tmp_path):
    cache_dir = tmp_path / ".cache"
    cache_dir.mkdir()
    (cache_dir / HASH_CACHE_FILE).write_text("{not json", encoding="utf-8")
    (cache_dir / DEPS_CACHE_FILE).write_text('{"version": 1, "dependencies": {}}', encoding="utf-8")
    cache = BuildCache(cache_dir)
    assert cache.stats()["hashed_files"] == 0
    assert cache.pages() == []


def test_unsupported_version_loads_cold(tmp_path):
    cache_dir = tmp_path / ".cache"
    cache_dir.mkdir()
    (cache_dir / HASH_CACHE_FILE).write_text('{"version": 99, "hashes": {"a": "b"}}', encoding="utf-8")
    (cache_dir / DEPS_CACHE_FILE).write_text('{"version": 99}', encoding="utf-8")
    assert BuildCache(cache_dir).stats()["hashed_files"] == 0


def test_persist_failure_is_reported_not_raised(tmp_path):
    blocker = write(tmp_path / "blocker", "file, not a directory")
    cache = BuildCache(blocker / "cache")
    cache.update_file_hash(blocker)
    assert cache.persist() is False


def test_clear_removes_files(tmp_path):
    cache_dir = tmp_path / ".cache"
    page = write(tmp_path / "a.html", "a")
    cache = BuildCache(cache_dir)
    cache.record(page, None, [])
    cache.persist()
    cache.clear()
    assert not (cache_dir / HASH_CACHE_FILE).exists()
    assert not (cache_dir / DEPS_CACHE_FILE).exists()
    assert cache.pages() == []


def test_disabled_cache_is_never_fresh(tmp_path):
    page = write(tmp_path / "a.html", "a")
    out = write(tmp_path / "out.html", "a")
    cache = BuildCache(tmp_path / ".cache", enabled=False)
    cache.record(page, out, [])
    assert not cache.is_up_to_date(page, out)
    assert cache.persist() is False


def test_remove_forgets_page(tmp_path):
    cache = BuildCache(None)
    page = write(tmp_path / "a.html", "a")
    cache.record(page, tmp_path / "out.html", [tmp_path / "b.html"])
    cache.remove(page)
    assert not cache.is_page(page)
    assert cache.output_for(page) is None


def test_group_helpers_and_dirty_flag(tmp_path):
    a = write(tmp_path / "a.html", "a")
    b = write(tmp_path / "b.html", "b")
    cache = BuildCache(None)
    hashes = cache.hash_files([a, b])
    assert set(hashes) == {a, b}
    assert hashes[a] != hashes[b]
    assert not cache.dirty

    cache.update_file_hash(a)
    cache.update_file_hash(b)
    assert cache.dirty
    assert not cache.has_group_changed([a, b])
    b.write_text("changed", encoding="utf-8")
    assert cache.has_group_changed([a, b])


def test_shared_dependency_stays_stale_for_unrecorded_pages(tmp_path):
    nav = write(tmp_path / "site" / "_includes" / "nav.html", "<nav>v1</nav>")
    pages = [write(tmp_path / "site" / f"{name}.html", "<div data-import='nav'></div>") for name in "abc"]
    outputs = [write(tmp_path / "output" / page.name, "<nav>v1</nav>") for page in pages]
    cache = BuildCache(None)
    for page, out in zip(pages, outputs):
        cache.record(page, out, [nav])

    nav.write_text("<nav>v2</nav>", encoding="utf-8")
    cache.record(pages[0], outputs[0], [nav])
    assert cache.is_up_to_date(pages[0], outputs[0])
    assert not cache.is_up_to_date(pages[1], outputs[1])
    assert not cache.is_up_to_date(pages[2], outputs[2])


def test_snapshots_survive_reload(tmp_path):
    dep = write(tmp_path / "site" / "d.html", "one")
    a = write(tmp_path / "site" / "a.html", "a")
    b = write(tmp_path / "site" / "b.html", "b")
    out_a = write(tmp_path / "output" / "a.html", "a")
    out_b = write(tmp_path / "output" / "b.html", "b")
    cache_dir = tmp_path / ".cache"
    cache = BuildCache(cache_dir)
    cache.record(a, out_a, [dep])
    cache.record(b, out_b, [dep])
    dep.write_text("two", encoding="utf-8")
    cache.record(a, out_a, [dep])
    assert cache.persist()

    document = json.loads((cache_dir / DEPS_CACHE_FILE).read_text(encoding="utf-8"))
    assert set(document["snapshots"]) == {str(a), str(b)}

    reloaded = BuildCache(cache_dir)
    assert reloaded.is_up_to_date(a, out_a)
    assert not reloaded.is_up_to_date(b, out_b)


def test_page_without_snapshot_is_stale(tmp_path):
    page = write(tmp_path / "a.html", "a")
    out = write(tmp_path / "out.html", "a")
    cache = BuildCache(None)
    cache.update_file_hash(page)
    assert not cache.is_up_to_date(page, out)
