import pytest
from pathlib import Path
from sdz.infrastructure.file_scanner import FileScanner, is_hidden
from sdz.config.models import DEFAULT_EXTENSIONS, DEFAULT_PARTIAL_SUFFIXES


@pytest.fixture
def scanner():
    return FileScanner(DEFAULT_EXTENSIONS, DEFAULT_PARTIAL_SUFFIXES)


def test_file_scanner_finds_slides(tmp_path, scanner):
    (tmp_path / "a.svs").write_text("x")
    (tmp_path / "b.NDPI").write_text("x")
    (tmp_path / "notes.txt").write_text("x")
    sub = tmp_path / "case1"
    sub.mkdir()
    (sub / "c.tiff").write_text("x")

    found = scanner.scan_list(tmp_path)

    assert [p.name for p in found] == ["a.svs", "b.NDPI", "c.tiff"]


def test_file_scanner_skips_hidden_and_partial(tmp_path, scanner):
    (tmp_path / ".hidden.svs").write_text("x")
    hidden_dir = tmp_path / ".cache"
    hidden_dir.mkdir()
    (hidden_dir / "inside.svs").write_text("x")
    (tmp_path / "copying.svs.part").write_text("x")
    (tmp_path / "download.svs.crdownload").write_text("x")
    (tmp_path / "ok.svs").write_text("x")

    assert [p.name for p in scanner.scan(tmp_path)] == ["ok.svs"]


def test_accepts_uses_same_rules(tmp_path, scanner):
    assert scanner.accepts(tmp_path / "a" / "slide.scn", tmp_path)
    assert not scanner.accepts(tmp_path / "a" / "slide.scn.tmp", tmp_path)
    assert not scanner.accepts(tmp_path / ".a" / "slide.scn", tmp_path)
    assert not scanner.accepts(tmp_path / "slide.png", tmp_path)


def test_hidden_parent_above_root_is_ignored():
    root = Path("/home/user/.local/slides")
    assert not is_hidden(root / "case" / "slide.svs", root)
    assert is_hidden(root / ".trash" / "slide.svs", root)


def test_extensions_without_dot(tmp_path):
    scanner = FileScanner(["svs"])
    (tmp_path / "slide.svs").write_text("x")
    assert scanner.scan_list(tmp_path) == [tmp_path / "slide.svs"]


def test_scan_missing_directory_yields_nothing(tmp_path, scanner):
    assert scanner.scan_list(tmp_path / "missing") == []


def test_output_tree_inside_watch_root_is_skipped(tmp_path):
    output = tmp_path / "dzi"
    output.mkdir()
    (output / "old.tif").write_text("x")
    (tmp_path / "new.svs").write_text("x")
    scanner = FileScanner(DEFAULT_EXTENSIONS, DEFAULT_PARTIAL_SUFFIXES, exclude_dirs=[output])

    assert [p.name for p in scanner.scan_list(tmp_path)] == ["new.svs"]
    assert not scanner.accepts(output / "old.tif", tmp_path)
    assert not scanner.accepts(output / "a_files" / "x.tif", tmp_path)
    assert scanner.accepts(tmp_path / "dzi2" / "x.tif", tmp_path)
