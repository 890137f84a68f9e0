"""Tests for catalog enumeration and offset-based reading"""

import os

import pytest

from site_export.catalog import CatalogEnumerator, CatalogReader
from site_export.config import ExportConfig
from site_export.errors import SourceUnavailableError

BIG_FILE_SIZE = 5 * 1024 * 1024


def count_rows(path):
    with CatalogReader(path) as reader:
        return sum(1 for _ in reader)


@pytest.fixture
def catalog_path(tmp_path):
    return str(tmp_path / "catalog.csv")


class TestCatalogEnumerator:
    """Test the source tree walk"""

    def test_enumerates_in_traversal_order(self, export_config, catalog_path):
        """Test rows follow the sorted depth-first walk"""
        stats = CatalogEnumerator(export_config).enumerate(catalog_path)

        with CatalogReader(catalog_path) as reader:
            entries = list(reader)

        assert [e.relative_path for e in entries] == [
            "site/index.php",
            "site/uploads/big.bin",
            "site/uploads/empty.txt",
        ]
        assert [e.size for e in entries] == [10, BIG_FILE_SIZE, 0]
        assert stats.files_found == 3
        assert stats.total_size == 10 + BIG_FILE_SIZE

    def test_excluded_and_oversized_files_counted(self, source_tree, export_dir, catalog_path):
        """Test skipped files are counted, not cataloged"""
        (source_tree / "cache").mkdir()
        (source_tree / "cache" / "page.html").write_text("cached")
        (source_tree / "debug.log").write_text("log line")
        config = ExportConfig(
            source_dir=str(source_tree),
            export_dir=str(export_dir),
            max_file_size=1024,
        )

        stats = CatalogEnumerator(config).enumerate(catalog_path)

        assert stats.files_found == 2
        assert stats.files_excluded == 1
        assert stats.files_excluded_by_size == 1
        assert count_rows(catalog_path) == 2

    def test_empty_tree(self, tmp_path, export_dir, catalog_path):
        """Test an empty tree produces an empty catalog"""
        root = tmp_path / "empty"
        root.mkdir()
        config = ExportConfig(source_dir=str(root), export_dir=str(export_dir))

        stats = CatalogEnumerator(config).enumerate(catalog_path)

        assert stats.files_found == 0
        assert count_rows(catalog_path) == 0

    def test_unreadable_file_counted_as_error(self, export_config, catalog_path, monkeypatch):
        """Test a file without read permission is an enumeration error"""
        real_access = os.access
        monkeypatch.setattr(
            os, "access", lambda path, mode: not str(path).endswith("empty.txt") and real_access(path, mode)
        )

        stats = CatalogEnumerator(export_config).enumerate(catalog_path)

        assert stats.errors == 1
        assert stats.files_excluded == 0
        assert stats.files_found == 2
        assert count_rows(catalog_path) == 2

    def test_missing_source_is_fatal(self, tmp_path, export_dir, catalog_path):
        """Test a missing root fails fast"""
        config = ExportConfig(source_dir=str(tmp_path / "missing"), export_dir=str(export_dir))

        with pytest.raises(SourceUnavailableError):
            CatalogEnumerator(config).enumerate(catalog_path)

    def test_base_path_name_prefix(self, source_tree, export_dir, catalog_path):
        """Test relative paths are rooted at the base path name"""
        config = ExportConfig(source_dir=str(source_tree), export_dir=str(export_dir), base_path_name="wp-content")
        CatalogEnumerator(config).enumerate(catalog_path)

        with CatalogReader(catalog_path) as reader:
            first = next(iter(reader))
        assert first.relative_path == "wp-content/index.php"

    def test_names_with_commas_and_quotes(self, tmp_path, export_dir, catalog_path):
        """Test CSV quoting survives awkward file names"""
        root = tmp_path / "odd"
        root.mkdir()
        (root / 'a, "quoted" name.txt').write_text("x")
        config = ExportConfig(source_dir=str(root), export_dir=str(export_dir))
        CatalogEnumerator(config).enumerate(catalog_path)

        with CatalogReader(catalog_path) as reader:
            entry = next(iter(reader))
        assert entry.relative_path == 'odd/a, "quoted" name.txt'


class TestCatalogReader:
    """Test resuming the catalog by byte offset"""

    def test_offsets_resume_exactly(self, export_config, catalog_path):
        """Test reading from an entry's offset yields the rest of the catalog"""
        CatalogEnumerator(export_config).enumerate(catalog_path)

        with CatalogReader(catalog_path) as reader:
            entries = list(reader)

        with CatalogReader(catalog_path, entries[0].offset) as reader:
            rest = list(reader)

        assert [e.relative_path for e in rest] == [e.relative_path for e in entries[1:]]
        assert rest[-1].offset == entries[-1].offset

    def test_offset_at_end_yields_nothing(self, export_config, catalog_path):
        """Test a cursor at end of file means the catalog is exhausted"""
        CatalogEnumerator(export_config).enumerate(catalog_path)
        with CatalogReader(catalog_path) as reader:
            last = list(reader)[-1]

        with CatalogReader(catalog_path, last.offset) as reader:
            assert list(reader) == []

    def test_requires_context_manager(self, catalog_path):
        """Test iterating outside a with block is an error"""
        with pytest.raises(RuntimeError):
            list(CatalogReader(catalog_path))
