"""Tests for the archive container and the resumable packer"""

import os

import pytest

from site_export.archive import (
    HEADER_SIZE,
    ArchiveHeader,
    ArchivePacker,
    ArchiveReader,
    verify_archive,
)
from site_export.catalog import CatalogEnumerator
from site_export.config import ExportConfig
from site_export.errors import (
    ArchiveCorruptedError,
    ArchiveHeaderError,
    FailureCeilingExceededError,
)
from site_export.types import SessionCheckpoint


def pack_all(config, catalog_path, archive_path, checkpoint, max_slices=1000):
    """Run packing slices until the catalog is exhausted; return the slice count"""
    packer = ArchivePacker(config)
    for slices in range(1, max_slices + 1):
        if packer.pack(catalog_path, archive_path, checkpoint).completed:
            return slices
    raise AssertionError("packer never completed")


@pytest.fixture
def cataloged(export_config, tmp_path):
    """Enumerated catalog plus a fresh checkpoint and archive path"""
    catalog_path = str(tmp_path / "catalog.csv")
    stats = CatalogEnumerator(export_config).enumerate(catalog_path)
    checkpoint = SessionCheckpoint(session_id="s1", catalog_total=stats.files_found)
    return catalog_path, str(tmp_path / "content.archive"), checkpoint


class TestArchiveHeader:
    """Test the fixed-width header record"""

    def test_header_is_4375_bytes(self):
        """Test the encoded header size"""
        header = ArchiveHeader.for_entry("site/uploads/photo.jpg", 1234, 1700000000)
        assert len(header.encode()) == HEADER_SIZE == 4375

    def test_field_layout(self):
        """Test name, size, mtime and dir sit at their fixed offsets"""
        data = ArchiveHeader.for_entry("site/uploads/photo.jpg", 1234, 1700000000).encode()

        assert data[:9] == b"photo.jpg"
        assert data[9:255] == b"\0" * 246
        assert int.from_bytes(data[255:259], "little") == 1234
        assert int.from_bytes(data[259:263], "little") == 1700000000
        assert data[263:275] == b"site%2Fuploa"

    def test_root_entry_directory_is_dot(self):
        """Test an entry at the archive root records '.' as its directory"""
        header = ArchiveHeader.decode(ArchiveHeader.for_entry("readme.txt", 1, 1).encode())
        assert header.directory == "."
        assert header.relative_path == "readme.txt"

    def test_non_ascii_and_spaces_survive(self):
        """Test percent-encoding round trip for awkward names"""
        original = ArchiveHeader.for_entry("site/überall/a b+c.txt", 5, 7)
        decoded = ArchiveHeader.decode(original.encode())
        assert decoded == original
        assert decoded.relative_path == "site/überall/a b+c.txt"

    def test_overlong_name_rejected(self):
        """Test a name that does not fit its field"""
        with pytest.raises(ArchiveHeaderError):
            ArchiveHeader.for_entry("site/" + "x" * 300, 1, 1).encode()

    def test_oversized_file_rejected(self):
        """Test a size beyond the u32 field"""
        with pytest.raises(ArchiveHeaderError):
            ArchiveHeader.for_entry("site/huge.bin", 2 ** 32, 1).encode()

    def test_decode_wrong_length(self):
        """Test decoding a short buffer"""
        with pytest.raises(ArchiveCorruptedError):
            ArchiveHeader.decode(b"\0" * 100)


class TestArchivePacker:
    """Test packing, pausing and resuming"""

    def test_round_trip(self, export_config, cataloged, source_tree, tmp_path):
        """Test every cataloged file is extracted byte-identical"""
        catalog_path, archive_path, checkpoint = cataloged
        pack_all(export_config, catalog_path, archive_path, checkpoint)

        written = ArchiveReader(archive_path).extract_all(str(tmp_path / "extracted"))

        assert written == ["site/index.php", "site/uploads/big.bin", "site/uploads/empty.txt"]
        for rel in ("index.php", "uploads/big.bin", "uploads/empty.txt"):
            original = (source_tree / rel).read_bytes()
            assert (tmp_path / "extracted" / "site" / rel).read_bytes() == original
        assert checkpoint.files_processed == 3
        assert checkpoint.archive_cursor == os.path.getsize(archive_path)

    def test_empty_catalog_gives_empty_archive(self, tmp_path, export_dir):
        """Test N=0 entries produces a zero-length archive"""
        root = tmp_path / "empty"
        root.mkdir()
        config = ExportConfig(source_dir=str(root), export_dir=str(export_dir))
        catalog_path = str(tmp_path / "catalog.csv")
        CatalogEnumerator(config).enumerate(catalog_path)
        checkpoint = SessionCheckpoint(session_id="s1")

        pack_all(config, catalog_path, str(tmp_path / "a.archive"), checkpoint)

        assert os.path.getsize(tmp_path / "a.archive") == 0
        assert list(ArchiveReader(str(tmp_path / "a.archive")).entries()) == []

    def test_length_is_headers_plus_payloads(self, export_config, cataloged):
        """Test archive length equals the sum of headers and payloads"""
        catalog_path, archive_path, checkpoint = cataloged
        pack_all(export_config, catalog_path, archive_path, checkpoint)

        scan = verify_archive(archive_path)

        assert scan.valid
        assert scan.entries == 3
        assert scan.length == 3 * HEADER_SIZE + scan.payload_bytes

    def test_sliced_run_matches_single_run(self, export_config, source_tree, export_dir, tmp_path):
        """Test an archive built one file per slice equals one built in a single slice"""
        single_catalog = str(tmp_path / "single.csv")
        CatalogEnumerator(export_config).enumerate(single_catalog)
        single = SessionCheckpoint(session_id="a")
        pack_all(export_config, single_catalog, str(tmp_path / "single.archive"), single)

        sliced_config = ExportConfig(source_dir=str(source_tree), export_dir=str(export_dir), files_per_slice=1)
        sliced_catalog = str(tmp_path / "sliced.csv")
        CatalogEnumerator(sliced_config).enumerate(sliced_catalog)
        sliced = SessionCheckpoint(session_id="b")
        slices = pack_all(sliced_config, sliced_catalog, str(tmp_path / "sliced.archive"), sliced)

        # One slice per file, then one that finds the catalog exhausted
        assert slices == 4
        assert sliced.archive_cursor == single.archive_cursor
        assert (tmp_path / "sliced.archive").read_bytes() == (tmp_path / "single.archive").read_bytes()

    def test_torn_tail_is_truncated_on_resume(self, source_tree, export_dir, tmp_path):
        """Test bytes past the checkpointed cursor are discarded before resuming"""
        config = ExportConfig(source_dir=str(source_tree), export_dir=str(export_dir), files_per_slice=1)
        catalog_path = str(tmp_path / "catalog.csv")
        archive_path = str(tmp_path / "content.archive")
        CatalogEnumerator(config).enumerate(catalog_path)
        checkpoint = SessionCheckpoint(session_id="s1")

        ArchivePacker(config).pack(catalog_path, archive_path, checkpoint)
        # A crashed slice left a partial header behind
        with open(archive_path, "ab") as f:
            f.write(b"partial header" * 10)

        pack_all(config, catalog_path, archive_path, checkpoint)

        scan = verify_archive(archive_path)
        assert scan.valid
        assert scan.entries == 3

    def test_archive_shorter_than_cursor(self, export_config, cataloged):
        """Test a truncated archive is reported as corrupted"""
        catalog_path, archive_path, checkpoint = cataloged
        with open(archive_path, "wb") as f:
            f.write(b"\0" * 10)
        checkpoint.archive_cursor = 100

        with pytest.raises(ArchiveCorruptedError):
            ArchivePacker(export_config).pack(catalog_path, archive_path, checkpoint)

    def test_vanished_file_is_skipped(self, export_config, cataloged, source_tree):
        """Test a file deleted after cataloging is counted as failed"""
        catalog_path, archive_path, checkpoint = cataloged
        (source_tree / "index.php").unlink()

        pack_all(export_config, catalog_path, archive_path, checkpoint)

        assert checkpoint.files_failed == 1
        assert checkpoint.files_processed == 2
        assert [e.relative_path for e in ArchiveReader(archive_path).entries()] == [
            "site/uploads/big.bin",
            "site/uploads/empty.txt",
        ]

    def test_file_that_grew_is_copied_at_opened_size(self, export_config, cataloged, source_tree):
        """Test the header size always matches the payload written"""
        catalog_path, archive_path, checkpoint = cataloged
        (source_tree / "index.php").write_bytes(b"0123456789 and more")

        pack_all(export_config, catalog_path, archive_path, checkpoint)

        entries = list(ArchiveReader(archive_path).entries())
        assert entries[0].header.size == 19
        assert ArchiveReader(archive_path).read_payload(entries[0]) == b"0123456789 and more"
        assert verify_archive(archive_path).valid

    def test_failure_ceiling(self, source_tree, export_dir, tmp_path):
        """Test exceeding the failed-file ceiling aborts packing"""
        config = ExportConfig(source_dir=str(source_tree), export_dir=str(export_dir), max_failed_files=0)
        catalog_path = str(tmp_path / "catalog.csv")
        CatalogEnumerator(config).enumerate(catalog_path)
        (source_tree / "uploads" / "empty.txt").unlink()

        with pytest.raises(FailureCeilingExceededError):
            pack_all(config, catalog_path, str(tmp_path / "a.archive"), SessionCheckpoint(session_id="s1"))


class TestArchiveReader:
    """Test structural verification"""

    def test_overrun_detected(self, export_config, cataloged):
        """Test a payload running past end of file"""
        catalog_path, archive_path, checkpoint = cataloged
        pack_all(export_config, catalog_path, archive_path, checkpoint)
        with open(archive_path, "r+b") as f:
            f.truncate(os.path.getsize(archive_path) - HEADER_SIZE - 1)

        scan = verify_archive(archive_path)

        assert not scan.valid

    def test_partial_header_detected(self, tmp_path):
        """Test trailing bytes shorter than a header"""
        path = tmp_path / "bad.archive"
        path.write_bytes(ArchiveHeader.for_entry("a.txt", 0, 0).encode() + b"\0" * 10)

        with pytest.raises(ArchiveCorruptedError):
            list(ArchiveReader(str(path)).entries())
