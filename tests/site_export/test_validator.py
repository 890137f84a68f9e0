"""Tests for the completion validator"""

import os

import pytest

from site_export.archive import ArchivePacker
from site_export.catalog import CatalogEnumerator
from site_export.database import DatabaseDumper
from site_export.metadata import build_metadata, write_metadata
from site_export.session import SessionStore
from site_export.types import SessionCheckpoint
from site_export.validator import CompletionValidator, archived_ratio_ok


class TestArchivedRatio:
    """Test the archived-vs-cataloged threshold"""

    def test_all_archived(self):
        assert archived_ratio_ok(100, 100, 99)

    def test_under_one_percent_missing(self):
        """Test 1 of 101 missing passes"""
        assert archived_ratio_ok(100, 101, 99)

    def test_exactly_one_percent_missing_fails(self):
        """Test 1 of 100 missing fails"""
        assert not archived_ratio_ok(99, 100, 99)

    def test_empty_catalog_passes(self):
        assert archived_ratio_ok(0, 0, 99)

    def test_small_catalog_any_missing_fails(self):
        """Test a single missing file of three fails"""
        assert not archived_ratio_ok(2, 3, 99)


@pytest.fixture
def finished_session(export_config):
    """Session whose archive, dump and metadata were all produced"""
    store = SessionStore(export_config.export_dir)
    session = store.new(export_config)
    store.save(session)
    checkpoint = SessionCheckpoint(session_id=session.session_id)

    stats = CatalogEnumerator(export_config).enumerate(session.catalog_path)
    checkpoint.catalog_total = stats.files_found
    checkpoint.enumeration = stats.to_dict()
    assert ArchivePacker(export_config).pack(session.catalog_path, session.archive_path, checkpoint).completed

    dumper = DatabaseDumper(export_config)
    temp_path = session.path("db_export_temp_test.sql")
    assert dumper.dump(checkpoint, temp_path, session.sql_path).completed
    dumper.dispose()

    write_metadata(session, checkpoint)
    return session, checkpoint


class TestCompletionValidator:
    """Test the final correctness gate"""

    def test_valid_session(self, finished_session):
        """Test a complete session passes"""
        session, checkpoint = finished_session
        report = CompletionValidator(session).validate(checkpoint)
        assert report.valid, report.problems

    def test_entry_count_mismatch(self, finished_session):
        """Test the archive must hold exactly the recorded entries"""
        session, checkpoint = finished_session
        checkpoint.files_processed += 1
        checkpoint.catalog_total += 1

        report = CompletionValidator(session).validate(checkpoint)

        assert any("entries" in problem for problem in report.problems)

    def test_truncated_archive(self, finished_session):
        """Test a damaged archive fails validation"""
        session, checkpoint = finished_session
        with open(session.archive_path, "r+b") as f:
            f.truncate(checkpoint.archive_cursor - 1)

        report = CompletionValidator(session).validate(checkpoint)

        assert not report.valid

    def test_missing_metadata(self, finished_session):
        """Test every artifact must exist"""
        session, checkpoint = finished_session
        os.unlink(session.metadata_path)

        report = CompletionValidator(session).validate(checkpoint)

        assert any("metadata" in problem for problem in report.problems)

    def test_dump_never_finalized(self, finished_session):
        """Test the database artifact must be recorded"""
        session, checkpoint = finished_session
        checkpoint.database_artifact = None

        report = CompletionValidator(session).validate(checkpoint)

        assert "database dump was never finalized" in report.problems

    def test_ratio_below_threshold(self, finished_session):
        """Test too many missing files fail validation"""
        session, checkpoint = finished_session
        checkpoint.catalog_total = 10

        report = CompletionValidator(session).validate(checkpoint)

        assert any("cataloged files were archived" in problem for problem in report.problems)


def test_metadata_document(finished_session):
    """Test metadata carries site, export and database facts without secrets"""
    session, checkpoint = finished_session
    session.config.database_url = "mysql+pymysql://user:secret@db/site"

    metadata = build_metadata(session, checkpoint)

    assert metadata["site_info"]["name"] == "Example"
    assert metadata["export_info"]["file_count"] == 3
    assert metadata["export_info"]["archive_header_size"] == 4375
    assert metadata["database"]["tables_count"] == 2
    assert metadata["database"]["tables"] == {"options": 2, "posts": 3}
    assert metadata["database"]["compressed"] is True
    assert "secret" not in metadata["database"]["url"]
    assert metadata["enumeration"]["files_found"] == 3
