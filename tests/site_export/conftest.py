"""Test configuration and fixtures"""

import os

import pytest
from sqlalchemy import create_engine, text

from site_export.config import ExportConfig, Settings
from site_export.triggers import Trigger

BIG_FILE_SIZE = 5 * 1024 * 1024


@pytest.fixture
def source_tree(tmp_path):
    """Content tree with a small, an empty and a 5 MB file"""
    root = tmp_path / "site"
    (root / "uploads").mkdir(parents=True)
    (root / "index.php").write_bytes(b"0123456789")
    (root / "uploads" / "empty.txt").write_bytes(b"")
    (root / "uploads" / "big.bin").write_bytes(os.urandom(BIG_FILE_SIZE))
    return root


@pytest.fixture
def export_dir(tmp_path):
    path = tmp_path / "exports"
    path.mkdir()
    return path


@pytest.fixture
def sqlite_url(tmp_path):
    """SQLite database with two small tables"""
    path = tmp_path / "site.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE posts (id INTEGER PRIMARY KEY, title TEXT, body TEXT)"))
        conn.execute(
            text("INSERT INTO posts (id, title, body) VALUES (:id, :title, :body)"),
            [{"id": i, "title": f"Post {i}", "body": "it's here"} for i in range(1, 4)],
        )
        conn.execute(text("CREATE TABLE options (name TEXT PRIMARY KEY, value TEXT)"))
        conn.execute(
            text("INSERT INTO options (name, value) VALUES (:name, :value)"),
            [{"name": "siteurl", "value": "http://example.test"}, {"name": "blogname", "value": None}],
        )
    engine.dispose()
    return f"sqlite:///{path}"


@pytest.fixture
def make_settings(source_tree, export_dir, sqlite_url):
    """Build settings pointing at the test tree, export dir and database"""

    def _make(**overrides):
        values = {
            "SOURCE_DIR": str(source_tree),
            "EXPORT_DIR": str(export_dir),
            "DATABASE_URL": sqlite_url,
            "SITE_NAME": "Example",
            "SITE_URL": "http://example.test",
            "SELF_TRIGGER_URL": None,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def export_settings(make_settings):
    return make_settings()


@pytest.fixture
def export_config(export_settings, export_dir):
    return ExportConfig.from_settings(export_settings, export_dir=str(export_dir))


class RecordingTrigger(Trigger):
    """Trigger double that records scheduled continuations"""

    name = "recording"

    def __init__(self):
        self.calls = []

    def schedule_next(self, session_id, delay=None):
        self.calls.append((session_id, delay))
        return True


@pytest.fixture
def trigger():
    return RecordingTrigger()
