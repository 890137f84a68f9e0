"""Tests for catalog exclusion rules"""

from site_export.config import ExportConfig
from site_export.exclusions import ExclusionRules, normalize_relative


class TestDefaultRules:
    """Test the built-in exclusion set"""

    def setup_method(self):
        self.rules = ExclusionRules.defaults()

    def test_backup_directories_excluded(self):
        """Test backup and cache directories are pruned"""
        assert self.rules.is_excluded("ai1wm-backups", is_dir=True)
        assert self.rules.is_excluded("cache", is_dir=True)
        assert self.rules.is_excluded("plugins/updraftplus", is_dir=True)
        assert self.rules.is_excluded("plugins/updraftplus/includes", is_dir=True)

    def test_prefix_match_is_per_segment(self):
        """Test a prefix does not match a sibling with a longer name"""
        assert not self.rules.is_excluded("cachet", is_dir=True)
        assert not self.rules.is_excluded("plugins/akismet", is_dir=True)

    def test_directories_sorted_longest_first(self):
        """Test directory prefixes are matched longest first"""
        lengths = [len(d) for d in self.rules.directories]
        assert lengths == sorted(lengths, reverse=True)

    def test_backup_extensions_excluded(self):
        """Test backup and log extensions"""
        assert self.rules.is_excluded("uploads/site.wpress")
        assert self.rules.is_excluded("wp-config.php.bak")
        assert self.rules.is_excluded("debug.LOG")

    def test_cache_patterns_excluded(self):
        """Test cache and leftover archive patterns"""
        assert self.rules.is_excluded("themes/x/style.less.cache")
        assert self.rules.is_excluded("error_log")
        assert self.rules.is_excluded("themes/x/node_modules/a.js")
        assert self.rules.is_excluded("uploads.zip")
        assert self.rules.is_excluded("database.sql.gz")
        assert self.rules.is_excluded("log.0123456789ab.txt")

    def test_host_mu_plugins_excluded(self):
        """Test host-specific must-use plugin files"""
        assert self.rules.is_excluded("mu-plugins/gd-system-plugin.php")
        assert not self.rules.is_excluded("mu-plugins/my-plugin.php")

    def test_regular_files_kept(self):
        """Test ordinary content files are kept"""
        assert not self.rules.is_excluded("index.php")
        assert not self.rules.is_excluded("uploads/2024/01/photo.jpg")

    def test_file_inside_excluded_directory(self):
        """Test a file is excluded when any parent directory is"""
        assert self.rules.is_excluded("uploads/civicrm/templates/x.tpl")


class TestConfiguredRules:
    """Test rules built from a session configuration"""

    def test_extra_exclusions(self, tmp_path):
        """Test directory, glob and file extra entries"""
        config = ExportConfig(
            source_dir=str(tmp_path / "site"),
            export_dir=str(tmp_path / "out"),
            extra_exclusions=["private/", "*.psd", "secrets/keys.txt"],
        )
        rules = ExclusionRules.from_config(config)

        assert rules.is_excluded("private", is_dir=True)
        assert rules.is_excluded("uploads/mockup.psd")
        assert rules.is_excluded("secrets/keys.txt")
        assert not rules.is_excluded("secrets/other.txt")

    def test_export_dir_inside_source_excluded(self, tmp_path):
        """Test the export directory never ends up in its own archive"""
        config = ExportConfig(source_dir=str(tmp_path), export_dir=str(tmp_path / "exports" / "run"))
        rules = ExclusionRules.from_config(config)

        assert rules.is_excluded("exports/run", is_dir=True)
        assert not rules.is_excluded("exports", is_dir=True)

    def test_defaults_can_be_disabled(self, tmp_path):
        """Test use_default_exclusions=False keeps everything"""
        config = ExportConfig(
            source_dir=str(tmp_path / "site"),
            export_dir=str(tmp_path / "out"),
            use_default_exclusions=False,
        )
        rules = ExclusionRules.from_config(config)

        assert not rules.is_excluded("cache", is_dir=True)
        assert not rules.is_excluded("debug.log")


def test_normalize_relative():
    """Test path normalization"""
    assert normalize_relative("/uploads/") == "uploads"
    assert normalize_relative("a//b/./c") == "a/b/c"
    assert normalize_relative("") == ""
