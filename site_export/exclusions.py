"""
Exclusion rules applied while cataloging the content tree.

Paths are matched relative to the source root, using forward slashes.
"""

from __future__ import annotations

import fnmatch
import os
import posixpath
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Pattern, Tuple

from .config import ExportConfig


# Backup, migration and cache directories
DEFAULT_EXCLUDED_DIRECTORIES = (
    "ai1wm-backups",
    "hostinger-migration-archives",
    "updraft",
    "backup",
    "backups",
    "vivid-migration-backups",
    "migration-backups",
    "plugins/custom-migrator",
    "plugins/all-in-one-wp-migration",
    "plugins/updraftplus",
    "cache",
    "wp-cache",
    "et_cache",
    "w3tc",
    "mu-plugins/wpcomsh",
    "mu-plugins/sqlite-database-integration",
    "uploads/civicrm",
    "temp",
    "tmp",
)

# Host-specific must-use plugins that break on another host
DEFAULT_EXCLUDED_FILES = (
    "mu-plugins/endurance-page-cache.php",
    "mu-plugins/endurance-php-edge.php",
    "mu-plugins/endurance-browser-cache.php",
    "mu-plugins/gd-system-plugin.php",
    "mu-plugins/wp-stack-cache.php",
    "mu-plugins/wpcomsh-loader.php",
    "mu-plugins/mu-plugin.php",
    "mu-plugins/wpe-wp-sign-on-plugin.php",
    "mu-plugins/wpengine-security-auditor.php",
    "mu-plugins/aaa-wp-cerber.php",
    "mu-plugins/0-sqlite.php",
)

DEFAULT_EXCLUDED_EXTENSION = r"\.(wpress|bak|backup|old|log)$"

DEFAULT_CACHE_PATTERNS = (
    r"\.less\.cache$",
    r"\.sqlite$",
    r"error_log$",
    r"node_modules/",
    r"backup_\d{4}-\d{2}-\d{2}-\d{4}_.*\.zip$",
    r"backup_\d{4}-\d{2}-\d{2}-\d{4}_.*-db\.gz$",
    r"log\.[0-9a-f]{12}\.txt$",
    r"updraftplus-.*\.tmp$",
    r"\.zip\.tmp\.",
    r"pclzip-[a-f0-9]+\.(?:tmp|gz)$",
    r".*backup.*\.(zip|tar\.gz|sql|sql\.gz)$",
    r"uploads\.zip$",
    r"plugins\.zip$",
    r"themes\.zip$",
    r"database\.sql$",
    r"database\.sql\.gz$",
)


def normalize_relative(path: str) -> str:
    """Normalize a relative path to forward slashes without leading or trailing separators."""
    path = path.replace(os.sep, "/")
    return posixpath.normpath(path).strip("/") if path else ""


@dataclass
class ExclusionRules:
    """Compiled exclusion rules for one session."""

    directories: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    patterns: List[Pattern[str]] = field(default_factory=list)
    globs: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.directories = sorted(
            {normalize_relative(d) for d in self.directories if normalize_relative(d)},
            key=lambda d: (-len(d), d),
        )
        self.files = [normalize_relative(f) for f in self.files if normalize_relative(f)]

    @classmethod
    def defaults(cls) -> "ExclusionRules":
        patterns = [re.compile(DEFAULT_EXCLUDED_EXTENSION, re.IGNORECASE)]
        patterns.extend(re.compile(p, re.IGNORECASE) for p in DEFAULT_CACHE_PATTERNS)
        return cls(
            directories=list(DEFAULT_EXCLUDED_DIRECTORIES),
            files=list(DEFAULT_EXCLUDED_FILES),
            patterns=patterns,
        )

    @classmethod
    def from_config(cls, config: ExportConfig) -> "ExclusionRules":
        """
        Build the rule set for a session.

        Extra exclusions are interpreted as directory prefixes when they end
        with ``/``, glob patterns when they contain wildcards, and exact
        relative file paths otherwise. The export directory is excluded when
        it lies inside the source tree.

        Args:
            config: Session configuration

        Returns:
            Compiled rules
        """
        rules = cls.defaults() if config.use_default_exclusions else cls()
        directories, files, globs = _split_extra(config.extra_exclusions)

        export_dir = os.path.abspath(config.export_dir)
        source_dir = os.path.abspath(config.source_dir)
        if export_dir.startswith(source_dir.rstrip(os.sep) + os.sep):
            directories.append(os.path.relpath(export_dir, source_dir))

        return cls(
            directories=rules.directories + directories,
            files=rules.files + files,
            patterns=rules.patterns,
            globs=rules.globs + globs,
        )

    def is_directory_excluded(self, relative_path: str) -> bool:
        """Check a directory path against the directory prefixes."""
        path = normalize_relative(relative_path)
        if not path:
            return False
        for prefix in self.directories:
            if path == prefix or path.startswith(prefix + "/"):
                return True
        return False

    def is_file_excluded(self, relative_path: str) -> bool:
        """Check a file path against every rule."""
        path = normalize_relative(relative_path)
        parent = posixpath.dirname(path)
        if parent and self.is_directory_excluded(parent):
            return True

        for specific in self.files:
            if path == specific or path.endswith("/" + specific):
                return True

        basename = posixpath.basename(path)
        for pattern in self.patterns:
            if pattern.search(path) or pattern.search(basename):
                return True

        for glob in self.globs:
            if fnmatch.fnmatch(path, glob) or fnmatch.fnmatch(basename, glob):
                return True

        return False

    def is_excluded(self, relative_path: str, is_dir: bool = False) -> bool:
        if is_dir:
            return self.is_directory_excluded(relative_path)
        return self.is_file_excluded(relative_path)


def _split_extra(entries: Iterable[str]) -> Tuple[List[str], List[str], List[str]]:
    directories: List[str] = []
    files: List[str] = []
    globs: List[str] = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        if any(ch in entry for ch in "*?["):
            globs.append(entry)
        elif entry.endswith("/"):
            directories.append(entry)
        else:
            files.append(entry)
    return directories, files, globs
