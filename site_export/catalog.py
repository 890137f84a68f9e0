"""
Catalog enumeration for the content tree.

The catalog is a CSV file with one row per eligible file:
``absolute_path, relative_path, size, mtime``. It is written once per
session and consumed strictly in file order, resuming by byte offset.
"""

from __future__ import annotations

import csv
import logging
import os
import posixpath
import stat
import time
from typing import BinaryIO, Iterator, Optional

from .config import ExportConfig
from .errors import OutputUnavailableError, SourceUnavailableError
from .exclusions import ExclusionRules
from .types import CatalogEntry, EnumerationStats

logger = logging.getLogger(__name__)

# Catalog text encoding; surrogateescape keeps undecodable file names intact
CATALOG_ENCODING = "utf-8"
CATALOG_ERRORS = "surrogateescape"

PROGRESS_EVERY = 1000


class CatalogEnumerator:
    """Walk the source tree once and write the file catalog."""

    def __init__(self, config: ExportConfig, rules: Optional[ExclusionRules] = None):
        """
        Initialize the enumerator.

        Args:
            config: Session configuration
            rules: Exclusion rules; built from the configuration when omitted
        """
        self.config = config
        self.rules = rules or ExclusionRules.from_config(config)
        self.logger = logging.getLogger(f"{__name__}.CatalogEnumerator")

    def enumerate(self, catalog_path: str) -> EnumerationStats:
        """
        Walk the source tree depth-first and write one row per eligible file.

        Any existing catalog at ``catalog_path`` is replaced, so re-running a
        crashed enumeration starts clean.

        Args:
            catalog_path: Destination CSV file

        Returns:
            Aggregate counts for the walk

        Raises:
            SourceUnavailableError: If the source root is missing or unreadable
            OutputUnavailableError: If the catalog cannot be written
        """
        root = self.config.source_dir
        if not os.path.isdir(root) or not os.access(root, os.R_OK | os.X_OK):
            raise SourceUnavailableError(f"Source directory is missing or unreadable: {root}")

        stats = EnumerationStats()
        started = time.monotonic()
        max_size = self.config.max_file_size

        try:
            handle = open(catalog_path, "w", newline="", encoding=CATALOG_ENCODING, errors=CATALOG_ERRORS)
        except OSError as exc:
            raise OutputUnavailableError(f"Cannot create catalog file {catalog_path}", technical=str(exc))

        def on_walk_error(error: OSError) -> None:
            stats.errors += 1
            self.logger.warning(f"Skipping unreadable directory {error.filename}: {error.strerror}")

        with handle:
            writer = csv.writer(handle, lineterminator="\n")
            for dirpath, dirnames, filenames in os.walk(root, topdown=True, onerror=on_walk_error):
                rel_dir = _relative_to(root, dirpath)

                # Prune excluded directories before descending; sort for a stable order
                kept = []
                for name in sorted(dirnames):
                    if self.rules.is_directory_excluded(_join(rel_dir, name)):
                        self.logger.debug(f"Excluding directory {_join(rel_dir, name)}")
                        continue
                    kept.append(name)
                dirnames[:] = kept

                for name in sorted(filenames):
                    absolute_path = os.path.join(dirpath, name)
                    relative = _join(rel_dir, name)

                    try:
                        st = os.stat(absolute_path)
                    except OSError as exc:
                        stats.errors += 1
                        self.logger.warning(f"Cannot stat {absolute_path}: {exc}")
                        continue

                    if not stat.S_ISREG(st.st_mode):
                        continue

                    if self.rules.is_file_excluded(relative):
                        stats.files_excluded += 1
                        continue

                    if st.st_size > max_size:
                        stats.files_excluded_by_size += 1
                        self.logger.info(f"Excluding {relative} ({st.st_size} bytes exceeds size ceiling)")
                        continue

                    if not os.access(absolute_path, os.R_OK):
                        stats.errors += 1
                        self.logger.warning(f"Skipping unreadable file {absolute_path}")
                        continue

                    entry = CatalogEntry(
                        absolute_path=absolute_path,
                        relative_path=posixpath.join(self.config.base_path_name, relative),
                        size=st.st_size,
                        mtime=int(st.st_mtime),
                    )
                    writer.writerow(entry.to_row())
                    stats.files_found += 1
                    stats.total_size += st.st_size

                    if stats.files_found % PROGRESS_EVERY == 0:
                        self.logger.info(
                            f"Cataloged {stats.files_found} files "
                            f"({stats.files_excluded} excluded, {stats.errors} errors)"
                        )

        stats.elapsed = round(time.monotonic() - started, 3)
        self.logger.info(
            f"Enumeration complete: {stats.files_found} files, {stats.total_size} bytes, "
            f"{stats.files_excluded} excluded, {stats.files_excluded_by_size} over size limit, "
            f"{stats.errors} errors in {stats.elapsed:.2f}s"
        )
        return stats


class CatalogReader:
    """
    Iterate catalog rows starting from a byte offset.

    Each yielded entry carries ``offset``, the byte position just past its
    row, which is the cursor to persist once the entry has been handled.
    """

    def __init__(self, path: str, offset: int = 0):
        self.path = path
        self.start_offset = offset
        self._handle: Optional[BinaryIO] = None

    def __enter__(self) -> "CatalogReader":
        self._handle = open(self.path, "rb")
        self._handle.seek(self.start_offset)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _lines(self) -> Iterator[str]:
        assert self._handle is not None
        while True:
            raw = self._handle.readline()
            if not raw:
                return
            yield raw.decode(CATALOG_ENCODING, CATALOG_ERRORS)

    def __iter__(self) -> Iterator[CatalogEntry]:
        if self._handle is None:
            raise RuntimeError("CatalogReader must be used as a context manager")
        handle = self._handle
        for row in csv.reader(self._lines()):
            if not row:
                continue
            if len(row) != 4:
                logger.warning(f"Skipping malformed catalog row at offset {handle.tell()}: {row!r}")
                continue
            absolute_path, relative_path, size, mtime = row
            # csv pulls lines lazily, so the handle sits right after this row
            yield CatalogEntry(
                absolute_path=absolute_path,
                relative_path=relative_path,
                size=int(size),
                mtime=int(mtime),
                offset=handle.tell(),
            )


def _relative_to(root: str, path: str) -> str:
    rel = os.path.relpath(path, root)
    return "" if rel == os.curdir else rel.replace(os.sep, "/")


def _join(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name
