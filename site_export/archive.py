"""
Binary archive container.

An archive is a plain sequence of (header, payload) pairs with no trailing
index. Each header is a fixed 4375-byte record::

    name[255] | size:u32 | mtime:u32 | dir[4112]

Integers are little-endian. ``name`` and ``dir`` are percent-encoded UTF-8,
null-padded. ``size`` is exactly the number of payload bytes that follow.
"""

from __future__ import annotations

import logging
import os
import posixpath
import stat
import struct
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterator, List, Optional
from urllib.parse import quote_plus, unquote_plus

from .catalog import CatalogReader
from .config import ExportConfig
from .errors import (
    ArchiveCorruptedError,
    ArchiveHeaderError,
    EntryReadError,
    FailureCeilingExceededError,
    OutputUnavailableError,
)
from .types import CatalogEntry, SessionCheckpoint
from .utils import format_bytes

logger = logging.getLogger(__name__)

NAME_FIELD_SIZE = 255
DIR_FIELD_SIZE = 4112
HEADER_STRUCT = struct.Struct(f"<{NAME_FIELD_SIZE}sII{DIR_FIELD_SIZE}s")
HEADER_SIZE = 4375
assert HEADER_STRUCT.size == HEADER_SIZE, "archive header layout drifted"

MAX_U32 = 0xFFFFFFFF
ROOT_DIRECTORY = "."


@dataclass(frozen=True)
class ArchiveHeader:
    """Decoded archive entry header."""
    name: str
    size: int
    mtime: int
    directory: str = ROOT_DIRECTORY

    @classmethod
    def for_entry(cls, relative_path: str, size: int, mtime: int) -> "ArchiveHeader":
        """Build the header for a file stored under ``relative_path``."""
        directory = posixpath.dirname(relative_path) or ROOT_DIRECTORY
        return cls(name=posixpath.basename(relative_path), size=size, mtime=mtime, directory=directory)

    @property
    def relative_path(self) -> str:
        if self.directory in ("", ROOT_DIRECTORY):
            return self.name
        return f"{self.directory}/{self.name}"

    def encode(self) -> bytes:
        """
        Encode the header into its fixed-width binary form.

        Raises:
            ArchiveHeaderError: If a field cannot be represented
        """
        name = _encode_field(self.name, NAME_FIELD_SIZE, "name")
        directory = _encode_field(self.directory, DIR_FIELD_SIZE, "directory")
        if not 0 <= self.size <= MAX_U32:
            raise ArchiveHeaderError(f"File size {self.size} does not fit the header of {self.relative_path}")
        if not 0 <= self.mtime <= MAX_U32:
            raise ArchiveHeaderError(f"Modification time {self.mtime} does not fit the header of {self.relative_path}")

        packed = HEADER_STRUCT.pack(name, self.size, self.mtime, directory)
        if len(packed) != HEADER_SIZE:
            raise ArchiveHeaderError(f"Encoded header is {len(packed)} bytes, expected {HEADER_SIZE}")
        return packed

    @classmethod
    def decode(cls, data: bytes) -> "ArchiveHeader":
        if len(data) != HEADER_SIZE:
            raise ArchiveCorruptedError(f"Header is {len(data)} bytes, expected {HEADER_SIZE}")
        name, size, mtime, directory = HEADER_STRUCT.unpack(data)
        return cls(
            name=_decode_field(name),
            size=size,
            mtime=mtime,
            directory=_decode_field(directory) or ROOT_DIRECTORY,
        )


def _encode_field(value: str, width: int, label: str) -> bytes:
    encoded = quote_plus(value, encoding="utf-8", errors="surrogateescape").encode("ascii")
    if len(encoded) > width:
        raise ArchiveHeaderError(f"Encoded {label} is {len(encoded)} bytes, limit is {width}: {value[:80]}")
    # struct pads the field with null bytes
    return encoded


def _decode_field(raw: bytes) -> str:
    return unquote_plus(raw.rstrip(b"\0").decode("ascii"), encoding="utf-8", errors="surrogateescape")


@dataclass
class PackResult:
    """Outcome of one packing slice."""
    completed: bool
    files_archived: int = 0
    files_failed: int = 0
    bytes_archived: int = 0
    elapsed: float = 0.0
    failures: List[str] = field(default_factory=list)


class ArchivePacker:
    """
    Append catalog entries and their bytes to the archive.

    Resumes from the checkpoint's ``(csv_cursor, archive_cursor)`` pair and
    only ever writes forward from ``archive_cursor``.
    """

    def __init__(self, config: ExportConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clock = clock
        self.logger = logging.getLogger(f"{__name__}.ArchivePacker")

    def pack(self, catalog_path: str, archive_path: str, checkpoint: SessionCheckpoint) -> PackResult:
        """
        Archive catalog entries until the catalog ends or the slice budget runs out.

        The checkpoint is updated in place; the caller persists it.

        Args:
            catalog_path: Catalog CSV produced by the enumerator
            archive_path: Archive file to append to
            checkpoint: Session checkpoint holding the cursors and counters

        Returns:
            PackResult with ``completed`` False when the slice paused

        Raises:
            ArchiveCorruptedError: If the archive is shorter than the checkpoint says
            FailureCeilingExceededError: If too many files failed
            OutputUnavailableError: If the archive cannot be opened
        """
        started = self.clock()
        result = PackResult(completed=False)
        limit = self.config.files_per_slice

        archive = self._open_at_cursor(archive_path, checkpoint.archive_cursor)
        try:
            with CatalogReader(catalog_path, checkpoint.csv_cursor) as reader:
                for entry in reader:
                    written = self._append_entry(archive, entry, result)
                    if written is None:
                        checkpoint.files_failed += 1
                        checkpoint.bytes_failed += entry.size
                        result.files_failed += 1
                    else:
                        checkpoint.files_processed += 1
                        checkpoint.bytes_processed += written
                        result.files_archived += 1
                        result.bytes_archived += written
                    checkpoint.csv_cursor = entry.offset
                    checkpoint.archive_cursor = archive.tell()

                    if checkpoint.files_failed > self.config.max_failed_files:
                        raise FailureCeilingExceededError(
                            f"{checkpoint.files_failed} files failed to archive "
                            f"(limit {self.config.max_failed_files}); export is unreliable"
                        )

                    handled = result.files_archived + result.files_failed
                    if (limit and handled >= limit) or self.clock() - started >= self.config.time_budget:
                        break
                else:
                    result.completed = True
        finally:
            archive.flush()
            os.fsync(archive.fileno())
            archive.close()

        result.elapsed = self.clock() - started
        self.logger.info(
            f"Archive slice {'complete' if result.completed else 'paused'}: "
            f"{result.files_archived} files ({format_bytes(result.bytes_archived)}), "
            f"{result.files_failed} failed, total {checkpoint.files_processed}/{checkpoint.catalog_total} "
            f"in {result.elapsed:.2f}s"
        )
        return result

    def _open_at_cursor(self, archive_path: str, cursor: int) -> BinaryIO:
        try:
            if cursor == 0 and not os.path.exists(archive_path):
                archive = open(archive_path, "w+b")
            else:
                archive = open(archive_path, "r+b")
        except OSError as exc:
            raise OutputUnavailableError(f"Cannot open archive {archive_path}", technical=str(exc))

        length = os.fstat(archive.fileno()).st_size
        if length < cursor:
            archive.close()
            raise ArchiveCorruptedError(
                f"Archive is {length} bytes but {cursor} bytes were recorded as written"
            )
        if length > cursor:
            # Bytes past the cursor belong to an entry the checkpoint never acknowledged
            self.logger.warning(f"Discarding {length - cursor} unacknowledged bytes at archive tail")
            archive.truncate(cursor)
        archive.seek(cursor)
        return archive

    def _append_entry(self, archive: BinaryIO, entry: CatalogEntry, result: PackResult) -> Optional[int]:
        """Append one entry; return payload bytes written, or None if the entry failed."""
        start = archive.tell()
        try:
            with open(entry.absolute_path, "rb") as source:
                # Stat the open handle so size and bytes come from the same file
                st = os.fstat(source.fileno())
                if not stat.S_ISREG(st.st_mode):
                    raise EntryReadError(f"{entry.absolute_path} is no longer a regular file")
                if st.st_size != entry.size:
                    self.logger.debug(f"{entry.relative_path} changed size since cataloging ({entry.size} -> {st.st_size})")

                header = ArchiveHeader.for_entry(entry.relative_path, st.st_size, int(st.st_mtime))
                archive.write(header.encode())

                remaining = st.st_size
                while remaining:
                    chunk = source.read(min(self.config.chunk_size, remaining))
                    if not chunk:
                        raise EntryReadError(
                            f"{entry.absolute_path} shrank while archiving ({remaining} bytes missing)"
                        )
                    archive.write(chunk)
                    remaining -= len(chunk)
                return st.st_size
        except (OSError, ArchiveHeaderError, EntryReadError) as exc:
            self.logger.warning(f"Failed to archive {entry.absolute_path}: {exc}")
            result.failures.append(entry.relative_path)
            self._rewind(archive, start)
            return None

    def _rewind(self, archive: BinaryIO, offset: int) -> None:
        try:
            archive.flush()
            archive.truncate(offset)
            archive.seek(offset)
        except OSError as exc:
            raise OutputUnavailableError("Cannot rewind archive after a failed entry", technical=str(exc))


@dataclass
class ArchiveEntry:
    """An entry found while scanning an archive."""
    header: ArchiveHeader
    header_offset: int

    @property
    def payload_offset(self) -> int:
        return self.header_offset + HEADER_SIZE

    @property
    def relative_path(self) -> str:
        return self.header.relative_path


class ArchiveReader:
    """Sequential reader for archive files."""

    def __init__(self, path: str):
        self.path = path

    def entries(self) -> Iterator[ArchiveEntry]:
        """
        Yield every entry, skipping payloads using the header size.

        Raises:
            ArchiveCorruptedError: On a partial header or a payload running past EOF
        """
        total = os.path.getsize(self.path)
        with open(self.path, "rb") as f:
            offset = 0
            while offset < total:
                data = f.read(HEADER_SIZE)
                if len(data) < HEADER_SIZE:
                    raise ArchiveCorruptedError(
                        f"Partial header at offset {offset} ({len(data)} of {HEADER_SIZE} bytes)"
                    )
                header = ArchiveHeader.decode(data)
                end = offset + HEADER_SIZE + header.size
                if end > total:
                    raise ArchiveCorruptedError(
                        f"Entry {header.relative_path} declares {header.size} bytes but only "
                        f"{total - offset - HEADER_SIZE} remain"
                    )
                yield ArchiveEntry(header=header, header_offset=offset)
                f.seek(end)
                offset = end

    def read_payload(self, entry: ArchiveEntry) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(entry.payload_offset)
            return f.read(entry.header.size)

    def extract_all(self, destination: str, chunk_size: int = 256 * 1024) -> List[str]:
        """
        Extract every entry below ``destination``, restoring mtimes.

        Returns:
            Relative paths written, in archive order
        """
        written = []
        root = os.path.abspath(destination)
        with open(self.path, "rb") as f:
            for entry in self.entries():
                target = os.path.abspath(os.path.join(root, entry.relative_path))
                if not target.startswith(root + os.sep):
                    raise ArchiveCorruptedError(f"Entry escapes extraction root: {entry.relative_path}")
                os.makedirs(os.path.dirname(target), exist_ok=True)
                f.seek(entry.payload_offset)
                remaining = entry.header.size
                with open(target, "wb") as out:
                    while remaining:
                        chunk = f.read(min(chunk_size, remaining))
                        out.write(chunk)
                        remaining -= len(chunk)
                os.utime(target, (entry.header.mtime, entry.header.mtime))
                written.append(entry.relative_path)
        return written


@dataclass
class ArchiveScan:
    """Summary of a full structural scan."""
    entries: int = 0
    payload_bytes: int = 0
    length: int = 0
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None


def verify_archive(path: str) -> ArchiveScan:
    """
    Walk every header and check that each declared size matches the bytes
    that follow, ending exactly at end of file.
    """
    scan = ArchiveScan(length=os.path.getsize(path))
    try:
        for entry in ArchiveReader(path).entries():
            scan.entries += 1
            scan.payload_bytes += entry.header.size
    except ArchiveCorruptedError as exc:
        scan.error = exc.message
    return scan
