"""
Lease records guarding exclusive access to an export.

A lease is a small JSON file created with create-if-absent semantics and
renewed by atomic replacement. A lease whose last renewal is older than
its staleness window is considered abandoned and may be reclaimed.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from .errors import LeaseHeldError
from .utils import atomic_write_json, remove_file

logger = logging.getLogger(__name__)


@dataclass
class LeaseRecord:
    """Contents of a lease file."""
    session_id: str
    owner_pid: int
    acquired_at: float
    renewed_at: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.renewed_at)


class Lease:
    """
    Acquire/renew/release/expire over a single lease file.

    The owner token is the session id for the session lease, and a unique
    per-invocation token for the slice lease.
    """

    def __init__(
        self,
        path: Union[str, Path],
        stale_after: float,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.stale_after = stale_after
        self.clock = clock
        self.logger = logging.getLogger(f"{__name__}.Lease")

    def read(self) -> Optional[LeaseRecord]:
        """Return the current record, or None if there is no readable lease."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return LeaseRecord(**data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as e:
            self.logger.warning(f"Unreadable lease {self.path}: {e}")
            return None

    def is_expired(self, record: Optional[LeaseRecord] = None) -> bool:
        record = record if record is not None else self.read()
        return record is None or record.age(self.clock()) > self.stale_after

    def acquire(self, owner: str) -> LeaseRecord:
        """
        Take the lease for ``owner``.

        Re-entry by the current owner renews the lease. A lease held by a
        different owner is reclaimed only once it has expired.

        Raises:
            LeaseHeldError: If another owner holds an unexpired lease
        """
        for _ in range(2):
            record = self._create(owner)
            if record is not None:
                self.logger.debug(f"Lease {self.path.name} acquired by {owner}")
                return record

            current = self.read()
            if current is not None and current.session_id == owner:
                return self.renew(owner)

            if current is not None and not self.is_expired(current):
                raise LeaseHeldError(current.session_id, current.age(self.clock()))
            if current is None and self._file_age() <= self.stale_after:
                # Being written by a concurrent acquirer, or corrupt but recent
                raise LeaseHeldError("unknown", self._file_age())

            stale_owner = current.session_id if current else "unknown"
            self.logger.warning(f"Reclaiming stale lease {self.path.name} from {stale_owner}")
            remove_file(self.path)

        current = self.read()
        raise LeaseHeldError(current.session_id if current else "unknown", 0.0)

    def renew(self, owner: str) -> LeaseRecord:
        """
        Refresh the renewal timestamp of a lease held by ``owner``.

        Raises:
            LeaseHeldError: If the lease now belongs to someone else
        """
        current = self.read()
        if current is None:
            record = self._create(owner)
            if record is None:
                current = self.read()
                raise LeaseHeldError(current.session_id if current else "unknown", 0.0)
            return record
        if current.session_id != owner:
            raise LeaseHeldError(current.session_id, current.age(self.clock()))

        current.renewed_at = self.clock()
        current.owner_pid = os.getpid()
        atomic_write_json(self.path, asdict(current))
        return current

    def release(self, owner: Optional[str] = None) -> bool:
        """
        Delete the lease.

        Args:
            owner: Only release if held by this owner; None releases unconditionally
        """
        if owner is not None:
            current = self.read()
            if current is not None and current.session_id != owner:
                self.logger.warning(
                    f"Not releasing lease {self.path.name}: held by {current.session_id}, not {owner}"
                )
                return False
        return remove_file(self.path)

    def _create(self, owner: str) -> Optional[LeaseRecord]:
        now = self.clock()
        record = LeaseRecord(session_id=owner, owner_pid=os.getpid(), acquired_at=now, renewed_at=now)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(record), f)
            f.flush()
            os.fsync(f.fileno())
        return record

    def _file_age(self) -> float:
        try:
            return max(0.0, self.clock() - os.stat(self.path).st_mtime)
        except FileNotFoundError:
            return float("inf")
