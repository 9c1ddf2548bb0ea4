"""
Append-only local cycle log.

The JSONL file is the system of record. Each record is written as one
complete line with a single O_APPEND write, so concurrent hooks never
interleave mid-line and earlier lines are never touched.
"""

import logging
import os
from pathlib import Path
from typing import Iterator, List, Optional

from pydantic import ValidationError

from config.settings import Settings, get_settings
from shared.models import LogRecord

logger = logging.getLogger(__name__)


class LocalLogError(Exception):
    """The record could not be appended."""


class LocalDurableLogger:
    """Appends LogRecords to a newline-delimited JSON file."""

    def __init__(self, path: Path, fsync: bool = True):
        self.path = Path(path)
        self.fsync = fsync

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "LocalDurableLogger":
        settings = settings or get_settings()
        return cls(Path(settings.storage.log_file), fsync=settings.storage.fsync)

    def append(self, record: LogRecord) -> None:
        """Append exactly one line, creating the file and its directories."""
        data = (record.to_line() + "\n").encode("utf-8")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_APPEND | os.O_CREAT, 0o644)
        except OSError as e:
            raise LocalLogError(f"Cannot open {self.path}: {e}") from e

        try:
            size = os.fstat(fd).st_size
            # A torn tail from an earlier crash must not swallow this record.
            if size and os.pread(fd, 1, size - 1) != b"\n":
                data = b"\n" + data
            view = memoryview(data)
            while view:
                written = os.write(fd, view)
                view = view[written:]
            if self.fsync:
                os.fsync(fd)
        except OSError as e:
            raise LocalLogError(f"Cannot append to {self.path}: {e}") from e
        finally:
            os.close(fd)

        logger.debug(f"Logged {record.phase.value} commit {record.commit_hash} to {self.path}")

    def read_records(self, limit: Optional[int] = None) -> List[LogRecord]:
        """Parsed records in file order; with ``limit`` only the last ones."""
        records = list(self.iter_records())
        if limit is not None:
            return records[-limit:] if limit > 0 else []
        return records

    def iter_records(self) -> Iterator[LogRecord]:
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield LogRecord.parse_line(line)
                except (ValueError, ValidationError) as e:
                    logger.debug(f"Skipping malformed line {line_number} in {self.path}: {e}")

    def count(self) -> int:
        return sum(1 for _ in self.iter_records())
