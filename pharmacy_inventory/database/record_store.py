"""
CSV record store with per-resource locking and atomic persistence.

Every operation on a resource (one CSV file) runs under an ``asyncio.Lock``
keyed by the file path, so at most one load, save or append is in flight per
file while operations on different files proceed independently. Lock waiters
are served in FIFO order. Blocking file I/O runs in a worker thread with the
lock held.

``save_all`` never writes the target in place: rows go to a temporary file in
the same directory which is then renamed over the target, so a reader outside
the lock never sees a half-written file.
"""

import asyncio
import csv
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from pharmacy_inventory.config import DATA_PATH
from pharmacy_inventory.database.models import RecordFamily
from pharmacy_inventory.errors import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

NEW_FILE_MODE = 0o644


class RecordStore:
    """File-backed store for the four record families."""

    def __init__(self, data_path: str = DATA_PATH):
        """
        Args:
            data_path: Directory holding the CSV files. Created on first write.
        """
        self.data_path = Path(data_path)
        self._locks: Dict[str, asyncio.Lock] = {}

    def resource_path(self, family: RecordFamily) -> Path:
        """Path of the CSV file backing ``family``."""
        return self.data_path / family.filename

    def _lock_for(self, path: Path) -> asyncio.Lock:
        key = str(path.resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # --- Public operations ---

    async def load_all(self, family: RecordFamily) -> List[Any]:
        """
        Load every record of a family.

        Returns an empty list when the file does not exist yet.

        Raises:
            ValidationError: A row does not match the family's schema.
            OSError: The file exists but cannot be read.
        """
        path = self.resource_path(family)
        async with self._lock_for(path):
            records = await asyncio.to_thread(self._read_records, family, path)
        logger.debug(f"Loaded {len(records)} {family.name} records from {path}")
        return records

    async def save_all(self, family: RecordFamily, records: List[Any]) -> None:
        """
        Replace the whole file with ``records`` (temp file + atomic rename).

        Raises:
            OSError: Writing the temp file or renaming it failed. The target
                file is left as it was.
        """
        path = self.resource_path(family)
        async with self._lock_for(path):
            await asyncio.to_thread(self._write_records, family, path, list(records))
        logger.debug(f"Saved {len(records)} {family.name} records to {path}")

    async def append(self, family: RecordFamily, record: Any) -> None:
        """
        Append one record, writing the header first if the file is new.

        Raises:
            ValidationError: The existing header lacks required columns.
            OSError: The file cannot be written.
        """
        path = self.resource_path(family)
        async with self._lock_for(path):
            await asyncio.to_thread(self._append_record, family, path, record)
        logger.debug(f"Appended {family.name} record to {path}")

    async def update_all(self, family: RecordFamily, mutate: Callable[[List[Any]], Optional[T]]) -> Optional[T]:
        """
        Read-modify-write under a single lock hold.

        ``mutate`` receives the loaded list and edits it in place. Its return
        value is passed back to the caller; returning ``None`` means nothing
        changed and the file is not rewritten.
        """
        path = self.resource_path(family)
        async with self._lock_for(path):
            records = await asyncio.to_thread(self._read_records, family, path)
            result = mutate(records)
            if result is None:
                return None
            await asyncio.to_thread(self._write_records, family, path, records)
        logger.debug(f"Updated {family.name} records in {path}")
        return result

    # --- Blocking helpers (run in worker threads) ---

    def _read_records(self, family: RecordFamily, path: Path) -> List[Any]:
        if not path.exists():
            return []

        records = []
        with open(path, "r", newline="", encoding="utf-8") as handle:
            reader = csv.DictReader(handle)
            if reader.fieldnames is None:
                return []
            reader.fieldnames = [name.strip() for name in reader.fieldnames]
            self._check_headers(family, reader.fieldnames)

            for row in reader:
                if all(value is None or value.strip() == "" for key, value in row.items() if key is not None):
                    continue
                extra = [value for value in row.get(None) or [] if value.strip()]
                if extra:
                    logger.error(f"Rejected {family.filename} row {reader.line_num}: unexpected extra fields")
                    raise ValidationError(family.filename, reader.line_num,
                                          f"{len(extra)} more field(s) than the header: {extra!r}")
                try:
                    records.append(family.from_row(row))
                except ValueError as e:
                    logger.error(f"Rejected {family.filename} row {reader.line_num}: {e}")
                    raise ValidationError(family.filename, reader.line_num, str(e)) from e
        return records

    def _write_records(self, family: RecordFamily, path: Path, records: List[Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = (path.stat().st_mode & 0o777) if path.exists() else NEW_FILE_MODE

        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=list(family.headers), lineterminator="\n")
                writer.writeheader()
                for record in records:
                    writer.writerow(family.to_row(record))
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(temp_name, mode)
            os.replace(temp_name, path)
        except BaseException:
            self._discard_temp(temp_name)
            raise

    def _append_record(self, family: RecordFamily, path: Path, record: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)

        fieldnames = self._existing_headers(path)
        write_header = fieldnames is None
        if fieldnames is None:
            fieldnames = list(family.headers)
        else:
            self._check_headers(family, fieldnames)

        with open(path, "a", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=fieldnames, extrasaction="ignore", lineterminator="\n")
            if write_header:
                writer.writeheader()
            writer.writerow(family.to_row(record))
            handle.flush()

    @staticmethod
    def _existing_headers(path: Path) -> Optional[List[str]]:
        """Header of an existing non-empty file, or None if it must be written."""
        if not path.exists() or path.stat().st_size == 0:
            return None
        with open(path, "r", newline="", encoding="utf-8") as handle:
            header = next(csv.reader(handle), None)
        if not header:
            return None
        return [name.strip() for name in header]

    @staticmethod
    def _check_headers(family: RecordFamily, fieldnames: List[str]) -> None:
        missing = [name for name in family.required_headers if name not in fieldnames]
        if missing:
            raise ValidationError(family.filename, 1, f"missing columns: {', '.join(missing)}")

    @staticmethod
    def _discard_temp(temp_name: str) -> None:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temporary file {temp_name}: {e}")
