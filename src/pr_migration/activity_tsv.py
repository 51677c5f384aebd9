"""pr_migration.activity_tsv

Reader and writer for Playback Reporting activity exports.

The export is tab-separated, has no header row, and always carries nine
columns in this order:

    DateCreated, UserId, ItemId, ItemType, ItemName,
    PlaybackMethod, ClientName, DeviceName, PlayDuration

Every value is kept as opaque text; dates and durations are never parsed.
Quote characters carry no meaning, so a field may hold any text except a
tab or a line break.  The reader and the writer share one csv dialect so
that a file can be decoded and re-encoded byte for byte.
"""

from __future__ import annotations

import csv
import logging
import os
from dataclasses import astuple, dataclass
from pathlib import Path
from typing import Iterator

from pr_migration.shared import MalformedRecordError, SinkWriteError, SourceReadError

log = logging.getLogger(__name__)

COLUMN_NAMES = (
    "DateCreated",
    "UserId",
    "ItemId",
    "ItemType",
    "ItemName",
    "PlaybackMethod",
    "ClientName",
    "DeviceName",
    "PlayDuration",
)

_TSV_DIALECT = {
    "delimiter": "\t",
    "quotechar": None,
    "quoting": csv.QUOTE_NONE,
    "lineterminator": "\n",
}


# ---------------------------------------------------------------------------
# ActivityRecord
# ---------------------------------------------------------------------------

@dataclass
class ActivityRecord:
    """One playback event. Identity for dedup is all nine fields."""

    date_created: str
    user_id: str
    item_id: str
    item_type: str
    item_name: str
    playback_method: str
    client_name: str
    device_name: str
    play_duration: str

    @classmethod
    def from_row(cls, fields: list[str], line_number: int | None = None) -> ActivityRecord:
        if len(fields) != len(COLUMN_NAMES):
            raise MalformedRecordError(
                f"line {line_number}: expected {len(COLUMN_NAMES)} fields, "
                f"found {len(fields)}: {fields!r}",
                line_number=line_number,
            )
        return cls(*fields)

    def as_row(self) -> tuple[str, ...]:
        return astuple(self)


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

def read_activity_records(path: Path) -> Iterator[ActivityRecord]:
    """Yield ActivityRecords from a TSV export in file order.

    Blank lines are skipped. Any row that cannot be decoded raises
    MalformedRecordError and ends the sequence. A file that cannot be
    opened or read raises SourceReadError.
    """
    try:
        fh = open(path, newline="", encoding="utf-8")
    except OSError as exc:
        raise SourceReadError(f"cannot read {path}: {exc}") from exc
    with fh:
        reader = csv.reader(fh, **_TSV_DIALECT)
        while True:
            try:
                fields = next(reader)
            except StopIteration:
                return
            except UnicodeDecodeError as exc:
                line_number = reader.line_num + 1
                raise MalformedRecordError(
                    f"near line {line_number}: not valid UTF-8: {exc}",
                    line_number=line_number,
                ) from exc
            except csv.Error as exc:
                raise MalformedRecordError(
                    f"line {reader.line_num}: {exc}",
                    line_number=reader.line_num,
                ) from exc
            except OSError as exc:
                raise SourceReadError(
                    f"cannot read {path} after line {reader.line_num}: {exc}"
                ) from exc
            if not fields:
                continue
            yield ActivityRecord.from_row(fields, reader.line_num)


def count_lines(path: Path) -> int:
    """Count physical lines; only used to size the progress bar."""
    try:
        with open(path, "rb") as fh:
            return sum(1 for _ in fh)
    except OSError as exc:
        raise SourceReadError(f"cannot read {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class ActivityWriter:
    """Lazy-open TSV writer that publishes its output atomically.

    Rows go to ``<path>.partial``.  commit() flushes, fsyncs and renames the
    partial file over ``path``; discard() deletes it, leaving any previous
    ``path`` untouched.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._tmp_path = path.with_name(path.name + ".partial")
        self._fh = None
        self._writer = None
        self.rows_written = 0

    @property
    def path(self) -> Path:
        return self._path

    def _open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self._tmp_path, "w", newline="", encoding="utf-8")
        self._writer = csv.writer(self._fh, **_TSV_DIALECT)

    def write(self, record: ActivityRecord) -> None:
        try:
            if self._fh is None:
                self._open()
            self._writer.writerow(record.as_row())
        except (OSError, csv.Error) as exc:
            raise SinkWriteError(
                f"writing {record!r} to {self._tmp_path} failed: {exc}"
            ) from exc
        self.rows_written += 1

    def flush(self) -> None:
        """Flush and fsync the partial file without publishing it."""
        try:
            if self._fh is None:
                # Zero rows still produces an (empty) output file.
                self._open()
            self._fh.flush()
            os.fsync(self._fh.fileno())
        except OSError as exc:
            raise SinkWriteError(f"flushing {self._tmp_path} failed: {exc}") from exc

    def commit(self) -> None:
        """Make every written row durable at the destination path."""
        self.flush()
        try:
            self._fh.close()
            self._fh = None
            os.replace(self._tmp_path, self._path)
        except OSError as exc:
            raise SinkWriteError(f"finalizing {self._path} failed: {exc}") from exc
        log.info("Wrote %d records to %s", self.rows_written, self._path)

    def discard(self) -> None:
        """Drop the partial file. Errors are logged, never raised."""
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError as exc:
                log.error("Could not close partial output %s: %s", self._tmp_path, exc)
            finally:
                self._fh = None
        try:
            self._tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.error("Could not remove partial output %s: %s", self._tmp_path, exc)
