"""pr_migration.pipeline

Streaming rewrite of Playback Reporting activity.

Processing order:
  1.  If the database sink is configured, begin its transaction.
      Failure here stops the run before any record is read.
  2.  For each record, in file order:
      a.  Count it.
      b.  If its UserId is a key of the identity map, rewrite it and
          tally the change against the old id.
      c.  Hand it to the TSV writer (if configured).
      d.  check_and_insert it into the database (if configured).
  3.  Flush the TSV output to disk.
  4.  Commit the database transaction (roll back instead on dry runs).
  5.  Publish the TSV output at its final path.

Any error in steps 1-5 rolls back the transaction, discards the partial
TSV output, marks the run aborted and re-raises the original error.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

from pr_migration.activity_store import INSERTED, InsertOutcome
from pr_migration.activity_tsv import ActivityRecord, ActivityWriter
from pr_migration.shared import RunCounters

log = logging.getLogger(__name__)

STATE_DONE = "done"
STATE_ABORTED = "aborted"


class ActivityStore(Protocol):
    @property
    def in_transaction(self) -> bool: ...

    def begin(self) -> None: ...

    def check_and_insert(self, record: ActivityRecord) -> InsertOutcome: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


def apply_identity_map(
    record: ActivityRecord,
    identity_map: dict[str, str],
    counters: RunCounters,
) -> bool:
    """Rewrite record.user_id in place if it is mapped. Returns True if rewritten."""
    new_id = identity_map.get(record.user_id)
    if new_id is None:
        return False
    counters.record_change(record.user_id, new_id)
    record.user_id = new_id
    return True


def _abort(
    exc: BaseException,
    counters: RunCounters,
    writer: ActivityWriter | None,
    store: ActivityStore | None,
) -> None:
    counters.final_state = STATE_ABORTED
    counters.abort_reason = f"{type(exc).__name__}: {exc}"
    if store is not None and store.in_transaction:
        try:
            store.rollback()
        except Exception as rb_exc:
            log.error("Failed to roll back transaction after %s: %s", type(exc).__name__, rb_exc)
    if writer is not None:
        writer.discard()


def run_migration(
    records: Iterable[ActivityRecord],
    identity_map: dict[str, str],
    counters: RunCounters,
    writer: ActivityWriter | None = None,
    store: ActivityStore | None = None,
    dry_run: bool = False,
) -> RunCounters:
    """Stream records through the identity map into the configured sinks.

    counters is updated in place and also returned.  The caller owns the
    store's connection (close it afterwards) but this function owns the
    transaction.
    """
    counters.identity_map_size = len(identity_map)
    if not identity_map:
        log.info("Identity map is empty; records pass through unchanged.")
    if writer is None and store is None:
        log.warning("No output (TSV or database) is configured; nothing will be saved.")

    try:
        if store is not None:
            store.begin()

        for record in records:
            counters.records_processed += 1
            apply_identity_map(record, identity_map, counters)

            if writer is not None:
                writer.write(record)

            if store is not None:
                try:
                    outcome = store.check_and_insert(record)
                except Exception:
                    log.error("Database write failed on record %d: %r", counters.records_processed, record)
                    raise
                if outcome == INSERTED:
                    counters.records_inserted += 1
                else:
                    counters.records_skipped_duplicate += 1

        if writer is not None:
            writer.flush()

        if store is not None:
            if dry_run:
                store.rollback()
                log.info("Dry run: database transaction rolled back.")
            else:
                store.commit()

        if writer is not None:
            writer.commit()
    except Exception as exc:
        _abort(exc, counters, writer, store)
        raise

    counters.final_state = STATE_DONE
    return counters
