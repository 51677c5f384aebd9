"""pr_migration.shared

Shared pieces used by every stage of a migration run.
Includes the error taxonomy, RunCounters, and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MigrationError(Exception):
    """Base class for every error that terminates a migration run."""


class ConfigError(MigrationError, ValueError):
    """Raised when the configuration file is missing or malformed."""


class IdentitySourceError(MigrationError):
    """Raised when a Jellyfin instance cannot list its users.

    Never fatal: callers convert it into an empty user list plus a warning.
    """


class MalformedRecordError(MigrationError):
    """Raised when an input TSV row cannot be decoded into an ActivityRecord."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        super().__init__(message)
        self.line_number = line_number


class TransactionError(MigrationError):
    """Raised when a relational transaction cannot be begun or committed."""


class StoreError(MigrationError):
    """Raised when an exists/insert query against the relational sink fails."""

    def __init__(self, operation: str, record: Any, cause: Exception) -> None:
        super().__init__(f"{operation} failed for {record!r}: {cause}")
        self.operation = operation
        self.record = record


class SourceReadError(MigrationError):
    """Raised when the input TSV cannot be opened or read."""


class SinkWriteError(MigrationError):
    """Raised when the output TSV cannot be written or finalized."""


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class ChangeEntry:
    new_id: str
    count: int = 0


@dataclass
class RunCounters:
    records_processed: int = 0
    records_rewritten: int = 0
    records_inserted: int = 0
    records_skipped_duplicate: int = 0
    identity_map_size: int = 0
    # old user id -> (new user id, records rewritten for it)
    changes: dict[str, ChangeEntry] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    final_state: str | None = None
    abort_reason: str | None = None

    def record_change(self, old_id: str, new_id: str) -> None:
        entry = self.changes.get(old_id)
        if entry is None:
            entry = self.changes[old_id] = ChangeEntry(new_id)
        entry.count += 1
        self.records_rewritten += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "records_processed": self.records_processed,
            "records_rewritten": self.records_rewritten,
            "records_inserted": self.records_inserted,
            "records_skipped_duplicate": self.records_skipped_duplicate,
            "identity_map_size": self.identity_map_size,
            "changes": {
                old_id: {"new_id": e.new_id, "count": e.count}
                for old_id, e in self.changes.items()
            },
            "final_state": self.final_state,
            "abort_reason": self.abort_reason,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------

def build_run_summary(
    counters: RunCounters,
    relational_configured: bool,
    dry_run: bool = False,
) -> str:
    lines = [
        "=== Playback Activity Migration Summary ===",
        f"dry_run                    : {dry_run}",
        f"final_state                : {counters.final_state}",
        f"identity_map_size          : {counters.identity_map_size}",
        f"records_processed          : {counters.records_processed}",
        f"records_rewritten          : {counters.records_rewritten}",
    ]
    if relational_configured:
        lines += [
            f"records_inserted           : {counters.records_inserted}",
            f"records_skipped_duplicate  : {counters.records_skipped_duplicate}",
        ]
    if counters.abort_reason:
        lines.append(f"abort_reason               : {counters.abort_reason}")

    lines.append("")
    if counters.changes:
        lines.append("--- Changes per user (old id -> new id: records) ---")
        for old_id, entry in counters.changes.items():
            lines.append(f"  {old_id!r} -> {entry.new_id!r}: {entry.count}")
    elif counters.identity_map_size == 0:
        lines.append("No user ids were rewritten: the identity map is empty.")
    else:
        lines.append(
            f"No user ids were rewritten: none of the {counters.identity_map_size} "
            "mapped old ids occurred in the input."
        )

    if counters.warnings:
        lines.append("")
        lines.append(f"--- Warnings ({len(counters.warnings)}) ---")
        lines.extend(f"  {w}" for w in counters.warnings)
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    dry_run: bool,
    source_paths: dict[str, str | None],
    counters: RunCounters,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
