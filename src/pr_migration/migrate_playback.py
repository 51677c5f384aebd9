"""pr_migration.migrate_playback

CLI entrypoint: migrate Jellyfin Playback Reporting activity between
instances after users have been recreated with new ids.

Usage:
    python -m pr_migration.migrate_playback -c config.yml

    python -m pr_migration.migrate_playback \\
        --config-file-path /data/config.yml \\
        --dry-run \\
        --reports-dir artifacts/reports

Steps:
  1.  Load and validate the YAML config.
  2.  Fetch /Users from both instances (failures degrade to empty lists).
  3.  Build the old id -> new id map by display name.
  4.  Stream the input TSV through the map into the TSV and/or database sink.
  5.  Print the run summary and write a JSON run report.
"""

from __future__ import annotations

import contextlib
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click

from pr_migration.activity_store import PlaybackActivityStore
from pr_migration.activity_tsv import ActivityWriter, count_lines, read_activity_records
from pr_migration.config import DEFAULT_CONFIG_PATH, load_config
from pr_migration.identity import (
    describe_empty_sides,
    fetch_both,
    find_name_collisions,
    resolve_identity_map,
)
from pr_migration.pipeline import STATE_ABORTED, run_migration
from pr_migration.shared import (
    ConfigError,
    MigrationError,
    RunCounters,
    build_run_summary,
    write_run_report,
)


@click.command()
@click.option(
    "-c",
    "--config-file-path",
    default=str(DEFAULT_CONFIG_PATH),
    type=click.Path(dir_okay=False),
    show_default=True,
    help="YAML configuration file",
)
@click.option("--dry-run", is_flag=True, default=False, help="Roll back database changes at the end")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--reports-dir",
    default="./artifacts/reports",
    type=click.Path(file_okay=False),
    show_default=True,
    help="Directory for the JSON run report",
)
@click.option("--no-progress", is_flag=True, default=False, help="Disable the progress bar")
@click.option("--verbose", is_flag=True, default=False, help="Debug logging")
@click.option("--timeout", default=30, type=int, show_default=True, help="HTTP timeout in seconds for /Users")
def main(
    config_file_path: str,
    dry_run: bool,
    run_id: str | None,
    reports_dir: str,
    no_progress: bool,
    verbose: bool,
    timeout: int,
) -> None:
    """Rewrite user ids in a Playback Reporting TSV export."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = RunCounters()

    click.echo(f"[{run_id}] Starting playback activity migration (dry_run={dry_run})")

    try:
        config = load_config(Path(config_file_path))
    except ConfigError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Configuration loaded from {config.source_path}")

    # ------------------------------------------------------------------ #
    # Identity map                                                         #
    # ------------------------------------------------------------------ #
    old_users, new_users = fetch_both(config.instance_old, config.instance_new, timeout=timeout)
    empty_note = describe_empty_sides(old_users, new_users)
    if empty_note:
        click.echo(f"[{run_id}] {empty_note}")
        counters.warnings.append(empty_note)

    for name, ids in find_name_collisions(new_users).items():
        counters.warnings.append(
            f"new instance has {len(ids)} users named {name!r} ({', '.join(ids)}); "
            f"mapping uses the last one, {ids[-1]!r}"
        )

    identity_map = resolve_identity_map(old_users, new_users)
    click.echo(f"[{run_id}] Identity map has {len(identity_map)} entries")

    # ------------------------------------------------------------------ #
    # Sinks + streaming pass                                               #
    # ------------------------------------------------------------------ #
    writer = None
    if config.tsv_output_enabled:
        writer = ActivityWriter(config.output_tsv_file_path)
        click.echo(f"[{run_id}] TSV output will be written to: {config.output_tsv_file_path}")
    else:
        click.echo(f"[{run_id}] TSV output is not configured.")

    store = None
    if config.db_output_enabled:
        store = PlaybackActivityStore(config.db_dsn, config.db_table_name)
        click.echo(f"[{run_id}] Database output table: {config.db_table_name}")
    else:
        click.echo(f"[{run_id}] Database output is not configured.")

    failure: MigrationError | None = None
    try:
        with contextlib.ExitStack() as stack:
            if store is not None:
                stack.enter_context(store)
            records = read_activity_records(config.input_tsv_file_path)
            if not no_progress:
                records = stack.enter_context(
                    click.progressbar(
                        records,
                        length=count_lines(config.input_tsv_file_path),
                        label="Processing records",
                    )
                )
            run_migration(
                records,
                identity_map,
                counters,
                writer=writer,
                store=store,
                dry_run=dry_run,
            )
    except MigrationError as exc:
        if counters.final_state is None:
            # count_lines failed before run_migration started.
            counters.final_state = STATE_ABORTED
            counters.abort_reason = f"{type(exc).__name__}: {exc}"
        failure = exc

    click.echo(build_run_summary(counters, config.db_output_enabled, dry_run=dry_run))

    report_path = write_run_report(
        run_id, started_at, dry_run,
        {
            "input_tsv_file_path": str(config.input_tsv_file_path),
            "output_tsv_file_path": (
                str(config.output_tsv_file_path) if config.output_tsv_file_path else None
            ),
            "db_table_name": config.db_table_name if config.db_output_enabled else None,
        },
        counters,
        reports_dir=Path(reports_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if failure is not None:
        click.echo(f"[{run_id}] FATAL: {failure}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


if __name__ == "__main__":
    main()
