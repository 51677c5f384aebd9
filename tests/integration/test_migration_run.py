"""Integration tests for full migration runs against PostgreSQL.

Covers re-run idempotence, all-or-nothing database writes, and the CLI
with both sinks configured.
"""

from __future__ import annotations

import json
import textwrap
from pathlib import Path
from unittest.mock import patch

import psycopg
import pytest
from click.testing import CliRunner

from pr_migration.activity_store import PlaybackActivityStore
from pr_migration.activity_tsv import ActivityWriter, read_activity_records
from pr_migration.identity import Identity
from pr_migration.migrate_playback import main
from pr_migration.pipeline import run_migration
from pr_migration.shared import MalformedRecordError, RunCounters, StoreError

ROWS = [
    ["2024-01-01 10:00:00", "old-alice", "item_1", "Movie", "The Matrix", "DirectPlay", "Jellyfin Web", "Chrome Browser", "5400"],
    ["2024-01-02 11:00:00", "old-bob", "item_2", "Episode", "Dune", "Transcode", "Infuse", "Apple TV", "3000"],
    ["2024-01-03 12:00:00", "old-alice", "item_3", "Audio", "Inception", "DirectStream", "VLC", "Windows PC", "300"],
    ["2024-01-04 13:00:00", "stranger", "item_4", "Movie", "Dune", "DirectPlay", "Jellyfin iOS", "iPhone 13", "7200"],
    ["2024-01-05 14:00:00", "old-bob", "item_5", "MusicVideo", "The Office S02E03", "DirectPlay", "Jellyfin Android", "Samsung Galaxy", "900"],
]
IDENTITY_MAP = {"old-alice": "new-alice", "old-bob": "new-bob"}


def _write_input(tmp_path: Path, rows=ROWS) -> Path:
    path = tmp_path / "input.tsv"
    path.write_text("".join("\t".join(r) + "\n" for r in rows), encoding="utf-8")
    return path


def _table_rows(conn: psycopg.Connection, table: str = "PlaybackActivity") -> list[tuple]:
    return conn.execute(
        f'SELECT * FROM "{table}" ORDER BY "DateCreated", "UserId", "ItemId"'
    ).fetchall()


def _run(input_path: Path, dsn: str, table: str = "PlaybackActivity", **kwargs) -> RunCounters:
    with PlaybackActivityStore(dsn, table) as store:
        return run_migration(
            read_activity_records(input_path),
            IDENTITY_MAP,
            RunCounters(),
            store=store,
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------

class TestRerun:
    def test_second_run_inserts_nothing(self, db_conn, tmp_path):
        conn, dsn = db_conn
        input_path = _write_input(tmp_path)

        first = _run(input_path, dsn)
        after_first = _table_rows(conn)
        second = _run(input_path, dsn)

        assert first.records_inserted == 5
        assert first.records_rewritten == 4
        assert second.records_inserted == 0
        assert second.records_skipped_duplicate == first.records_inserted
        assert _table_rows(conn) == after_first

    def test_rows_carry_new_user_ids(self, db_conn, tmp_path):
        conn, dsn = db_conn
        _run(_write_input(tmp_path), dsn)
        user_ids = [row[1] for row in _table_rows(conn)]
        assert user_ids == ["new-alice", "new-bob", "new-alice", "stranger", "new-bob"]

    def test_same_record_twice_in_one_run(self, db_conn, tmp_path):
        conn, dsn = db_conn
        counters = _run(_write_input(tmp_path, [ROWS[0], ROWS[0]]), dsn)
        assert counters.records_inserted == 1
        assert counters.records_skipped_duplicate == 1
        assert len(_table_rows(conn)) == 1

    def test_quoted_item_names_are_stored_verbatim(self, db_conn, tmp_path):
        conn, dsn = db_conn
        rows = [list(ROWS[0]), list(ROWS[1])]
        rows[0][4] = '"Weird" Al Live'
        rows[1][4] = '12" Single'
        input_path = _write_input(tmp_path, rows)

        _run(input_path, dsn)
        second = _run(input_path, dsn)

        names = [row[4] for row in _table_rows(conn)]
        assert names == ['"Weird" Al Live', '12" Single']
        assert second.records_skipped_duplicate == 2

    def test_dry_run_leaves_table_empty(self, db_conn, tmp_path):
        conn, dsn = db_conn
        counters = _run(_write_input(tmp_path), dsn, dry_run=True)
        assert counters.records_inserted == 5
        assert _table_rows(conn) == []


# ---------------------------------------------------------------------------
# Atomicity
# ---------------------------------------------------------------------------

class TestAtomicity:
    @pytest.mark.parametrize("bad_index", [0, 2, 4])
    def test_failure_on_any_record_leaves_no_rows(self, db_conn, tmp_path, bad_index):
        conn, dsn = db_conn
        conn.execute(
            'CREATE TABLE "Checked" ('
            ' "DateCreated" TEXT, "UserId" TEXT, "ItemId" TEXT, "ItemType" TEXT,'
            ' "ItemName" TEXT, "PlaybackMethod" TEXT, "ClientName" TEXT,'
            ' "DeviceName" TEXT, "PlayDuration" TEXT CHECK ("PlayDuration" <> \'boom\'))'
        )
        rows = [list(r) for r in ROWS]
        rows[bad_index][8] = "boom"
        input_path = _write_input(tmp_path, rows)
        out = tmp_path / "out.tsv"

        counters = RunCounters()
        with PlaybackActivityStore(dsn, "Checked") as store:
            with pytest.raises(StoreError) as exc_info:
                run_migration(
                    read_activity_records(input_path),
                    IDENTITY_MAP,
                    counters,
                    writer=ActivityWriter(out),
                    store=store,
                )

        assert exc_info.value.operation == "insert"
        assert counters.final_state == "aborted"
        assert counters.records_processed == bad_index + 1
        assert _table_rows(conn, "Checked") == []
        assert not out.exists()

    def test_previous_runs_survive_a_failed_run(self, db_conn, tmp_path):
        conn, dsn = db_conn
        _run(_write_input(tmp_path, ROWS[:2]), dsn)
        before = _table_rows(conn)

        bad = tmp_path / "bad"
        bad.mkdir()
        broken = _write_input(bad, ROWS[2:])
        broken.write_text(broken.read_text(encoding="utf-8") + "truncated\trow\n", encoding="utf-8")
        with pytest.raises(MalformedRecordError):
            _run(broken, dsn)

        assert _table_rows(conn) == before


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _write_config(tmp_path: Path, dsn: str, input_path: Path) -> Path:
    path = tmp_path / "config.yml"
    path.write_text(textwrap.dedent(f"""\
        input_tsv_file_path: {input_path}
        output_tsv_file_path: {tmp_path / 'output.tsv'}
        db_dsn: "{dsn}"
        instance_old:
          base_url: old.local:8096
          api_token: old-token
        instance_new:
          base_url: new.local:8096
          api_token: new-token
    """), encoding="utf-8")
    return path


USERS = (
    [Identity("old-alice", "alice"), Identity("old-bob", "bob")],
    [Identity("new-alice", "alice"), Identity("new-bob", "bob")],
)


class TestCli:
    def _invoke(self, config_path: Path, tmp_path: Path, *extra: str):
        runner = CliRunner()
        with patch("pr_migration.migrate_playback.fetch_both", return_value=USERS):
            return runner.invoke(main, [
                "-c", str(config_path),
                "--run-id", "it-run",
                "--reports-dir", str(tmp_path / "reports"),
                *extra,
            ])

    def test_both_sinks(self, db_conn, tmp_path):
        conn, dsn = db_conn
        input_path = _write_input(tmp_path)
        config_path = _write_config(tmp_path, dsn, input_path)

        result = self._invoke(config_path, tmp_path)
        assert result.exit_code == 0, result.output

        tsv_rows = [r.as_row() for r in read_activity_records(tmp_path / "output.tsv")]
        assert sorted(tsv_rows) == sorted(_table_rows(conn))
        assert "records_inserted           : 5" in result.output

        rerun = self._invoke(config_path, tmp_path)
        assert rerun.exit_code == 0, rerun.output
        assert "records_skipped_duplicate  : 5" in rerun.output
        assert len(_table_rows(conn)) == 5

    def test_dry_run(self, db_conn, tmp_path):
        conn, dsn = db_conn
        config_path = _write_config(tmp_path, dsn, _write_input(tmp_path))
        result = self._invoke(config_path, tmp_path, "--dry-run", "--no-progress")
        assert result.exit_code == 0, result.output
        assert _table_rows(conn) == []

    def test_missing_table_exits_non_zero(self, db_conn, tmp_path):
        conn, dsn = db_conn
        conn.execute('DROP TABLE "PlaybackActivity"')
        config_path = _write_config(tmp_path, dsn, _write_input(tmp_path))
        result = self._invoke(config_path, tmp_path, "--no-progress")
        assert result.exit_code == 1
        assert "could not begin transaction" in result.output
        report = json.loads((tmp_path / "reports" / "it-run.json").read_text())
        assert report["counters"]["records_processed"] == 0
        assert report["counters"]["final_state"] == "aborted"
