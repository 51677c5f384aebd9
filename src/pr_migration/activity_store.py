"""pr_migration.activity_store

PostgreSQL sink for migrated playback activity.

One PlaybackActivityStore owns one connection and at most one open
transaction.  Rows are deduplicated by full nine-column equality: a row is
inserted only when no identical row already exists, so re-running a
migration against an already-migrated table inserts nothing.

The table must already exist (see migrations/0001_playback_activity.sql);
this module never creates or alters schema.

Usage:
    store = PlaybackActivityStore(db_dsn, "PlaybackActivity")
    store.begin()
    try:
        for record in records:
            store.check_and_insert(record)
        store.commit()
    except Exception:
        store.rollback()
        raise
    finally:
        store.close()
"""

from __future__ import annotations

import logging
import re
from typing import Literal

import psycopg
from psycopg import sql

from pr_migration.activity_tsv import COLUMN_NAMES, ActivityRecord
from pr_migration.shared import ConfigError, StoreError, TransactionError

log = logging.getLogger(__name__)

DEFAULT_TABLE_NAME = "PlaybackActivity"

# Postgres identifiers are at most 63 bytes.
_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

INSERTED = "inserted"
SKIPPED = "skipped"
InsertOutcome = Literal["inserted", "skipped"]


def validate_table_name(name: str) -> str:
    """Return name unchanged if it is a plain identifier, else raise ConfigError."""
    if not isinstance(name, str) or not _TABLE_NAME_RE.match(name):
        raise ConfigError(
            f"invalid table name {name!r}: use letters, digits and underscores only"
        )
    return name


def _build_queries(table_name: str) -> tuple[sql.Composed, sql.Composed, sql.Composed]:
    table = sql.Identifier(table_name)
    columns = [sql.Identifier(c) for c in COLUMN_NAMES]
    probe = sql.SQL("SELECT 1 FROM {} LIMIT 0").format(table)
    exists = sql.SQL("SELECT EXISTS(SELECT 1 FROM {} WHERE {} LIMIT 1)").format(
        table,
        sql.SQL(" AND ").join(
            sql.SQL("{} = %s").format(col) for col in columns
        ),
    )
    insert = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        table,
        sql.SQL(", ").join(columns),
        sql.SQL(", ").join(sql.Placeholder() for _ in columns),
    )
    return probe, exists, insert


class PlaybackActivityStore:
    """Transactional, duplicate-safe writer for the PlaybackActivity table."""

    def __init__(self, db_dsn: str, table_name: str = DEFAULT_TABLE_NAME) -> None:
        self._dsn = db_dsn
        self.table_name = validate_table_name(table_name)
        self._probe_q, self._exists_q, self._insert_q = _build_queries(self.table_name)
        self._conn: psycopg.Connection | None = None
        self._active = False

    @property
    def in_transaction(self) -> bool:
        return self._active

    # -- transaction lifecycle ----------------------------------------------

    def begin(self) -> None:
        if self._active:
            raise TransactionError("a transaction is already active on this store")
        try:
            if self._conn is None or self._conn.closed:
                self._conn = psycopg.connect(self._dsn, autocommit=False)
            # Opens the implicit transaction and fails fast on a missing table.
            self._conn.execute(self._probe_q)
        except psycopg.Error as exc:
            if self._conn is not None and not self._conn.closed:
                try:
                    self._conn.rollback()
                except psycopg.Error as rb_exc:
                    log.error("Rollback after failed begin also failed: %s", rb_exc)
            raise TransactionError(
                f"could not begin transaction on table {self.table_name!r}: {exc}"
            ) from exc
        self._active = True
        log.info("Transaction started on table %s", self.table_name)

    def commit(self) -> None:
        if not self._active:
            raise TransactionError("commit() called with no active transaction")
        try:
            self._conn.commit()
        except psycopg.Error as exc:
            log.error("Commit failed: %s. Attempting rollback.", exc)
            try:
                self._conn.rollback()
            except psycopg.Error as rb_exc:
                log.error("Rollback after failed commit also failed: %s", rb_exc)
            raise TransactionError(f"commit failed: {exc}") from exc
        finally:
            self._active = False
        log.info("Transaction committed on table %s", self.table_name)

    def rollback(self) -> None:
        if not self._active:
            return
        try:
            self._conn.rollback()
        finally:
            self._active = False
        log.info("Transaction rolled back on table %s", self.table_name)

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            if self._active:
                self.rollback()
            self._conn.close()
        self._conn = None

    def __enter__(self) -> PlaybackActivityStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- row operations -------------------------------------------------------

    def _require_active(self, operation: str) -> psycopg.Connection:
        if not self._active:
            raise TransactionError(f"{operation} requires an active transaction")
        return self._conn

    def exists(self, record: ActivityRecord) -> bool:
        conn = self._require_active("exists")
        try:
            row = conn.execute(self._exists_q, record.as_row()).fetchone()
        except psycopg.Error as exc:
            raise StoreError("exists", record, exc) from exc
        return bool(row[0])

    def insert(self, record: ActivityRecord) -> None:
        conn = self._require_active("insert")
        try:
            conn.execute(self._insert_q, record.as_row())
        except psycopg.Error as exc:
            raise StoreError("insert", record, exc) from exc

    def check_and_insert(self, record: ActivityRecord) -> InsertOutcome:
        """Insert record unless an identical row is already present."""
        if self.exists(record):
            return SKIPPED
        self.insert(record)
        return INSERTED
