import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Iterator, List, Optional, Sequence, Tuple

import psycopg

from fund_parser import DATE_FIELDS, NUMERIC_FIELDS, FundSnapshot, format_timestamp


class StorageError(Exception):
    """Raised when the funds table cannot be read or written."""


DB_ERRORS = (sqlite3.Error, psycopg.Error)

COLUMNS = ("name",) + DATE_FIELDS + NUMERIC_FIELDS + ("upload_date",)


# -----------------------------------------------------------------------------
# Schema
# -----------------------------------------------------------------------------

def _schema(id_column: str, real_type: str) -> List[str]:
    columns = (
        [f"id {id_column}", "name TEXT NOT NULL"]
        + [f"{c} TEXT" for c in DATE_FIELDS]
        + [f"{c} {real_type}" for c in NUMERIC_FIELDS]
        + ["upload_date TEXT NOT NULL"]
    )
    return [
        "CREATE TABLE IF NOT EXISTS funds (\n    " + ",\n    ".join(columns) + "\n)",
        "CREATE INDEX IF NOT EXISTS idx_fund_name ON funds(name)",
        "CREATE INDEX IF NOT EXISTS idx_upload_date ON funds(upload_date)",
    ]


SQLITE_SCHEMA = _schema("INTEGER PRIMARY KEY AUTOINCREMENT", "REAL")
POSTGRES_SCHEMA = _schema("BIGSERIAL PRIMARY KEY", "DOUBLE PRECISION")


def is_postgres_url(database: str) -> bool:
    return database.startswith(("postgres://", "postgresql://"))


def _num(value: Optional[Decimal]) -> Optional[float]:
    return None if value is None else float(value)


def _row_params(fund: FundSnapshot) -> Tuple[Any, ...]:
    dates = [None if getattr(fund, f) is None else format_timestamp(getattr(fund, f)) for f in DATE_FIELDS]
    numbers = [_num(getattr(fund, f)) for f in NUMERIC_FIELDS]
    return (fund.name, *dates, *numbers, format_timestamp(fund.upload_date))


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------

class FundStore:
    """
    Append-only history of fund snapshots.

    `database` is either a SQLite file path or a postgresql:// URL. A fresh
    connection is opened per call; concurrent writers are serialized by the
    engine (BEGIN IMMEDIATE on SQLite, a self-exclusive table lock on
    PostgreSQL), never by this class.
    """

    def __init__(self, database: str, *, busy_timeout: float = 30.0):
        self.database = database
        self.busy_timeout = busy_timeout
        self.postgres = is_postgres_url(database)
        ph = "%s" if self.postgres else "?"
        self._insert_sql = "INSERT INTO funds ({}) VALUES ({})".format(
            ", ".join(COLUMNS), ", ".join(ph for _ in COLUMNS)
        )

    @contextmanager
    def connect(self) -> Iterator[Any]:
        if self.postgres:
            conn = psycopg.connect(self.database, autocommit=True)
        else:
            conn = sqlite3.connect(self.database, timeout=self.busy_timeout, isolation_level=None)
            conn.execute("PRAGMA journal_mode = WAL")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write_transaction(self, conn) -> Iterator[Any]:
        if self.postgres:
            with conn.transaction():
                conn.execute("LOCK TABLE funds IN SHARE ROW EXCLUSIVE MODE")
                yield conn
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(f"failed to begin transaction: {e}") from e
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise StorageError(f"failed to commit transaction: {e}") from e

    def init_schema(self) -> None:
        statements = POSTGRES_SCHEMA if self.postgres else SQLITE_SCHEMA
        try:
            with self.connect() as conn:
                for stmt in statements:
                    conn.execute(stmt)
        except DB_ERRORS as e:
            raise StorageError(f"failed to create tables: {e}") from e

    def store_funds(self, funds: Sequence[FundSnapshot]) -> int:
        """
        Insert the whole batch in one transaction.

        Any failing row rolls back every row of the batch; the raised
        StorageError names the fund that failed.
        """
        try:
            with self.connect() as conn:
                with self._write_transaction(conn):
                    for fund in funds:
                        try:
                            conn.execute(self._insert_sql, _row_params(fund))
                        except DB_ERRORS as e:
                            raise StorageError(f"failed to insert fund '{fund.name}': {e}") from e
        except DB_ERRORS as e:
            raise StorageError(f"failed to store funds: {e}") from e
        return len(funds)

    def ping(self) -> None:
        try:
            with self.connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except DB_ERRORS as e:
            raise StorageError(f"database unreachable: {e}") from e

    def count_funds(self) -> int:
        try:
            with self.connect() as conn:
                row = conn.execute("SELECT COUNT(*) FROM funds").fetchone()
        except DB_ERRORS as e:
            raise StorageError(f"failed to count funds: {e}") from e
        return int(row[0])

    def prune_duplicates(self) -> int:
        """
        Out-of-band cleanup: keep the earliest row per (name, upload_date).
        Never called during ingest. Returns the number of rows deleted.
        """
        try:
            with self.connect() as conn:
                with self._write_transaction(conn):
                    cur = conn.execute(
                        """
                        DELETE FROM funds
                        WHERE id NOT IN (
                            SELECT MIN(id) FROM funds GROUP BY name, upload_date
                        )
                        """
                    )
                    deleted = cur.rowcount or 0
        except DB_ERRORS as e:
            raise StorageError(f"failed to prune duplicates: {e}") from e
        return int(deleted)
