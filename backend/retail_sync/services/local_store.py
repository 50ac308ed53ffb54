from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from loguru import logger

from retail_sync.db.session import (
    get_connection,
    init_db,
    quote_ident,
    table_columns,
    table_exists,
    transaction,
)
from retail_sync.models.sync_record import PENDING_STATUSES, SyncStatus
from retail_sync.services.catalog import ENTITIES, EntitySpec

RECORD_KEY = "record_key"
CONTROL_COLUMNS = frozenset({RECORD_KEY, "sync_status", "sync_message", "created_at", "updated_at"})
CHILD_COLUMNS = frozenset({"parent_key", "position"})
SYNC_HISTORY_TABLE = "sync_history"


def strip_control(row: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in row.items() if k not in CONTROL_COLUMNS}


def _coerce_value(v: Any) -> Any:
    if isinstance(v, (dict, list)):
        return json.dumps(v, ensure_ascii=False)
    return v


def _ensure_entity_table(conn: sqlite3.Connection, table: str, fields: Iterable[str]) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {quote_ident(table)} (
            record_key TEXT PRIMARY KEY,
            sync_status TEXT NOT NULL DEFAULT 'S',
            sync_message TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    _add_missing_columns(conn, table, fields)


def _ensure_child_table(conn: sqlite3.Connection, table: str, fields: Iterable[str]) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {quote_ident(table)} (
            parent_key TEXT NOT NULL,
            position INTEGER NOT NULL,
            PRIMARY KEY (parent_key, position)
        )
        """
    )
    _add_missing_columns(conn, table, fields)


def _add_missing_columns(conn: sqlite3.Connection, table: str, desired: Iterable[str]) -> None:
    existing = set(table_columns(conn, table))
    for column in desired:
        if column in existing:
            continue
        conn.execute(f"ALTER TABLE {quote_ident(table)} ADD COLUMN {quote_ident(column)}")
        existing.add(column)


def _rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]


class LocalStore:
    """
    Working copy of the remote master data.

    Every entity row carries ``sync_status``. Imports only overwrite rows that
    are in sync (``S``); rows with local pending changes or a failed push keep
    their data until the synchronizer has dealt with them.
    """

    # ---- imports ----

    def import_records(self, spec: EntitySpec, items: list[dict[str, Any]]) -> int:
        """
        Upserts one page of remote records plus their child collections atomically.
        Returns the number of rows actually written.
        """
        if not items:
            return 0

        prepared: list[tuple[str, dict[str, Any], dict[str, list[Any]]]] = []
        skipped = 0
        for item in items:
            key = spec.record_key(item)
            if key is None:
                skipped += 1
                continue
            scalars = {
                k: _coerce_value(v)
                for k, v in item.items()
                if k not in spec.children and k not in CONTROL_COLUMNS
            }
            nested = {
                field: value
                for field, value in ((f, item.get(f)) for f in spec.children)
                if isinstance(value, list)
            }
            prepared.append((key, scalars, nested))

        if skipped:
            logger.warning(f"{spec.table}: skipped {skipped} record(s) without key {spec.key_fields}")

        with transaction() as conn:
            fields = list(dict.fromkeys(f for _, scalars, _ in prepared for f in scalars))
            _ensure_entity_table(conn, spec.table, fields)

            saved = 0
            for key, scalars, nested in prepared:
                # rows with a pending sync tag are left untouched
                if not self._upsert_entity(conn, spec.table, key, scalars):
                    continue
                saved += 1
                for field, values in nested.items():
                    self._replace_children(conn, spec.children[field], key, values)

        return saved

    def _upsert_entity(self, conn: sqlite3.Connection, table: str, key: str, scalars: dict[str, Any]) -> bool:
        columns = [RECORD_KEY, *scalars.keys(), "sync_status"]
        values = [key, *scalars.values(), SyncStatus.SYNCED.value]
        assignments = [f"{quote_ident(c)} = excluded.{quote_ident(c)}" for c in scalars]
        assignments.append("updated_at = CURRENT_TIMESTAMP")

        cursor = conn.execute(
            f"""
            INSERT INTO {quote_ident(table)} ({", ".join(quote_ident(c) for c in columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(record_key) DO UPDATE SET {", ".join(assignments)}
            WHERE {quote_ident(table)}.sync_status = ?
            """,
            [*values, SyncStatus.SYNCED.value],
        )
        return cursor.rowcount > 0

    def _replace_children(self, conn: sqlite3.Connection, table: str, parent_key: str, values: list[Any]) -> None:
        rows = []
        for item in values:
            data = item if isinstance(item, dict) else {"value": item}
            rows.append({k: _coerce_value(v) for k, v in data.items() if k not in CHILD_COLUMNS})

        fields = list(dict.fromkeys(f for r in rows for f in r))
        _ensure_child_table(conn, table, fields)
        conn.execute(f"DELETE FROM {quote_ident(table)} WHERE parent_key = ?", (parent_key,))

        for position, row in enumerate(rows):
            columns = ["parent_key", "position", *row.keys()]
            conn.execute(
                f"INSERT INTO {quote_ident(table)} ({', '.join(quote_ident(c) for c in columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [parent_key, position, *row.values()],
            )

    # ---- reads ----

    def column_values(self, table: str, column: str) -> list[Any]:
        connection = get_connection()
        try:
            if not table_exists(connection, table) or column not in table_columns(connection, table):
                return []
            rows = connection.execute(
                f"SELECT {quote_ident(column)} AS v FROM {quote_ident(table)} ORDER BY rowid"
            ).fetchall()
        finally:
            connection.close()
        return [r["v"] for r in rows if r["v"] is not None]

    def rows(self, table: str) -> list[dict[str, Any]]:
        connection = get_connection()
        try:
            if not table_exists(connection, table):
                return []
            return _rows_to_dicts(connection.execute(f"SELECT * FROM {quote_ident(table)} ORDER BY rowid"))
        finally:
            connection.close()

    def children(self, table: str, parent_key: str) -> list[dict[str, Any]]:
        connection = get_connection()
        try:
            if not table_exists(connection, table):
                return []
            return _rows_to_dicts(
                connection.execute(
                    f"SELECT * FROM {quote_ident(table)} WHERE parent_key = ? ORDER BY position",
                    (parent_key,),
                )
            )
        finally:
            connection.close()

    def pending_rows(self, table: str) -> list[dict[str, Any]]:
        connection = get_connection()
        try:
            if not table_exists(connection, table):
                return []
            return _rows_to_dicts(
                connection.execute(
                    f"""
                    SELECT * FROM {quote_ident(table)}
                    WHERE sync_status IN (?, ?, ?)
                    ORDER BY updated_at, rowid
                    """,
                    [s.value for s in PENDING_STATUSES],
                )
            )
        finally:
            connection.close()

    def get_row(self, table: str, record_key: str, status: SyncStatus | None = None) -> dict[str, Any] | None:
        connection = get_connection()
        try:
            if not table_exists(connection, table):
                return None
            query = f"SELECT * FROM {quote_ident(table)} WHERE record_key = ?"
            params: list[Any] = [record_key]
            if status is not None:
                query += " AND sync_status = ?"
                params.append(status.value)
            row = connection.execute(query, params).fetchone()
        finally:
            connection.close()
        return dict(row) if row else None

    # ---- writes driven by sync / legacy refresh ----

    def set_sync_status(self, table: str, record_key: str, status: SyncStatus, message: str | None) -> None:
        with transaction() as conn:
            conn.execute(
                f"""
                UPDATE {quote_ident(table)}
                SET sync_status = ?, sync_message = ?, updated_at = CURRENT_TIMESTAMP
                WHERE record_key = ?
                """,
                (status.value, message, record_key),
            )

    def stage_change(self, table: str, record: dict[str, Any], record_key: str, status: SyncStatus) -> None:
        """Records a local edit (create/update/delete) waiting to be pushed."""
        scalars = {k: _coerce_value(v) for k, v in record.items() if k not in CONTROL_COLUMNS}
        columns = [RECORD_KEY, *scalars.keys(), "sync_status"]
        assignments = [f"{quote_ident(c)} = excluded.{quote_ident(c)}" for c in scalars]
        assignments += ["sync_status = excluded.sync_status", "updated_at = CURRENT_TIMESTAMP"]

        with transaction() as conn:
            _ensure_entity_table(conn, table, scalars.keys())
            conn.execute(
                f"""
                INSERT INTO {quote_ident(table)} ({", ".join(quote_ident(c) for c in columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT(record_key) DO UPDATE SET {", ".join(assignments)}
                """,
                [record_key, *scalars.values(), status.value],
            )

    def write_row(self, table: str, record_key: str, record: dict[str, Any]) -> None:
        """Update-or-insert of one row coming from another store. Keeps the row's sync tag."""
        scalars = {k: _coerce_value(v) for k, v in record.items() if k not in CONTROL_COLUMNS}
        columns = [RECORD_KEY, *scalars.keys()]
        assignments = [f"{quote_ident(c)} = excluded.{quote_ident(c)}" for c in scalars]
        assignments.append("updated_at = CURRENT_TIMESTAMP")

        with transaction() as conn:
            _ensure_entity_table(conn, table, scalars.keys())
            conn.execute(
                f"""
                INSERT INTO {quote_ident(table)} ({", ".join(quote_ident(c) for c in columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT(record_key) DO UPDATE SET {", ".join(assignments)}
                """,
                [record_key, *scalars.values()],
            )

    # ---- maintenance ----

    @staticmethod
    def managed_tables() -> list[str]:
        """Entity tables, their child tables and the sync history, in catalog order."""
        tables: list[str] = []
        for spec in ENTITIES.values():
            tables.append(spec.table)
            tables.extend(spec.children.values())
        tables.append(SYNC_HISTORY_TABLE)
        return list(dict.fromkeys(tables))

    def initialize(self) -> None:
        init_db()

    def stats(self) -> dict[str, Any]:
        """Row count per managed table; None for tables not created yet."""
        counts: dict[str, int | None] = {}
        connection = get_connection()
        try:
            for table in self.managed_tables():
                if not table_exists(connection, table):
                    counts[table] = None
                    continue
                row = connection.execute(f"SELECT COUNT(*) AS n FROM {quote_ident(table)}").fetchone()
                counts[table] = row["n"]
        finally:
            connection.close()
        return {"timestamp": datetime.now(tz=timezone.utc).isoformat(), "tables": counts}

    def clear(self) -> list[str]:
        """Deletes every row of the managed tables in one transaction. Structure is kept."""
        with transaction() as conn:
            cleared = [t for t in self.managed_tables() if table_exists(conn, t)]
            for table in cleared:
                conn.execute(f"DELETE FROM {quote_ident(table)}")
        logger.warning(f"Local store cleared: {len(cleared)} table(s)")
        return cleared

    def reset(self) -> list[str]:
        """
        Drops the managed tables and recreates the base schema. Entity tables
        come back on the next import. Credentials and job history survive.
        """
        with transaction() as conn:
            dropped = [t for t in self.managed_tables() if table_exists(conn, t)]
            for table in dropped:
                conn.execute(f"DROP TABLE {quote_ident(table)}")
        init_db()
        logger.warning(f"Local store reset: {len(dropped)} table(s) dropped")
        return dropped
