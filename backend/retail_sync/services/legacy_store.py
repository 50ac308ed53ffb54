from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from retail_sync.core.config import Settings


class LegacyStoreError(Exception):
    pass


class LegacyNotConfiguredError(LegacyStoreError):
    pass


class LegacyConnectionError(LegacyStoreError):
    pass


class LegacyQueryError(LegacyStoreError):
    pass


@dataclass
class LegacyCredentials:
    host: str
    port: int
    database: str
    username: str
    password: str
    sslmode: str = "disable"  # disable | prefer | require
    schema: str = "public"


def credentials_from_settings(settings: Settings) -> Optional[LegacyCredentials]:
    if not settings.LEGACY_DB_NAME.strip():
        return None
    return LegacyCredentials(
        host=settings.LEGACY_DB_HOST,
        port=int(settings.LEGACY_DB_PORT),
        database=settings.LEGACY_DB_NAME.strip(),
        username=settings.LEGACY_DB_USER,
        password=settings.LEGACY_DB_PASSWORD,
        sslmode=settings.LEGACY_DB_SSLMODE,
        schema=settings.LEGACY_DB_SCHEMA,
    )


def connect(creds: LegacyCredentials) -> psycopg.Connection:
    try:
        return psycopg.connect(
            host=creds.host,
            port=creds.port,
            dbname=creds.database,
            user=creds.username,
            password=creds.password,
            sslmode=creds.sslmode,
            connect_timeout=10,
        )
    except psycopg.Error as exc:
        raise LegacyConnectionError(f"Unable to connect to the legacy server: {exc}") from exc


def test_connection(creds: LegacyCredentials) -> dict[str, Any]:
    started = time.perf_counter()
    try:
        conn = connect(creds)
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        finally:
            conn.close()
    except (LegacyConnectionError, psycopg.Error) as exc:
        return {
            "connected": False,
            "host": creds.host,
            "database": creds.database,
            "responseMs": int((time.perf_counter() - started) * 1000),
            "error": str(exc),
        }

    return {
        "connected": True,
        "host": creds.host,
        "database": creds.database,
        "responseMs": int((time.perf_counter() - started) * 1000),
    }


def list_tables(creds: LegacyCredentials) -> list[str]:
    conn = connect(creds)
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = %s
                  AND table_type = 'BASE TABLE'
                ORDER BY table_name
                """,
                (creds.schema,),
            )
            return [r[0] for r in cur.fetchall()]
    except psycopg.Error as exc:
        raise LegacyQueryError(f"Failed to list legacy tables: {exc}") from exc
    finally:
        conn.close()


def fetch_rows(creds: LegacyCredentials, table: str) -> list[dict[str, Any]]:
    conn = connect(creds)
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                sql.SQL("SELECT * FROM {}.{}").format(
                    sql.Identifier(creds.schema),
                    sql.Identifier(table),
                )
            )
            return [{k: _plain_value(v) for k, v in row.items()} for row in cur.fetchall()]
    except psycopg.Error as exc:
        raise LegacyQueryError(f"Failed to read legacy table {table}: {exc}") from exc
    finally:
        conn.close()


def upsert_row(
    conn: psycopg.Connection,
    schema: str,
    table: str,
    row: dict[str, Any],
    conflict_column: str = "id",
) -> None:
    """
    Update-or-insert of a single row, matched on ``conflict_column``.
    Commits on success and rolls back on failure so the next row starts clean.
    """
    columns = list(row.keys())
    if conflict_column not in columns:
        raise LegacyQueryError(f"Row has no '{conflict_column}' value")

    update_cols = [c for c in columns if c != conflict_column]
    if update_cols:
        conflict_action = sql.SQL("DO UPDATE SET {}").format(
            sql.SQL(", ").join(
                sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c))
                for c in update_cols
            )
        )
    else:
        conflict_action = sql.SQL("DO NOTHING")

    stmt = sql.SQL("INSERT INTO {}.{} ({}) VALUES ({}) ON CONFLICT ({}) {}").format(
        sql.Identifier(schema),
        sql.Identifier(table),
        sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        sql.Identifier(conflict_column),
        conflict_action,
    )

    try:
        with conn.cursor() as cur:
            cur.execute(stmt, [row[c] for c in columns])
        conn.commit()
    except psycopg.Error as exc:
        conn.rollback()
        raise LegacyQueryError(str(exc)) from exc


# -----------------------
# Type helpers
# -----------------------

def _plain_value(value: Any) -> Any:
    """Maps driver types onto what the local store can bind."""
    if isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value
