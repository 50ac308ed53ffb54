"""
Local store <-> legacy SQL server.

- ``compare``: diff of the local table (source) against the legacy table (target)
- ``migrate``: push every local row to the legacy server, row by row
- ``refresh_local``: pull legacy rows into the local table (update-or-insert)

Both directions isolate failures per row and report them in the result.
"""
from __future__ import annotations

import sqlite3
from typing import Any, Optional

from loguru import logger

from retail_sync.services import legacy_store
from retail_sync.services.catalog import ENTITIES, EntitySpec
from retail_sync.services.comparator import CompareOptions, ComparisonResult, compare
from retail_sync.services.legacy_store import (
    LegacyCredentials,
    LegacyNotConfiguredError,
    LegacyQueryError,
    LegacyStoreError,
)
from retail_sync.services.local_store import LocalStore, strip_control


class UnknownLegacyDomainError(LegacyStoreError):
    pass


class LegacySyncService:
    def __init__(self, local_store: LocalStore, credentials: Optional[LegacyCredentials]) -> None:
        self._local = local_store
        self._credentials = credentials

    @property
    def configured(self) -> bool:
        return self._credentials is not None

    def status(self) -> dict[str, Any]:
        return legacy_store.test_connection(self._creds())

    def list_tables(self) -> list[str]:
        return legacy_store.list_tables(self._creds())

    def compare(
        self,
        domain: str,
        legacy_table: Optional[str] = None,
        key_field: Optional[str] = None,
        compare_fields: Optional[list[str]] = None,
    ) -> ComparisonResult:
        spec = self._spec(domain)
        creds = self._creds()

        local_rows = [strip_control(r) for r in self._local.rows(spec.table)]
        legacy_rows = legacy_store.fetch_rows(creds, legacy_table or spec.table)

        return compare(
            local_rows,
            legacy_rows,
            CompareOptions(key_field=key_field or "id", compare_fields=list(compare_fields or [])),
        )

    def migrate(self, domain: str) -> dict[str, Any]:
        spec = self._spec(domain)
        creds = self._creds()
        rows = [strip_control(r) for r in self._local.rows(spec.table)]

        migrated = 0
        error_details: list[dict[str, Any]] = []

        conn = legacy_store.connect(creds)
        try:
            for row in rows:
                try:
                    legacy_store.upsert_row(conn, creds.schema, spec.table, row)
                    migrated += 1
                except LegacyQueryError as exc:
                    error_details.append({"id": row.get("id"), "error": str(exc)})
                    logger.error(f"Migration {spec.table}[{row.get('id')}] failed: {exc}")
        finally:
            conn.close()

        logger.info(f"Migration {spec.table}: {migrated}/{len(rows)} ({len(error_details)} errors)")
        return {
            "migrated": migrated,
            "total": len(rows),
            "errors": len(error_details),
            "errorDetails": error_details,
        }

    def refresh_local(
        self,
        domain: str,
        legacy_table: Optional[str] = None,
        key_field: Optional[str] = None,
    ) -> dict[str, Any]:
        spec = self._spec(domain)
        creds = self._creds()
        rows = legacy_store.fetch_rows(creds, legacy_table or spec.table)

        updated = 0
        for row in rows:
            key = self._record_key(spec, row, key_field)
            if key is None:
                logger.warning(f"Refresh {spec.table}: legacy row without key skipped")
                continue
            try:
                self._local.write_row(spec.table, key, row)
                updated += 1
            except sqlite3.Error as exc:
                logger.error(f"Refresh {spec.table}[{key}] failed: {exc}")

        logger.info(f"Local {spec.table} refreshed from legacy server: {updated}/{len(rows)}")
        return {"domain": domain, "updated": updated, "total": len(rows)}

    # ---- internals ----

    def _creds(self) -> LegacyCredentials:
        if self._credentials is None:
            raise LegacyNotConfiguredError("Legacy server is not configured (LEGACY_DB_NAME is empty)")
        return self._credentials

    def _spec(self, domain: str) -> EntitySpec:
        spec = ENTITIES.get(domain)
        if spec is None:
            raise UnknownLegacyDomainError(f"Unknown domain: {domain!r}")
        return spec

    def _record_key(self, spec: EntitySpec, row: dict[str, Any], key_field: Optional[str]) -> Optional[str]:
        if key_field:
            value = row.get(key_field)
            return None if value is None or value == "" else str(value)
        return spec.record_key(row)
