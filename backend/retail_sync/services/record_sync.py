"""
Outbound synchronization of locally edited rows.

Rows tagged C/U/D are pushed one at a time (POST, PUT .../{id},
DELETE .../{id}). Each outcome is written back on the row itself: ``S`` with a
success marker, or ``E`` with the error text. A failing row never stops the
batch.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from retail_sync.db.session import get_connection, transaction
from retail_sync.models.sync_record import HTTP_METHODS, SyncStatus, apply_outcome, reprocess
from retail_sync.services.catalog import ENTITIES, SYNC_DOMAINS, EntitySpec
from retail_sync.services.credentials import CredentialStore
from retail_sync.services.local_store import LocalStore, strip_control
from retail_sync.services.remote_api import RemoteApiClient, RemoteCredentials

SUCCESS_MARKER = json.dumps({"ok": True})

ClientFactory = Callable[[RemoteCredentials], RemoteApiClient]


class RecordSyncError(Exception):
    pass


class UnknownSyncDomainError(RecordSyncError):
    pass


class RecordNotFoundError(RecordSyncError):
    pass


@dataclass
class SyncResult:
    domain: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    total: int = 0
    duration_ms: int = 0

    def count(self, tag: SyncStatus) -> None:
        if tag == SyncStatus.CREATE:
            self.created += 1
        elif tag == SyncStatus.UPDATE:
            self.updated += 1
        elif tag == SyncStatus.DELETE:
            self.deleted += 1

    def summary(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": self.errors,
            "total": self.total,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.summary(), "durationMs": self.duration_ms, "domain": self.domain}


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class RecordSyncService:
    def __init__(
        self,
        local_store: LocalStore,
        credentials: CredentialStore,
        *,
        client_factory: ClientFactory = RemoteApiClient,
    ) -> None:
        self._local = local_store
        self._credentials = credentials
        self._client_factory = client_factory

    # ---- public API ----

    def pending(self, domain: str) -> dict[str, Any]:
        spec = self._spec(domain)
        records = self._local.pending_rows(spec.table)
        return {"domain": domain, "total": len(records), "records": records}

    async def sync(self, domain: str, credentials: RemoteCredentials | None = None) -> SyncResult:
        spec = self._spec(domain)
        creds = credentials or self._credentials.load()

        started = time.perf_counter()
        rows = self._local.pending_rows(spec.table)
        result = SyncResult(domain=domain, total=len(rows))
        logger.info(f"Sync {domain}: {len(rows)} pending record(s)")

        try:
            if rows:
                async with self._client_factory(creds) as client:
                    for row in rows:
                        await self._process(client, spec, row, SyncStatus(row["sync_status"]), result)
        finally:
            result.duration_ms = int((time.perf_counter() - started) * 1000)
            self._save_history(result)

        logger.success(f"Sync {domain} finished in {result.duration_ms}ms: {result.summary()}")
        return result

    async def reprocess(
        self,
        domain: str,
        record_key: str,
        credentials: RemoteCredentials | None = None,
    ) -> SyncResult:
        """Pushes one ``E`` row again, as an update."""
        spec = self._spec(domain)
        row = self._local.get_row(spec.table, record_key, status=SyncStatus.ERROR)
        if row is None:
            raise RecordNotFoundError(
                f"Record {record_key} with status E not found in domain {domain}"
            )
        creds = credentials or self._credentials.load()

        tag = reprocess(SyncStatus(row["sync_status"]))
        self._local.set_sync_status(spec.table, record_key, tag, row.get("sync_message"))
        row["sync_status"] = tag.value

        result = SyncResult(domain=domain, total=1)
        started = time.perf_counter()
        async with self._client_factory(creds) as client:
            await self._process(client, spec, row, tag, result)
        result.duration_ms = int((time.perf_counter() - started) * 1000)
        return result

    def history(self, limit: int = 50) -> list[dict[str, Any]]:
        connection = get_connection()
        try:
            rows = connection.execute(
                """
                SELECT id, domain, result_json, duration_ms, executed_at
                FROM sync_history
                ORDER BY executed_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        finally:
            connection.close()

        return [
            {
                "id": r["id"],
                "domain": r["domain"],
                "result": json.loads(r["result_json"]),
                "durationMs": r["duration_ms"],
                "executedAt": r["executed_at"],
            }
            for r in rows
        ]

    # ---- per record ----

    async def _process(
        self,
        client: RemoteApiClient,
        spec: EntitySpec,
        row: dict[str, Any],
        tag: SyncStatus,
        result: SyncResult,
    ) -> None:
        record_key = row["record_key"]
        try:
            await self._push(client, spec, row, tag)
        except Exception as exc:
            message = _error_message(exc)
            logger.error(f"Sync {spec.table}[{record_key}] failed: {message}")
            self._local.set_sync_status(spec.table, record_key, apply_outcome(tag, False), message)
            result.errors += 1
            return

        self._local.set_sync_status(spec.table, record_key, apply_outcome(tag, True), SUCCESS_MARKER)
        result.count(tag)

    async def _push(self, client: RemoteApiClient, spec: EntitySpec, row: dict[str, Any], tag: SyncStatus) -> None:
        method = HTTP_METHODS[tag]
        collection = spec.collection_endpoint(row)
        payload = strip_control(row)

        if tag == SyncStatus.CREATE:
            await client.send(method, collection, payload)
            return

        remote_id = row.get("id")
        if remote_id is None or remote_id == "":
            remote_id = row["record_key"]
        endpoint = f"{collection}/{remote_id}"

        if tag == SyncStatus.DELETE:
            await client.send(method, endpoint)
        else:
            await client.send(method, endpoint, payload)

    # ---- internals ----

    def _spec(self, domain: str) -> EntitySpec:
        if domain not in SYNC_DOMAINS:
            raise UnknownSyncDomainError(f"Invalid sync domain: {domain!r}")
        return ENTITIES[domain]

    def _save_history(self, result: SyncResult) -> None:
        with transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_history (domain, result_json, duration_ms, executed_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    result.domain,
                    json.dumps(result.summary()),
                    result.duration_ms,
                    datetime.now(tz=timezone.utc).isoformat(),
                ),
            )
