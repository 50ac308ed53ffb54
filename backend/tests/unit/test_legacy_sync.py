from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

import psycopg
import pytest

from retail_sync.core.config import Settings
from retail_sync.models.sync_record import SyncStatus
from retail_sync.services import legacy_store
from retail_sync.services.catalog import ENTITIES
from retail_sync.services.legacy_store import (
    LegacyConnectionError,
    LegacyCredentials,
    LegacyNotConfiguredError,
    credentials_from_settings,
)
from retail_sync.services.legacy_sync import LegacySyncService, UnknownLegacyDomainError

CREDS = LegacyCredentials(
    host="legacy.test",
    port=5432,
    database="erp",
    username="erp",
    password="secret",
    schema="erp",
)


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc_info) -> bool:
        return False

    def execute(self, query, params=None) -> None:
        self.conn.executed.append((query, params))
        if params and self.conn.fail_on in params:
            raise psycopg.DataError("invalid input syntax")

    def fetchall(self) -> list:
        return list(self.conn.rows)

    def fetchone(self) -> tuple:
        return (1,)


class FakeConnection:
    def __init__(self, rows=None, fail_on: object = object()) -> None:
        self.rows = rows or []
        self.fail_on = fail_on
        self.executed: list = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, row_factory=None) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_legacy(monkeypatch):
    def install(conn: FakeConnection) -> dict:
        seen: dict = {}

        def fake_connect(**kwargs):
            seen.update(kwargs)
            return conn

        monkeypatch.setattr(legacy_store.psycopg, "connect", fake_connect)
        return seen

    return install


@pytest.fixture
def service(local_store) -> LegacySyncService:
    return LegacySyncService(local_store, CREDS)


def _seed_sections(local_store, *names: str) -> None:
    local_store.import_records(
        ENTITIES["sections"],
        [{"id": i, "descricao": name} for i, name in enumerate(names, start=1)],
    )


# -------------------------
# Migrate
# -------------------------

def test_migrate_isolates_failing_rows(service, local_store, fake_legacy) -> None:
    _seed_sections(local_store, "Bebidas", "BROKEN", "Padaria")
    conn = FakeConnection(fail_on="BROKEN")
    fake_legacy(conn)

    result = service.migrate("sections")

    assert result["migrated"] == 2
    assert result["total"] == 3
    assert result["errors"] == 1
    assert result["errorDetails"][0]["id"] == 2
    assert "invalid input" in result["errorDetails"][0]["error"]
    assert conn.commits == 2
    assert conn.rollbacks == 1
    assert conn.closed


def test_migrate_sends_no_control_columns(service, local_store, fake_legacy) -> None:
    _seed_sections(local_store, "Bebidas")
    conn = FakeConnection()
    fake_legacy(conn)

    service.migrate("sections")

    [(_, params)] = conn.executed
    assert sorted(str(p) for p in params) == ["1", "Bebidas"]


# -------------------------
# Compare / refresh
# -------------------------

def test_compare_local_against_legacy(service, local_store, fake_legacy) -> None:
    _seed_sections(local_store, "Bebidas", "Padaria")
    fake_legacy(FakeConnection(rows=[
        {"id": Decimal("1"), "descricao": "bebidas "},
        {"id": Decimal("4"), "descricao": "Limpeza"},
    ]))

    result = service.compare("sections")

    assert [r["id"] for r in result.unchanged] == [1]
    assert [r["id"] for r in result.to_create] == [4]
    assert [r["id"] for r in result.to_delete] == [2]
    assert result.to_update == []


def test_refresh_local_writes_legacy_rows(service, local_store, fake_legacy) -> None:
    _seed_sections(local_store, "Bebidas")
    local_store.stage_change("sections", {"id": 1, "descricao": "Local edit"}, "1", SyncStatus.UPDATE)
    fake_legacy(FakeConnection(rows=[
        {"id": 1, "descricao": "Legacy name"},
        {"id": 2, "descricao": "Legacy only"},
        {"id": None, "descricao": "No key"},
    ]))

    result = service.refresh_local("sections")

    assert result == {"domain": "sections", "updated": 2, "total": 3}
    first = local_store.get_row("sections", "1")
    assert first["descricao"] == "Legacy name"
    assert first["sync_status"] == "U"
    assert local_store.get_row("sections", "2")["descricao"] == "Legacy only"


def test_refresh_with_custom_key(service, local_store, fake_legacy) -> None:
    fake_legacy(FakeConnection(rows=[{"codigo": "A1", "descricao": "x"}]))

    result = service.refresh_local("sections", legacy_table="secao", key_field="codigo")

    assert result["updated"] == 1
    assert local_store.get_row("sections", "A1")["codigo"] == "A1"


# -------------------------
# Configuration and connectivity
# -------------------------

def test_not_configured(local_store) -> None:
    service = LegacySyncService(local_store, None)

    assert not service.configured
    with pytest.raises(LegacyNotConfiguredError):
        service.migrate("sections")


def test_unknown_domain(service) -> None:
    with pytest.raises(UnknownLegacyDomainError):
        service.compare("warehouse")


def test_status_reports_success(service, fake_legacy) -> None:
    seen = fake_legacy(FakeConnection())

    status = service.status()

    assert status["connected"] is True
    assert status["database"] == "erp"
    assert seen["dbname"] == "erp"
    assert seen["connect_timeout"] == 10


def test_status_reports_connection_failure(monkeypatch) -> None:
    def refuse(**kwargs):
        raise psycopg.OperationalError("connection refused")

    monkeypatch.setattr(legacy_store.psycopg, "connect", refuse)

    status = legacy_store.test_connection(CREDS)

    assert status["connected"] is False
    assert "connection refused" in status["error"]


def test_connection_failure_is_raised_for_operations(service, monkeypatch) -> None:
    def refuse(**kwargs):
        raise psycopg.OperationalError("connection refused")

    monkeypatch.setattr(legacy_store.psycopg, "connect", refuse)

    with pytest.raises(LegacyConnectionError):
        service.list_tables()


def test_list_tables(service, fake_legacy) -> None:
    fake_legacy(FakeConnection(rows=[("secao",), ("produto",)]))

    assert service.list_tables() == ["secao", "produto"]


def test_credentials_from_settings() -> None:
    assert credentials_from_settings(Settings(LEGACY_DB_NAME="")) is None

    creds = credentials_from_settings(Settings(LEGACY_DB_NAME=" erp ", LEGACY_DB_HOST="db.test"))
    assert creds.database == "erp"
    assert creds.host == "db.test"


def test_driver_values_become_plain() -> None:
    uid = uuid.UUID("12345678-1234-5678-1234-567812345678")

    assert legacy_store._plain_value(Decimal("3")) == 3
    assert legacy_store._plain_value(Decimal("2.5")) == 2.5
    assert legacy_store._plain_value(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05"
    assert legacy_store._plain_value(uid) == str(uid)
    assert legacy_store._plain_value(b"\x01\xff") == "01ff"
    assert legacy_store._plain_value("text") == "text"
