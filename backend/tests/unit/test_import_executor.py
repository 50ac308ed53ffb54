from __future__ import annotations

import httpx
import pytest

from retail_sync.models.import_job import JobStatus
from retail_sync.models.sync_record import SyncStatus
from retail_sync.services.import_executor import (
    CredentialsNotConfiguredError,
    ImportExecutor,
    UnknownDomainError,
)


@pytest.fixture
async def make_executor(job_service, credential_store, local_store, mock_client_factory):
    executors: list[ImportExecutor] = []

    def build(handler) -> ImportExecutor:
        executor = ImportExecutor(
            job_service,
            credential_store,
            local_store,
            client_factory=mock_client_factory(handler),
        )
        executors.append(executor)
        return executor

    yield build
    for executor in executors:
        await executor.shutdown()


def _path(request: httpx.Request) -> str:
    return request.url.path.removeprefix("/api/v1/")


# -------------------------
# Financial domain
# -------------------------

async def test_domain_import_runs_every_step(saved_creds, make_executor, job_service, local_store) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(_path(request))
        return httpx.Response(200, json={"items": [{"id": 1, "descricao": _path(request)}], "total": 1})

    executor = make_executor(handler)
    job_id = await executor.start("financial")
    await executor.wait_for(job_id)

    job = job_service.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert [s.status for s in job.steps] == [JobStatus.COMPLETED] * 5
    assert all(s.total == 1 and s.percent == 100 for s in job.steps)
    assert requested == [
        "financeiro/categorias",
        "financeiro/agentes",
        "financeiro/contas-correntes",
        "financeiro/especies-documento",
        "financeiro/historico-padrao",
    ]

    [row] = local_store.rows("agents")
    assert row["record_key"] == "1"
    assert row["descricao"] == "financeiro/agentes"
    assert row["sync_status"] == "S"


async def test_failed_step_stops_the_job(saved_creds, make_executor, job_service) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(_path(request))
        if _path(request) == "financeiro/agentes":
            return httpx.Response(400, text="bad request")
        return httpx.Response(200, json=[{"id": 1}])

    executor = make_executor(handler)
    job_id = await executor.start("financial")
    await executor.wait_for(job_id)

    job = job_service.get_job(job_id)
    assert job.status == JobStatus.ERROR
    assert "HTTP 400" in job.error_message
    assert job.step("categories").status == JobStatus.COMPLETED
    assert job.step("agents").status == JobStatus.ERROR
    assert job.step("bank_accounts").status == JobStatus.PENDING
    assert "financeiro/contas-correntes" not in requested


async def test_unknown_domain_is_rejected(saved_creds, make_executor, job_service) -> None:
    executor = make_executor(lambda request: httpx.Response(200, json=[]))

    with pytest.raises(UnknownDomainError):
        await executor.start("warehouse")

    assert job_service.history() == []


async def test_missing_credentials_are_rejected(make_executor, job_service) -> None:
    executor = make_executor(lambda request: httpx.Response(200, json=[]))

    with pytest.raises(CredentialsNotConfiguredError):
        await executor.start("financial")

    assert job_service.history() == []


async def test_list_domains(job_service, credential_store, local_store) -> None:
    executor = ImportExecutor(job_service, credential_store, local_store)

    domains = {d["domain"]: d for d in executor.list_domains()}

    assert domains["products"]["steps"] == 8
    assert domains["financial"]["label"] == "Financial"
    assert domains["all"]["steps"] == 31


# -------------------------
# Products: store filter, children, nested suppliers
# -------------------------

PRODUCTS = [
    {
        "id": 10,
        "descricao": "Cola 2L",
        "estoqueDoProduto": [{"lojaId": 1, "minimo": 2, "maximo": 20}],
        "componentes": [],
    },
    {"id": 11, "descricao": "Water 500ml", "estoqueDoProduto": []},
]


async def test_products_import(saved_creds, make_executor, job_service, local_store) -> None:
    product_requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = _path(request)
        if path == "produto/produtos":
            product_requests.append(request)
            return httpx.Response(200, json={"items": PRODUCTS, "total": 2})
        if path == "produto/produtos/10/fornecedores":
            return httpx.Response(200, json=[{"id": 1, "fornecedorId": 99}])
        if path == "produto/produtos/11/fornecedores":
            return httpx.Response(404, text="not found")
        return httpx.Response(200, json=[])

    executor = make_executor(handler)
    job_id = await executor.start("products")
    await executor.wait_for(job_id)

    job = job_service.get_job(job_id)
    assert job.status == JobStatus.COMPLETED

    [request] = product_requests
    assert request.url.params["lojaId"] == "1"

    products = local_store.rows("products")
    assert [p["record_key"] for p in products] == ["10", "11"]
    assert "estoqueDoProduto" not in products[0]
    [min_max] = local_store.children("product_min_max", "10")
    assert min_max["maximo"] == 20

    [supplier] = local_store.rows("product_suppliers")
    assert supplier["record_key"] == "10:1"
    assert supplier["produtoId"] == 10
    assert job.step("product_suppliers").total == 1


async def test_nested_step_fails_when_every_lookup_fails(saved_creds, make_executor, job_service) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = _path(request)
        if path == "produto/produtos":
            return httpx.Response(200, json=PRODUCTS)
        if path.endswith("/fornecedores"):
            return httpx.Response(400, text="bad request")
        return httpx.Response(200, json=[])

    executor = make_executor(handler)
    job_id = await executor.start("products")
    await executor.wait_for(job_id)

    job = job_service.get_job(job_id)
    assert job.status == JobStatus.ERROR
    assert job.step("products").status == JobStatus.COMPLETED
    assert job.step("product_suppliers").status == JobStatus.ERROR
    assert "lookups failed" in job.error_message


async def test_nested_step_counts_only_written_rows(saved_creds, make_executor, job_service, local_store) -> None:
    local_store.stage_change(
        "product_suppliers",
        {"id": 1, "produtoId": 10, "fornecedorId": 7},
        "10:1",
        SyncStatus.UPDATE,
    )

    def handler(request: httpx.Request) -> httpx.Response:
        path = _path(request)
        if path == "produto/produtos":
            return httpx.Response(200, json=PRODUCTS)
        if path == "produto/produtos/10/fornecedores":
            return httpx.Response(200, json=[{"id": 1, "fornecedorId": 99}])
        return httpx.Response(200, json=[])

    executor = make_executor(handler)
    job_id = await executor.start("products")
    await executor.wait_for(job_id)

    job = job_service.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.step("product_suppliers").total == 0
    assert local_store.get_row("product_suppliers", "10:1")["fornecedorId"] == 7


# -------------------------
# Cancellation
# -------------------------

async def test_cancel_stops_before_the_page_is_saved(saved_creds, make_executor, job_service, local_store) -> None:
    requests = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal requests
        requests += 1
        [job] = job_service.active_jobs()
        await job_service.cancel_job(job.id)
        return httpx.Response(200, json=[{"id": 1}])

    executor = make_executor(handler)
    job_id = await executor.start("financial")
    await executor.wait_for(job_id)

    assert requests == 1
    assert job_service.get_job(job_id).status == JobStatus.CANCELLED
    assert local_store.rows("categories") == []


async def test_cancel_while_pending_is_not_a_failure(saved_creds, make_executor, job_service, monkeypatch) -> None:
    requests = 0
    failures: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal requests
        requests += 1
        return httpx.Response(200, json=[])

    async def record_failure(job_id: str, message: str) -> None:
        failures.append(message)

    monkeypatch.setattr(job_service, "fail_job", record_failure)

    executor = make_executor(handler)
    job_id = await executor.start("financial")
    assert await job_service.cancel_job(job_id) is True
    await executor.wait_for(job_id)

    job = job_service.get_job(job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.error_message is None
    assert failures == []
    assert requests == 0


async def test_cancel_racing_job_start_is_not_a_failure(saved_creds, make_executor, job_service, monkeypatch) -> None:
    failures: list[str] = []
    start_job = job_service.start_job

    async def cancel_then_start(job_id: str):
        await job_service.cancel_job(job_id)
        return await start_job(job_id)

    async def record_failure(job_id: str, message: str) -> None:
        failures.append(message)

    monkeypatch.setattr(job_service, "start_job", cancel_then_start)
    monkeypatch.setattr(job_service, "fail_job", record_failure)

    executor = make_executor(lambda request: httpx.Response(200, json=[]))
    job_id = await executor.start("financial")
    await executor.wait_for(job_id)

    assert job_service.get_job(job_id).status == JobStatus.CANCELLED
    assert failures == []
