"""
Static map of the remote collections the back-office mirrors locally and of
the import domains built from them. Step order inside a domain matters:
later entities reference data loaded by earlier ones (products need the
mercadology tree, product suppliers need the products table).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class EntitySpec:
    table: str
    label: str
    endpoint: str
    key_fields: tuple[str, ...] = ("id",)
    # nested list field in the remote payload -> local child table
    children: Mapping[str, str] = field(default_factory=dict)
    syncable: bool = False
    # collection filtered by the configured store (lojaId)
    store_scoped: bool = False
    # per-parent sub-resource: endpoint contains {parent_id}
    parent_table: str | None = None
    parent_field: str | None = None

    @property
    def is_nested(self) -> bool:
        return self.parent_table is not None

    def record_key(self, item: Mapping[str, Any]) -> str | None:
        parts = []
        for name in self.key_fields:
            value = item.get(name)
            if value is None or value == "":
                return None
            parts.append(str(value))
        return ":".join(parts)

    def collection_endpoint(self, row: Mapping[str, Any] | None = None) -> str:
        if not self.is_nested:
            return self.endpoint
        parent_id = (row or {}).get(self.parent_field or "")
        return self.endpoint.format(parent_id=parent_id)


_ENTITIES = [
    # mercadology / product
    EntitySpec("sections", "Sections", "produto/secoes", syncable=True),
    EntitySpec("groups", "Groups", "produto/grupos", key_fields=("secaoId", "id"), syncable=True),
    EntitySpec("subgroups", "Subgroups", "produto/subgrupos", key_fields=("secaoId", "grupoId", "id"), syncable=True),
    EntitySpec("brands", "Brands", "produto/marcas", syncable=True),
    EntitySpec("families", "Families", "produto/familias", syncable=True),
    EntitySpec(
        "products",
        "Products",
        "produto/produtos",
        children={
            "estoqueDoProduto": "product_min_max",
            "regimesDoProduto": "product_regimes",
            "componentes": "product_components",
            "itensImpostosFederais": "product_federal_taxes",
        },
        syncable=True,
        store_scoped=True,
    ),
    EntitySpec("product_auxiliaries", "Product auxiliaries", "produto/produto-auxiliares", syncable=True),
    EntitySpec(
        "product_suppliers",
        "Product suppliers",
        "produto/produtos/{parent_id}/fornecedores",
        key_fields=("produtoId", "id"),
        syncable=True,
        parent_table="products",
        parent_field="produtoId",
    ),
    # financial
    EntitySpec("categories", "Categories", "financeiro/categorias", syncable=True),
    EntitySpec("agents", "Agents", "financeiro/agentes", syncable=True),
    EntitySpec("bank_accounts", "Bank accounts", "financeiro/contas-correntes", syncable=True),
    EntitySpec("document_types", "Document types", "financeiro/especies-documento"),
    EntitySpec("standard_histories", "Standard histories", "financeiro/historico-padrao"),
    # point of sale
    EntitySpec("payment_methods", "Payment methods", "pdv/formas-pagamento", syncable=True),
    EntitySpec("pos_payments", "POS payments", "pdv/pagamentos"),
    EntitySpec("pos_receipts", "POS receipts", "pdv/recebimentos"),
    EntitySpec("discount_reasons", "Discount reasons", "pdv/motivos-desconto"),
    EntitySpec("return_reasons", "Return reasons", "pdv/motivos-devolucao"),
    EntitySpec("cancellation_reasons", "Cancellation reasons", "pdv/motivos-cancelamento"),
    # inventory
    EntitySpec("stock_locations", "Stock locations", "estoque/locais", syncable=True),
    EntitySpec("adjustment_types", "Adjustment types", "estoque/tipos-ajustes"),
    EntitySpec("stock_balances", "Stock balances", "estoque/saldo", syncable=True),
    # fiscal
    EntitySpec("tax_regimes", "Tax regimes", "fiscal/regime-tributario", syncable=True),
    EntitySpec("tax_situations", "Tax situations", "fiscal/situacoes-fiscais", syncable=True),
    EntitySpec("operation_types", "Operation types", "fiscal/tipos-operacoes", syncable=True),
    EntitySpec("federal_taxes", "Federal taxes", "fiscal/impostos-federais", syncable=True),
    EntitySpec("tax_tables", "Tax tables", "fiscal/tabelas-tributarias", syncable=True),
    EntitySpec("tax_scenarios", "Tax scenarios", "fiscal/cenarios-fiscais", syncable=True),
    # people
    EntitySpec("stores", "Stores", "pessoa/lojas", syncable=True),
    EntitySpec("customers", "Customers", "pessoa/clientes", syncable=True),
    EntitySpec("suppliers", "Suppliers", "pessoa/fornecedores", syncable=True),
]

ENTITIES: dict[str, EntitySpec] = {e.table: e for e in _ENTITIES}


@dataclass(frozen=True)
class DomainSpec:
    name: str
    label: str
    entities: tuple[str, ...]


_PRODUCTS = (
    "sections", "groups", "subgroups", "brands", "families",
    "products", "product_auxiliaries", "product_suppliers",
)
_FINANCIAL = ("categories", "agents", "bank_accounts", "document_types", "standard_histories")
_POS = (
    "payment_methods", "pos_payments", "pos_receipts",
    "discount_reasons", "return_reasons", "cancellation_reasons",
)
_INVENTORY = ("stock_locations", "adjustment_types", "stock_balances")
_FISCAL = (
    "tax_regimes", "tax_situations", "operation_types",
    "federal_taxes", "tax_tables", "tax_scenarios",
)
_PEOPLE = ("stores", "customers", "suppliers")

DOMAINS: dict[str, DomainSpec] = {
    d.name: d
    for d in (
        DomainSpec("products", "Products", _PRODUCTS),
        DomainSpec("financial", "Financial", _FINANCIAL),
        DomainSpec("pos", "Point of sale", _POS),
        DomainSpec("inventory", "Inventory", _INVENTORY),
        DomainSpec("fiscal", "Fiscal", _FISCAL),
        DomainSpec("people", "People", _PEOPLE),
        DomainSpec("all", "Full import", _PRODUCTS + _FINANCIAL + _POS + _INVENTORY + _FISCAL + _PEOPLE),
    )
}

SYNC_DOMAINS: frozenset[str] = frozenset(e.table for e in _ENTITIES if e.syncable)
