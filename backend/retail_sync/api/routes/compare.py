from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from retail_sync.services.comparator import CompareOptions, compare

router = APIRouter(prefix="/api/compare", tags=["compare"])


class CompareOptionsModel(BaseModel):
    keyField: str = "id"
    compareFields: list[str] = Field(default_factory=list)
    caseSensitive: bool = False
    trimStrings: bool = True


class CompareRequest(BaseModel):
    source: list[dict[str, Any]]
    target: list[dict[str, Any]]
    options: CompareOptionsModel = Field(default_factory=CompareOptionsModel)


@router.post("")
def compare_datasets(payload: CompareRequest) -> dict[str, Any]:
    options = CompareOptions(
        key_field=payload.options.keyField,
        compare_fields=list(payload.options.compareFields),
        case_sensitive=payload.options.caseSensitive,
        trim_strings=payload.options.trimStrings,
    )
    return compare(payload.source, payload.target, options).to_dict()
