"""
Keyed dataset comparison.

Given a ``source`` and a ``target`` collection, works out what has to happen to
``source`` so it matches ``target``:

- ``to_create``: keys only in target
- ``to_update``: keys in both with at least one differing field
- ``to_delete``: keys only in source
- ``unchanged``: keys in both with identical (normalized) fields

Both collections are indexed once, so the comparison is O(n + m). When two
records share a normalized key, the later one in iteration order owns the
index slot.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from loguru import logger


@dataclass
class CompareOptions:
    key_field: str = "id"
    compare_fields: list[str] = field(default_factory=list)
    case_sensitive: bool = False
    trim_strings: bool = True


@dataclass
class FieldChange:
    field: str
    before: Any
    after: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "before": self.before, "after": self.after}


@dataclass
class UpdateEntry:
    record: dict[str, Any]
    changes: list[FieldChange]

    @property
    def changed_fields(self) -> list[str]:
        return [c.field for c in self.changes]

    def to_dict(self) -> dict[str, Any]:
        return {**self.record, "_changes": [c.to_dict() for c in self.changes]}


@dataclass
class ComparisonSummary:
    source_total: int = 0
    target_total: int = 0
    to_create: int = 0
    to_update: int = 0
    to_delete: int = 0
    unchanged: int = 0
    processing_time_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "sourceTotal": self.source_total,
            "targetTotal": self.target_total,
            "toCreate": self.to_create,
            "toUpdate": self.to_update,
            "toDelete": self.to_delete,
            "unchanged": self.unchanged,
            "processingTimeMs": self.processing_time_ms,
        }


@dataclass
class ComparisonResult:
    summary: ComparisonSummary
    to_create: list[dict[str, Any]] = field(default_factory=list)
    to_update: list[UpdateEntry] = field(default_factory=list)
    to_delete: list[dict[str, Any]] = field(default_factory=list)
    unchanged: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "toCreate": self.to_create,
            "toUpdate": [e.to_dict() for e in self.to_update],
            "toDelete": self.to_delete,
            "unchanged": self.unchanged,
        }


# -------------------------
# Normalization
# -------------------------

def normalize_key(value: Any, options: CompareOptions) -> str:
    text = "" if value is None else str(value)
    if options.trim_strings:
        text = text.strip()
    if not options.case_sensitive:
        text = text.casefold()
    return text


def normalize_value(value: Any, options: CompareOptions) -> str:
    # null, missing and empty all normalize to ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
    return normalize_key(value, options)


def build_index(records: Iterable[Mapping[str, Any]], options: CompareOptions) -> dict[str, Mapping[str, Any]]:
    index: dict[str, Mapping[str, Any]] = {}
    for record in records:
        index[normalize_key(record.get(options.key_field), options)] = record
    return index


def find_differences(
    source: Mapping[str, Any],
    target: Mapping[str, Any],
    options: CompareOptions,
) -> list[FieldChange]:
    if options.compare_fields:
        fields = list(options.compare_fields)
    else:
        # union of both records' keys, source order first
        fields = list(dict.fromkeys([*source.keys(), *target.keys()]))

    changes: list[FieldChange] = []
    for name in fields:
        before = source.get(name)
        after = target.get(name)
        if normalize_value(before, options) != normalize_value(after, options):
            changes.append(FieldChange(field=name, before=before, after=after))
    return changes


# -------------------------
# Public API
# -------------------------

def compare(
    source: list[Mapping[str, Any]],
    target: list[Mapping[str, Any]],
    options: CompareOptions | None = None,
) -> ComparisonResult:
    opts = options or CompareOptions()
    started = time.perf_counter()

    logger.info(f"Comparing {len(source)} source vs {len(target)} target records (key={opts.key_field})")

    result = ComparisonResult(
        summary=ComparisonSummary(source_total=len(source), target_total=len(target)),
    )

    source_index = build_index(source, opts)
    target_index = build_index(target, opts)

    for key, target_record in target_index.items():
        source_record = source_index.get(key)
        if source_record is None:
            result.to_create.append(dict(target_record))
            continue

        changes = find_differences(source_record, target_record, opts)
        if changes:
            result.to_update.append(UpdateEntry(record=dict(target_record), changes=changes))
        else:
            result.unchanged.append(dict(target_record))

    for key, source_record in source_index.items():
        if key not in target_index:
            result.to_delete.append(dict(source_record))

    summary = result.summary
    summary.to_create = len(result.to_create)
    summary.to_update = len(result.to_update)
    summary.to_delete = len(result.to_delete)
    summary.unchanged = len(result.unchanged)
    summary.processing_time_ms = int((time.perf_counter() - started) * 1000)

    logger.info(f"Comparison finished: {summary.to_dict()}")
    return result
