from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


@dataclass
class JobStep:
    name: str
    label: str
    status: JobStatus = JobStatus.PENDING
    processed: int = 0
    total: int = 0
    error: str | None = None

    @property
    def percent(self) -> int | None:
        # 100 is reserved for explicit completion
        if self.status == JobStatus.COMPLETED:
            return 100
        if self.total <= 0:
            return None
        return min(self.processed * 100 // self.total, 99)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "label": self.label,
            "status": self.status.value,
            "processed": self.processed,
            "total": self.total,
            "pct": self.percent,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobStep":
        return cls(
            name=str(data["name"]),
            label=str(data.get("label") or data["name"]),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            processed=int(data.get("processed") or 0),
            total=int(data.get("total") or 0),
            error=data.get("error"),
        )


@dataclass
class ImportJob:
    id: str
    domain: str
    label: str
    status: JobStatus
    steps: list[JobStep] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def step(self, name: str) -> JobStep | None:
        return next((s for s in self.steps if s.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain,
            "label": self.label,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
            "errorMsg": self.error_message,
        }

    def steps_json(self) -> str:
        return json.dumps([s.to_dict() for s in self.steps], ensure_ascii=False)

    @classmethod
    def from_row(cls, row: Any) -> "ImportJob":
        raw_steps = row["steps_json"] or "[]"
        try:
            parsed = json.loads(raw_steps)
        except ValueError:
            parsed = []
        steps = [JobStep.from_dict(s) for s in parsed if isinstance(s, dict)]

        return cls(
            id=row["id"],
            domain=row["domain"],
            label=row["label"],
            status=JobStatus(row["status"]),
            steps=steps,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            error_message=row["error_msg"],
        )
