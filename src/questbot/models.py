"""Task descriptors, results and run reports.

Descriptors are inert: they carry what to do and which execution kind can do it.
The worker pool turns every descriptor into exactly one TaskResult.
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from questbot.constants import ExecutionKind


class ExecutionError(Exception):
    """Raised inside an execution unit to report a failure that still carries a payload."""

    def __init__(self, message: str, payload: dict | None = None):
        super().__init__(message)
        self.payload = payload


@dataclass(frozen=True, slots=True)
class TaskDescriptor:
    task_id: str
    wallet_index: int
    kind: ExecutionKind
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.wallet_index < 0:
            raise ValueError(f"wallet_index must be >= 0, got {self.wallet_index}")
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    @classmethod
    def create(cls, kind: ExecutionKind, wallet_index: int, label: str, **parameters) -> "TaskDescriptor":
        """Build a descriptor with a unique id of the form ``<label>-<wallet>-<hex>``."""
        task_id = f"{label}-{wallet_index}-{uuid.uuid4().hex[:10]}"
        return cls(task_id=task_id, wallet_index=wallet_index, kind=kind, parameters=parameters)

    def __str__(self):
        return f"{self.kind} -- wallet {self.wallet_index + 1} -- {self.task_id}"


@dataclass(frozen=True, slots=True)
class TransferParams:
    source: str
    destination: str
    receiver: str
    amount: str

    @classmethod
    def from_task(cls, task: TaskDescriptor) -> "TransferParams":
        p = task.parameters
        return cls(
            source=p["source"],
            destination=p["destination"],
            receiver=p["receiver"],
            amount=str(p["amount"]),
        )


@dataclass(frozen=True, slots=True)
class FaucetParams:
    chain: str
    address: str
    site_key: str
    api_key: str
    max_attempts: int = 1  # 0 means keep trying until the unit's timeout

    @classmethod
    def from_task(cls, task: TaskDescriptor) -> "FaucetParams":
        p = task.parameters
        return cls(
            chain=p["chain"],
            address=p["address"],
            site_key=p["site_key"],
            api_key=p["api_key"],
            max_attempts=int(p.get("max_attempts", 1)),
        )


@dataclass(frozen=True, slots=True)
class TaskResult:
    task_id: str
    success: bool
    payload: dict | None = None
    error: str | None = None

    @classmethod
    def ok(cls, task_id: str, payload: dict | None = None) -> "TaskResult":
        return cls(task_id=task_id, success=True, payload=payload)

    @classmethod
    def failed(cls, task_id: str, error: str, payload: dict | None = None) -> "TaskResult":
        return cls(task_id=task_id, success=False, payload=payload, error=error)

    def to_dict(self) -> dict:
        return {"task_id": self.task_id, "success": self.success, "payload": self.payload, "error": self.error}


@dataclass
class WalletReport:
    """Outcome of one quest service run for one wallet."""

    wallet_index: int
    results: list[TaskResult] = field(default_factory=list)
    error: str | None = None  # plan-level failure; no tasks ran for the failing part
    notes: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # steps never attempted because an earlier one failed

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0

    def merge(self, other: "WalletReport") -> "WalletReport":
        self.results.extend(other.results)
        self.notes.extend(other.notes)
        self.skipped.extend(other.skipped)
        if other.error:
            self.error = f"{self.error}; {other.error}" if self.error else other.error
        return self

    def to_dict(self) -> dict:
        return {
            "wallet": self.wallet_index + 1,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "error": self.error,
            "notes": list(self.notes),
            "skipped": list(self.skipped),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class RunSummary:
    operation: str
    reports: list[WalletReport] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(r.succeeded for r in self.reports)

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.reports)

    @property
    def wallet_errors(self) -> int:
        return sum(1 for r in self.reports if r.error)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.reports)

    def describe(self) -> str:
        return (
            f"{self.operation}: {len(self.reports)} wallet(s), "
            f"{self.succeeded} task(s) succeeded, {self.failed} failed, "
            f"{self.wallet_errors} wallet(s) with errors"
        )

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "wallet_errors": self.wallet_errors,
            "reports": [r.to_dict() for r in self.reports],
        }
