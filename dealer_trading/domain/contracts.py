from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List


MODE_APPLY = "apply"
MODE_DRY_RUN = "dry_run"
RECONCILE_MODES = (MODE_APPLY, MODE_DRY_RUN)

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_SOFT_DELETE = "soft_delete"
ACTION_RESTORE = "restore"
ACTION_PERMANENT_DELETE = "permanent_delete"
ACTION_SKIP_PROTECTED = "skip_protected"

# Order in which an applied plan executes its action groups.
PLAN_ACTIONS = (
    ACTION_CREATE,
    ACTION_UPDATE,
    ACTION_RESTORE,
    ACTION_SOFT_DELETE,
    ACTION_PERMANENT_DELETE,
)


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str
    location_id: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "role": self.role, "location_id": self.location_id}


SYSTEM_ACTOR = Actor(user_id="system", role="admin", location_id=None)


@dataclass(frozen=True)
class TransferRequestInput:
    reason: str | None = None
    customer_waiting: bool = False
    priority: bool = False
    expected_pickup_date: str | None = None
    to_location_id: str | None = None


@dataclass(frozen=True)
class PlanEntry:
    action: str
    vin: str
    stock_number: str | None = None
    year: int | None = None
    make: str | None = None
    model: str | None = None
    vehicle_id: int | None = None
    changes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)
    previous_location_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "action": self.action,
            "vin": self.vin,
            "stock_number": self.stock_number,
            "year": self.year,
            "make": self.make,
            "model": self.model,
            "vehicle_id": self.vehicle_id,
        }
        if self.changes:
            payload["changes"] = {key: dict(value) for key, value in self.changes.items()}
        if self.previous_location_id:
            payload["previous_location_id"] = self.previous_location_id
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True)
class PlanError:
    action: str
    vin: str
    message: str
    vehicle_id: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "vin": self.vin,
            "vehicle_id": self.vehicle_id,
            "message": self.message,
        }


@dataclass(frozen=True)
class PartialBatchFailure:
    """Summary of an applied plan in which some vehicles failed and others succeeded."""

    location_id: str
    failed: int
    succeeded: int
    errors: tuple[PlanError, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location_id": self.location_id,
            "failed": self.failed,
            "succeeded": self.succeeded,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class ReconciliationPlan:
    location_id: str
    mode: str = field(default=MODE_APPLY, compare=False)
    generated_at: datetime | None = field(default=None, compare=False)
    import_run_id: int | None = field(default=None, compare=False)
    records_in: int = 0
    creates: List[PlanEntry] = field(default_factory=list)
    updates: List[PlanEntry] = field(default_factory=list)
    soft_deletes: List[PlanEntry] = field(default_factory=list)
    restores: List[PlanEntry] = field(default_factory=list)
    permanent_deletes: List[PlanEntry] = field(default_factory=list)
    skipped_protected: List[PlanEntry] = field(default_factory=list)
    errors: List[PlanError] = field(default_factory=list)

    def entries_for(self, action: str) -> List[PlanEntry]:
        return {
            ACTION_CREATE: self.creates,
            ACTION_UPDATE: self.updates,
            ACTION_SOFT_DELETE: self.soft_deletes,
            ACTION_RESTORE: self.restores,
            ACTION_PERMANENT_DELETE: self.permanent_deletes,
            ACTION_SKIP_PROTECTED: self.skipped_protected,
        }[action]

    def actions(self) -> Iterator[PlanEntry]:
        for action in PLAN_ACTIONS:
            yield from self.entries_for(action)

    @property
    def action_count(self) -> int:
        return sum(len(self.entries_for(action)) for action in PLAN_ACTIONS)

    def is_empty(self) -> bool:
        return self.action_count == 0

    def counts(self) -> Dict[str, int]:
        counts = {action: len(self.entries_for(action)) for action in PLAN_ACTIONS}
        counts[ACTION_SKIP_PROTECTED] = len(self.skipped_protected)
        counts["errors"] = len(self.errors)
        return counts

    def applied_counts(self) -> Dict[str, int]:
        failed: Dict[str, int] = {}
        for error in self.errors:
            failed[error.action] = failed.get(error.action, 0) + 1
        return {action: len(self.entries_for(action)) - failed.get(action, 0) for action in PLAN_ACTIONS}

    @property
    def partial_failure(self) -> PartialBatchFailure | None:
        if not self.errors:
            return None
        failed = len(self.errors)
        return PartialBatchFailure(
            location_id=self.location_id,
            failed=failed,
            succeeded=max(0, self.action_count - failed),
            errors=tuple(self.errors),
        )

    def to_dict(self) -> Dict[str, Any]:
        partial = self.partial_failure
        return {
            "location_id": self.location_id,
            "mode": self.mode,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "import_run_id": self.import_run_id,
            "records_in": self.records_in,
            "counts": self.counts(),
            "creates": [entry.to_dict() for entry in self.creates],
            "updates": [entry.to_dict() for entry in self.updates],
            "soft_deletes": [entry.to_dict() for entry in self.soft_deletes],
            "restores": [entry.to_dict() for entry in self.restores],
            "permanent_deletes": [entry.to_dict() for entry in self.permanent_deletes],
            "skipped_protected": [entry.to_dict() for entry in self.skipped_protected],
            "errors": [error.to_dict() for error in self.errors],
            "partial_failure": partial.to_dict() if partial else None,
        }
