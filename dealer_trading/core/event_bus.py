from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Type

from dealer_trading.observability import observe_domain_event_emitted


EventHandler = Callable[["DomainEvent"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        normalized_event_id = str(self.event_id or "").strip() or uuid.uuid4().hex
        normalized_occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if normalized_occurred_at.tzinfo is None:
            normalized_occurred_at = normalized_occurred_at.replace(tzinfo=timezone.utc)
        normalized_occurred_at = normalized_occurred_at.astimezone(timezone.utc)

        object.__setattr__(self, "event_id", normalized_event_id)
        object.__setattr__(self, "occurred_at", normalized_occurred_at)

    @property
    def event_type(self) -> str:
        return type(self).__name__


@dataclass(frozen=True, kw_only=True)
class TransferEvent(DomainEvent):
    """Base for transfer events; carries post-commit snapshots of both rows."""

    transfer_id: int
    vehicle_id: int
    transfer: Dict[str, Any] = field(default_factory=dict)
    vehicle: Dict[str, Any] = field(default_factory=dict)
    actor_id: str = ""
    actor_role: str = ""


@dataclass(frozen=True, kw_only=True)
class TransferRequested(TransferEvent):
    competing_requests_count: int = 0


@dataclass(frozen=True, kw_only=True)
class TransferApproved(TransferEvent):
    auto_rejected_transfer_ids: tuple[int, ...] = ()


@dataclass(frozen=True, kw_only=True)
class TransferAutoRejected(TransferEvent):
    superseded_by_transfer_id: int
    reason: str = ""


@dataclass(frozen=True, kw_only=True)
class TransferRejected(TransferEvent):
    reason: str = ""


@dataclass(frozen=True, kw_only=True)
class TransferCancelled(TransferEvent):
    reason: str = ""
    previous_status: str = ""


@dataclass(frozen=True, kw_only=True)
class TransferStatusAdvanced(TransferEvent):
    from_status: str
    to_status: str


@dataclass(frozen=True, kw_only=True)
class DeliveredVehiclesReset(DomainEvent):
    vehicle_ids: tuple[int, ...] = ()
    older_than_days: int = 3


@dataclass(frozen=True, kw_only=True)
class ReconciliationCompleted(DomainEvent):
    location_id: str
    mode: str
    import_run_id: int | None = None
    status: str = "succeeded"
    counts: Dict[str, int] = field(default_factory=dict)
    error_count: int = 0


TRANSFER_EVENT_TYPES: tuple[Type[TransferEvent], ...] = (
    TransferRequested,
    TransferApproved,
    TransferAutoRejected,
    TransferRejected,
    TransferCancelled,
    TransferStatusAdvanced,
)


class EventBus:
    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logging.getLogger("dealer_trading.events")

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)

    def publish(self, event: DomainEvent) -> None:
        observe_domain_event_emitted(event.event_type)
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception(
                    "event_handler_failed",
                    extra={"event_type": event.event_type, "event_id": event.event_id},
                )

    def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


_DEFAULT_EVENT_BUS = EventBus()


def get_event_bus() -> EventBus:
    return _DEFAULT_EVENT_BUS


def reset_event_bus_for_tests() -> None:
    _DEFAULT_EVENT_BUS.clear()
