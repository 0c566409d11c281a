from dealer_trading.core.event_bus import (
    TRANSFER_EVENT_TYPES,
    DeliveredVehiclesReset,
    DomainEvent,
    EventBus,
    ReconciliationCompleted,
    TransferApproved,
    TransferAutoRejected,
    TransferCancelled,
    TransferEvent,
    TransferRejected,
    TransferRequested,
    TransferStatusAdvanced,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "TransferEvent",
    "TransferRequested",
    "TransferApproved",
    "TransferAutoRejected",
    "TransferRejected",
    "TransferCancelled",
    "TransferStatusAdvanced",
    "DeliveredVehiclesReset",
    "ReconciliationCompleted",
    "TRANSFER_EVENT_TYPES",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
