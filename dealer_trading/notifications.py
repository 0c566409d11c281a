from __future__ import annotations

import logging
from typing import Any, Dict

from dealer_trading.core.event_bus import TRANSFER_EVENT_TYPES, EventBus, TransferEvent
from dealer_trading.domain.contracts import Actor


logger = logging.getLogger("dealer_trading.notifications")


class NotificationDispatcher:
    """Receives transfer events after commit.

    Email/SMS delivery lives outside this service; the default dispatcher only
    logs. Subclasses override ``dispatch``.
    """

    def dispatch(
        self,
        event_type: str,
        transfer: Dict[str, Any],
        vehicle: Dict[str, Any],
        actor: Actor,
    ) -> None:
        logger.info(
            "transfer_notification",
            extra={
                "event_type": event_type,
                "transfer_id": transfer.get("id"),
                "transfer_status": transfer.get("status"),
                "vehicle_id": vehicle.get("id"),
                "vin": vehicle.get("vin"),
                "from_location_id": transfer.get("from_location_id"),
                "to_location_id": transfer.get("to_location_id"),
                "actor_id": actor.user_id,
            },
        )

    def handle_event(self, event: TransferEvent) -> None:
        actor = Actor(user_id=event.actor_id, role=event.actor_role)
        self.dispatch(event.event_type, dict(event.transfer), dict(event.vehicle), actor)


def register_notification_dispatcher(bus: EventBus, dispatcher: NotificationDispatcher) -> NotificationDispatcher:
    for event_type in TRANSFER_EVENT_TYPES:
        bus.subscribe(event_type, dispatcher.handle_event)
    return dispatcher


default_dispatcher = NotificationDispatcher()
