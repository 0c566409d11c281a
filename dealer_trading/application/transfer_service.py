from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from dealer_trading import policies
from dealer_trading.core.event_bus import (
    DeliveredVehiclesReset,
    DomainEvent,
    EventBus,
    TransferApproved,
    TransferAutoRejected,
    TransferCancelled,
    TransferRejected,
    TransferRequested,
    TransferStatusAdvanced,
    get_event_bus,
)
from dealer_trading.db import parse_db_timestamp, utc_now
from dealer_trading.domain import transfer_flow
from dealer_trading.domain.contracts import SYSTEM_ACTOR, Actor, TransferRequestInput
from dealer_trading.domain.vehicle_status import is_transferable
from dealer_trading.errors import InvalidStateTransitionError, NotFoundError, ValidationError
from dealer_trading.infrastructure.repositories import ActivityRepository, TransferRepository, VehicleRepository
from dealer_trading.observability import observe_transfer_transition
from dealer_trading.ui_strings import AUTO_REJECTION_REASON


logger = logging.getLogger("dealer_trading.transfers")

DEFAULT_DELIVERED_RESET_DAYS = 3


class TransferWorkflow:
    """Transfer state machine.

    Every operation runs in one store transaction and either commits all of
    its writes (transfer rows, vehicle row, activity rows) or none of them.
    Events are published only after commit.
    """

    def __init__(
        self,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
        vehicles: VehicleRepository | None = None,
        transfers: TransferRepository | None = None,
        activities: ActivityRepository | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.clock = clock
        self.vehicles = vehicles or VehicleRepository()
        self.transfers = transfers or TransferRepository()
        self.activities = activities or ActivityRepository()

    # -- reads ---------------------------------------------------------

    def get_transfer(self, db, transfer_id: int) -> Dict[str, Any]:
        transfer = self.transfers.get(db, transfer_id)
        if transfer is None:
            raise NotFoundError(code="transfer_not_found", message_key="transfer_not_found")
        payload = self.transfers.serialize(transfer)
        payload["flow"] = transfer_flow.flow_meta(transfer["status"])
        return payload

    def list_vehicle_transfers(self, db, vehicle_id: int) -> List[Dict[str, Any]]:
        return [self.transfers.serialize(row) for row in self.transfers.list_for_vehicle(db, vehicle_id)]

    def list_activity(self, db, vehicle_id: int, *, limit: int = 200) -> List[Dict[str, Any]]:
        return self.activities.list_for_vehicle(db, vehicle_id, limit=limit)

    # -- transitions ---------------------------------------------------

    def request_transfer(
        self,
        db,
        vehicle_id: int,
        actor: Actor,
        details: TransferRequestInput | None = None,
    ) -> Dict[str, Any]:
        details = details or TransferRequestInput()
        policies.require(policies.can_request_transfer(actor), details=f"role {actor.role} cannot request transfers")
        to_location_id = str(details.to_location_id or actor.location_id or "").strip()
        if not to_location_id:
            raise ValidationError(code="location_required", message_key="location_required")

        with db.transaction():
            vehicle = self._vehicle_or_404(db, vehicle_id, lock=True)
            if vehicle["location_id"] == to_location_id:
                raise ValidationError(code="own_vehicle_transfer", message_key="own_vehicle_transfer")
            if not is_transferable(vehicle):
                raise InvalidStateTransitionError(
                    code="vehicle_not_available",
                    payload={"vehicle_status": vehicle["status"]},
                    details=f"vehicle {vehicle_id} is {vehicle['status']}",
                )
            if self.transfers.find_open_request(db, vehicle["id"], to_location_id) is not None:
                raise InvalidStateTransitionError(
                    code="transfer_already_requested",
                    details=f"location {to_location_id} already requested vehicle {vehicle_id}",
                )

            now = self.clock()
            competing = self.transfers.count_requested(db, vehicle["id"])
            transfer_id = self.transfers.insert(
                db,
                vehicle_id=vehicle["id"],
                from_location_id=vehicle["location_id"],
                to_location_id=to_location_id,
                requested_by_id=actor.user_id,
                reason=(details.reason or "").strip() or None,
                customer_waiting=details.customer_waiting,
                priority=details.priority,
                expected_pickup_date=details.expected_pickup_date,
                competing_requests_count=competing,
                now=now,
            )
            self.activities.record(
                db,
                action="transfer_requested",
                user_id=actor.user_id,
                now=now,
                vehicle_id=vehicle["id"],
                transfer_id=transfer_id,
                location_id=to_location_id,
                details=f"Transfer requested from {vehicle['location_id']} to {to_location_id}",
                metadata={
                    "from_location_id": vehicle["location_id"],
                    "to_location_id": to_location_id,
                    "competing_requests_count": competing,
                    "customer_waiting": bool(details.customer_waiting),
                    "priority": bool(details.priority),
                },
            )
            transfer = self.transfers.get(db, transfer_id)

        self._finish(
            "requested",
            [
                TransferRequested(
                    **self._event_fields(transfer, vehicle, actor),
                    competing_requests_count=competing,
                )
            ],
        )
        return self.transfers.serialize(transfer)

    def approve(self, db, transfer_id: int, actor: Actor) -> Dict[str, Any]:
        with db.transaction():
            transfer, vehicle = self._lock_transfer_and_vehicle(db, transfer_id)
            policies.require(
                policies.can_approve_for_location(actor, transfer["from_location_id"]),
                details=f"{actor.role} at {actor.location_id} cannot approve for {transfer['from_location_id']}",
            )
            transfer_flow.require_transition(transfer["status"], transfer_flow.APPROVED)
            if vehicle is None:
                raise NotFoundError(code="vehicle_not_found", message_key="vehicle_not_found")
            if vehicle["status"] != "available" or vehicle["current_transfer_id"] is not None:
                raise InvalidStateTransitionError(
                    code="vehicle_not_available",
                    current_status=transfer["status"],
                    target_status=transfer_flow.APPROVED,
                    payload={"vehicle_status": vehicle["status"]},
                )

            now = self.clock()
            if self.transfers.approve(db, transfer["id"], actor.user_id, now) != 1:
                raise InvalidStateTransitionError(
                    current_status=transfer["status"],
                    target_status=transfer_flow.APPROVED,
                )
            sibling_ids = self.transfers.requested_sibling_ids(db, vehicle["id"], transfer["id"])
            self.transfers.auto_reject(
                db,
                sibling_ids,
                winner_transfer_id=transfer["id"],
                actor_id=actor.user_id,
                reason=AUTO_REJECTION_REASON,
                now=now,
            )
            if self.vehicles.claim(db, vehicle["id"], transfer["id"], now) != 1:
                raise InvalidStateTransitionError(
                    code="vehicle_not_available",
                    current_status=transfer["status"],
                    target_status=transfer_flow.APPROVED,
                )

            self.activities.record(
                db,
                action="transfer_approved",
                user_id=actor.user_id,
                now=now,
                vehicle_id=vehicle["id"],
                transfer_id=transfer["id"],
                location_id=transfer["from_location_id"],
                details=f"Transfer to {transfer['to_location_id']} approved",
                metadata={"auto_rejected_transfer_ids": sibling_ids},
            )
            for sibling_id in sibling_ids:
                self.activities.record(
                    db,
                    action="transfer_auto_rejected",
                    user_id=actor.user_id,
                    now=now,
                    vehicle_id=vehicle["id"],
                    transfer_id=sibling_id,
                    details=AUTO_REJECTION_REASON,
                    metadata={"superseded_by_transfer_id": transfer["id"]},
                )

            approved = self.transfers.get(db, transfer["id"])
            claimed = self.vehicles.get(db, vehicle["id"])
            siblings = [self.transfers.get(db, sibling_id) for sibling_id in sibling_ids]

        events: List[DomainEvent] = [
            TransferApproved(
                **self._event_fields(approved, claimed, actor),
                auto_rejected_transfer_ids=tuple(sibling_ids),
            )
        ]
        events.extend(
            TransferAutoRejected(
                **self._event_fields(sibling, claimed, actor),
                superseded_by_transfer_id=approved["id"],
                reason=AUTO_REJECTION_REASON,
            )
            for sibling in siblings
        )
        self._finish("approved", events)
        logger.info(
            "transfer_approved",
            extra={
                "transfer_id": approved["id"],
                "vehicle_id": claimed["id"],
                "auto_rejected_count": len(sibling_ids),
            },
        )
        return self.transfers.serialize(approved)

    def advance(self, db, transfer_id: int, actor: Actor, target_status: str) -> Dict[str, Any]:
        if target_status not in (transfer_flow.IN_TRANSIT, transfer_flow.DELIVERED):
            raise ValidationError(
                code="status_invalid",
                message_key="status_invalid",
                details=f"cannot advance a transfer to {target_status}",
            )

        with db.transaction():
            transfer, vehicle = self._lock_transfer_and_vehicle(db, transfer_id)
            if target_status == transfer_flow.DELIVERED:
                allowed = policies.can_mark_delivered(actor, transfer["to_location_id"])
            else:
                allowed = policies.can_update_transfer_status(actor)
            policies.require(allowed, details=f"{actor.role} cannot move transfers to {target_status}")

            from_status = transfer["status"]
            if transfer_flow.advance_target(from_status) != target_status:
                raise InvalidStateTransitionError(current_status=from_status, target_status=target_status)

            now = self.clock()
            if self.transfers.advance(db, transfer["id"], from_status=from_status, to_status=target_status, now=now) != 1:
                raise InvalidStateTransitionError(current_status=from_status, target_status=target_status)
            destination = transfer["to_location_id"] if target_status == transfer_flow.DELIVERED else None
            moved = 0
            if vehicle is not None:
                moved = self.vehicles.follow_transfer(
                    db,
                    vehicle["id"],
                    transfer["id"],
                    transfer_flow.VEHICLE_STATUS_FOR_TRANSFER[target_status],
                    now,
                    location_id=destination,
                )
            if moved != 1:
                raise InvalidStateTransitionError(
                    code="vehicle_not_available",
                    current_status=from_status,
                    target_status=target_status,
                    details=f"vehicle {transfer['vehicle_id']} is not held by transfer {transfer['id']}",
                )

            action = "transfer_delivered" if target_status == transfer_flow.DELIVERED else "transfer_in_transit"
            self.activities.record(
                db,
                action=action,
                user_id=actor.user_id,
                now=now,
                vehicle_id=vehicle["id"],
                transfer_id=transfer["id"],
                location_id=destination,
                details=f"Transfer moved from {from_status} to {target_status}",
                metadata={"from_status": from_status, "to_status": target_status},
            )
            advanced = self.transfers.get(db, transfer["id"])
            moved_vehicle = self.vehicles.get(db, vehicle["id"])

        self._finish(
            target_status,
            [
                TransferStatusAdvanced(
                    **self._event_fields(advanced, moved_vehicle, actor),
                    from_status=from_status,
                    to_status=target_status,
                )
            ],
        )
        return self.transfers.serialize(advanced)

    def advance_to_in_transit(self, db, transfer_id: int, actor: Actor) -> Dict[str, Any]:
        return self.advance(db, transfer_id, actor, transfer_flow.IN_TRANSIT)

    def advance_to_delivered(self, db, transfer_id: int, actor: Actor) -> Dict[str, Any]:
        return self.advance(db, transfer_id, actor, transfer_flow.DELIVERED)

    def reject(self, db, transfer_id: int, actor: Actor, reason: str | None) -> Dict[str, Any]:
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError(code="reason_required", message_key="reason_required")

        with db.transaction():
            transfer = self._transfer_or_404(db, transfer_id, lock=True)
            policies.require(
                policies.can_approve_for_location(actor, transfer["from_location_id"]),
                details=f"{actor.role} at {actor.location_id} cannot reject for {transfer['from_location_id']}",
            )
            transfer_flow.require_transition(transfer["status"], transfer_flow.REJECTED)
            now = self.clock()
            if self.transfers.reject(db, transfer["id"], actor.user_id, reason, now) != 1:
                raise InvalidStateTransitionError(
                    current_status=transfer["status"],
                    target_status=transfer_flow.REJECTED,
                )
            self.activities.record(
                db,
                action="transfer_rejected",
                user_id=actor.user_id,
                now=now,
                vehicle_id=transfer["vehicle_id"],
                transfer_id=transfer["id"],
                location_id=transfer["from_location_id"],
                details=reason,
            )
            rejected = self.transfers.get(db, transfer["id"])
            vehicle = self.vehicles.get(db, transfer["vehicle_id"])

        self._finish("rejected", [TransferRejected(**self._event_fields(rejected, vehicle, actor), reason=reason)])
        return self.transfers.serialize(rejected)

    def cancel(self, db, transfer_id: int, actor: Actor, reason: str | None = None) -> Dict[str, Any]:
        reason = str(reason or "").strip() or None

        with db.transaction():
            transfer, vehicle = self._lock_transfer_and_vehicle(db, transfer_id)
            policies.require(
                policies.can_cancel(actor, transfer),
                details=f"{actor.user_id} cannot cancel transfer {transfer['id']}",
            )
            previous_status = transfer["status"]
            if previous_status == transfer_flow.DELIVERED:
                raise InvalidStateTransitionError(
                    code="cannot_cancel_delivered",
                    current_status=previous_status,
                    target_status=transfer_flow.CANCELLED,
                )
            transfer_flow.require_transition(previous_status, transfer_flow.CANCELLED)
            reason = reason or f"Transfer cancelled while {previous_status}"

            now = self.clock()
            cancelled_rows = self.transfers.cancel(
                db,
                transfer["id"],
                from_status=previous_status,
                actor_id=actor.user_id,
                reason=reason,
                now=now,
            )
            if cancelled_rows != 1:
                raise InvalidStateTransitionError(
                    current_status=previous_status,
                    target_status=transfer_flow.CANCELLED,
                )
            released = False
            if vehicle is not None and vehicle["current_transfer_id"] == transfer["id"]:
                released = self.vehicles.release(db, vehicle["id"], transfer["id"], now) == 1

            self.activities.record(
                db,
                action="transfer_cancelled",
                user_id=actor.user_id,
                now=now,
                vehicle_id=transfer["vehicle_id"],
                transfer_id=transfer["id"],
                details=reason,
                metadata={"previous_status": previous_status, "vehicle_released": released},
            )
            cancelled = self.transfers.get(db, transfer["id"])
            vehicle = self.vehicles.get(db, transfer["vehicle_id"])

        self._finish(
            "cancelled",
            [
                TransferCancelled(
                    **self._event_fields(cancelled, vehicle, actor),
                    reason=reason,
                    previous_status=previous_status,
                )
            ],
        )
        return self.transfers.serialize(cancelled)

    def reset_stale_delivered(
        self,
        db,
        older_than_days: int = DEFAULT_DELIVERED_RESET_DAYS,
        *,
        actor: Actor = SYSTEM_ACTOR,
    ) -> List[int]:
        """Return delivered vehicles to ``available`` once their transfer is older than the window."""
        window = timedelta(days=max(0, int(older_than_days)))
        reset_ids: List[int] = []

        with db.transaction():
            now = self.clock()
            for row in self.vehicles.list_delivered_with_transfer(db, for_update=True):
                delivered_at = parse_db_timestamp(row.get("transfer_delivered_at"))
                if delivered_at is None or now - delivered_at <= window:
                    continue
                transfer_id = row["current_transfer_id"]
                if self.vehicles.release(db, row["id"], transfer_id, now) != 1:
                    continue
                self.activities.record(
                    db,
                    action="vehicle_delivery_reset",
                    user_id=actor.user_id,
                    now=now,
                    vehicle_id=row["id"],
                    transfer_id=transfer_id,
                    location_id=row["location_id"],
                    details=f"Delivered more than {older_than_days} days ago; available again",
                    metadata={"delivered_at": row.get("transfer_delivered_at")},
                )
                reset_ids.append(int(row["id"]))

        if reset_ids:
            logger.info("delivered_vehicles_reset", extra={"vehicle_count": len(reset_ids)})
            self.event_bus.publish(
                DeliveredVehiclesReset(vehicle_ids=tuple(reset_ids), older_than_days=int(older_than_days))
            )
        return reset_ids

    # -- helpers -------------------------------------------------------

    def _vehicle_or_404(self, db, vehicle_id: int, *, lock: bool = False) -> dict:
        vehicle = self.vehicles.get(db, vehicle_id, for_update=lock)
        if vehicle is None:
            raise NotFoundError(code="vehicle_not_found", message_key="vehicle_not_found")
        return vehicle

    def _transfer_or_404(self, db, transfer_id: int, *, lock: bool = False) -> dict:
        transfer = self.transfers.get(db, transfer_id, for_update=lock)
        if transfer is None:
            raise NotFoundError(code="transfer_not_found", message_key="transfer_not_found")
        return transfer

    def _lock_transfer_and_vehicle(self, db, transfer_id: int) -> tuple[dict, dict | None]:
        # Vehicle row first, then the transfer is re-read under the lock.
        transfer = self._transfer_or_404(db, transfer_id)
        vehicle = self.vehicles.get(db, transfer["vehicle_id"], for_update=True)
        return self._transfer_or_404(db, transfer_id, lock=True), vehicle

    def _event_fields(self, transfer: dict, vehicle: dict | None, actor: Actor) -> Dict[str, Any]:
        return {
            "transfer_id": int(transfer["id"]),
            "vehicle_id": int(transfer["vehicle_id"]),
            "transfer": self.transfers.serialize(transfer),
            "vehicle": self.vehicles.serialize_row(vehicle) or {},
            "actor_id": actor.user_id,
            "actor_role": actor.role,
        }

    def _finish(self, target_status: str, events: List[DomainEvent]) -> None:
        observe_transfer_transition(target_status)
        self.event_bus.publish_all(events)
