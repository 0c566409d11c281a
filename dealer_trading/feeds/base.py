from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping

from dealer_trading.db import utc_now
from dealer_trading.domain.vehicle_attributes import normalize_attributes
from dealer_trading.domain.vehicle_status import normalize_vin
from dealer_trading.errors import DataSourceUnavailableError


logger = logging.getLogger("dealer_trading.feeds")


@dataclass(frozen=True)
class FeedVehicleRecord:
    vin: str
    stock_number: str | None = None
    year: int | None = None
    make: str | None = None
    model: str | None = None
    trim: str | None = None
    title: str | None = None
    price: float | None = None
    msrp: float | None = None
    mileage: int | None = None
    condition: str | None = None
    exterior_color: str | None = None
    body_style: str | None = None
    raw_status: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "vin", normalize_vin(self.vin))

    def attributes(self) -> Dict[str, Any]:
        return normalize_attributes(
            {
                "stock_number": self.stock_number,
                "year": self.year,
                "make": self.make,
                "model": self.model,
                "trim": self.trim,
                "title": self.title,
                "price": self.price,
                "msrp": self.msrp,
                "mileage": self.mileage,
                "condition": self.condition,
                "exterior_color": self.exterior_color,
                "body_style": self.body_style,
                "feed_status": self.raw_status,
            }
        )


@dataclass(frozen=True)
class RejectedRow:
    line: int
    vin: str | None
    reasons: tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"line": self.line, "vin": self.vin, "reasons": list(self.reasons)}


@dataclass
class FeedSnapshot:
    location_id: str
    records: Dict[str, FeedVehicleRecord] = field(default_factory=dict)
    rejected: List[RejectedRow] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_records(
        cls,
        location_id: str,
        records: Iterable[FeedVehicleRecord],
        rejected: Iterable[RejectedRow] = (),
    ) -> "FeedSnapshot":
        keyed: Dict[str, FeedVehicleRecord] = {}
        for record in records:
            if not record.vin:
                continue
            if record.vin in keyed:
                logger.warning(
                    "feed_duplicate_vin",
                    extra={"location_id": location_id, "vin": record.vin},
                )
            keyed[record.vin] = record
        return cls(location_id=location_id, records=keyed, rejected=list(rejected))

    def __len__(self) -> int:
        return len(self.records)

    def vins(self) -> set[str]:
        return set(self.records)


class FeedSnapshotSource(ABC):
    @abstractmethod
    def fetch_snapshot(self, location: Mapping[str, Any]) -> FeedSnapshot:
        """Return the current feed for ``location`` or raise DataSourceUnavailableError."""
        raise NotImplementedError


class StaticFeedSource(FeedSnapshotSource):
    """In-memory source keyed by location id."""

    def __init__(self, snapshots: Mapping[str, FeedSnapshot] | None = None) -> None:
        self._snapshots: Dict[str, FeedSnapshot] = dict(snapshots or {})

    def put(self, snapshot: FeedSnapshot) -> None:
        self._snapshots[snapshot.location_id] = snapshot

    def fetch_snapshot(self, location: Mapping[str, Any]) -> FeedSnapshot:
        location_id = str(location.get("id") or "")
        snapshot = self._snapshots.get(location_id)
        if snapshot is None:
            raise DataSourceUnavailableError(details=f"no feed snapshot for location {location_id}")
        return snapshot
