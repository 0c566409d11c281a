from __future__ import annotations

import csv
import logging
import os
import re
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

from dealer_trading.errors import DataSourceUnavailableError
from dealer_trading.feeds.base import FeedSnapshot, FeedSnapshotSource, FeedVehicleRecord, RejectedRow


logger = logging.getLogger("dealer_trading.feeds.csv")

VIN_LENGTH = 17
MIN_YEAR = 1900
IMPORTED_CONDITION = "used"

HEADER_ALIASES: Dict[str, Tuple[str, ...]] = {
    "vin": ("vin",),
    "stock_number": ("id", "stock #", "stock_number", "stock number", "stock"),
    "make": ("brand", "make"),
    "model": ("model",),
    "year": ("year",),
    "trim": ("trim",),
    "title": ("title",),
    "price": ("price", "selling price", "selling_price"),
    "msrp": ("vehicle_msrp", "msrp"),
    "mileage": ("mileage", "odometer"),
    "condition": ("condition",),
    "exterior_color": ("color", "exterior_color", "exterior color"),
    "body_style": ("body_style", "body style"),
    "store_code": ("store_code", "store code"),
    "raw_status": ("status", "availability"),
}

_MONEY_STRIP = re.compile(r"[^0-9.\-]")
_DIGITS_STRIP = re.compile(r"[^0-9]")


def _normalize_header(header: str | None) -> str:
    return str(header or "").replace('"', "").strip().lower()


def build_header_map(headers: Iterable[str | None]) -> Dict[str, str]:
    """Map each canonical field to the first matching raw header."""
    lookup: Dict[str, str] = {}
    for alias_field, aliases in HEADER_ALIASES.items():
        for header in headers:
            if header is None:
                continue
            if _normalize_header(header) in aliases:
                lookup[alias_field] = header
                break
    return lookup


def parse_money(value: Any) -> float | None:
    cleaned = _MONEY_STRIP.sub("", str(value or ""))
    if not cleaned or cleaned in {"-", "."}:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_mileage(value: Any) -> int | None:
    cleaned = _DIGITS_STRIP.sub("", str(value or ""))
    return int(cleaned) if cleaned else None


def parse_year(value: Any) -> int | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def _clean(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


def validate_record(record: FeedVehicleRecord, *, today: date | None = None) -> List[str]:
    errors: List[str] = []
    if not record.stock_number:
        errors.append("Missing stock number")
    if not record.vin:
        errors.append("Missing VIN")
    if not record.make:
        errors.append("Missing make")
    if not record.model:
        errors.append("Missing model")
    if not record.year:
        errors.append("Missing year")
    if record.price is None:
        errors.append("Missing price")

    if record.condition and record.condition != IMPORTED_CONDITION:
        errors.append(f"Invalid condition: {record.condition}")
    if record.vin and len(record.vin) != VIN_LENGTH:
        errors.append(f"Invalid VIN length: {len(record.vin)}")

    current_year = (today or date.today()).year
    if record.year and (record.year < MIN_YEAR or record.year > current_year + 2):
        errors.append(f"Invalid year: {record.year}")
    if record.price is not None and record.price < 0:
        errors.append(f"Invalid price: {record.price:g}")
    return errors


def parse_inventory_rows(
    rows: Iterable[Mapping[str, Any]],
    header_map: Mapping[str, str],
    *,
    store_code: str | None = None,
    today: date | None = None,
) -> Tuple[List[FeedVehicleRecord], List[RejectedRow]]:
    records: List[FeedVehicleRecord] = []
    rejected: List[RejectedRow] = []

    def field_value(row: Mapping[str, Any], name: str) -> Any:
        header = header_map.get(name)
        return row.get(header) if header else None

    # Line 1 holds the header.
    for line, row in enumerate(rows, start=2):
        vin = _clean(field_value(row, "vin"))
        row_store = _clean(field_value(row, "store_code"))
        if store_code and "store_code" in header_map and row_store != store_code:
            rejected.append(RejectedRow(line=line, vin=vin, reasons=(f"Wrong store code: {row_store}",)))
            continue

        condition = (_clean(field_value(row, "condition")) or IMPORTED_CONDITION).lower()
        if condition != IMPORTED_CONDITION:
            rejected.append(RejectedRow(line=line, vin=vin, reasons=(f"Skipped condition: {condition}",)))
            continue

        year = parse_year(field_value(row, "year"))
        make = _clean(field_value(row, "make"))
        model = _clean(field_value(row, "model"))
        title = _clean(field_value(row, "title")) or " ".join(
            str(part) for part in (year, make, model) if part
        ) or None

        record = FeedVehicleRecord(
            vin=vin or "",
            stock_number=_clean(field_value(row, "stock_number")),
            year=year,
            make=make,
            model=model,
            trim=_clean(field_value(row, "trim")),
            title=title,
            price=parse_money(field_value(row, "price")),
            msrp=parse_money(field_value(row, "msrp")),
            mileage=parse_mileage(field_value(row, "mileage")),
            condition=condition,
            exterior_color=_clean(field_value(row, "exterior_color")),
            body_style=_clean(field_value(row, "body_style")),
            raw_status=_clean(field_value(row, "raw_status")),
        )
        errors = validate_record(record, today=today)
        if errors:
            rejected.append(RejectedRow(line=line, vin=record.vin or None, reasons=tuple(errors)))
            continue
        records.append(record)
    return records, rejected


class CsvDirectoryFeedSource(FeedSnapshotSource):
    """Reads ``<directory>/<csv_file_name>`` for each location."""

    def __init__(self, directory: str, *, today: Callable[[], date] | None = None) -> None:
        self.directory = directory
        self._today = today or date.today

    def feed_path(self, location: Mapping[str, Any]) -> str:
        file_name = str(location.get("csv_file_name") or "").strip()
        if not file_name:
            code = str(location.get("code") or location.get("id") or "").strip()
            file_name = f"{code}.csv"
        return os.path.join(self.directory, os.path.basename(file_name))

    def fetch_snapshot(self, location: Mapping[str, Any]) -> FeedSnapshot:
        location_id = str(location.get("id") or "")
        path = self.feed_path(location)
        try:
            with open(path, "r", encoding="utf-8-sig", newline="") as handle:
                reader = csv.DictReader(handle)
                headers = list(reader.fieldnames or [])
                header_map = build_header_map(headers)
                if "vin" not in header_map:
                    raise DataSourceUnavailableError(details=f"feed {path} has no VIN column")
                records, rejected = parse_inventory_rows(
                    reader,
                    header_map,
                    store_code=_clean(location.get("code")),
                    today=self._today(),
                )
        except (OSError, csv.Error, UnicodeDecodeError) as exc:
            raise DataSourceUnavailableError(details=f"feed {path} unreadable: {exc}") from exc

        if rejected:
            logger.warning(
                "feed_rows_rejected",
                extra={"location_id": location_id, "rejected_count": len(rejected), "feed_path": path},
            )
        return FeedSnapshot.from_records(location_id, records, rejected)
