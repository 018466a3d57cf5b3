"""
Record types for the production log
====================================
TimeWindow, BreakdownEvent, ProductionRecord, DayRecord, ConfigRecord and
Tombstone, plus the decoding boundary that turns stored JSON entries into
typed records.

Every stored entry carries a ``kind`` tag ("day", "config" or "deleted").
Entries without a tag are inferred from their dataset key. Structural
problems raise RecordValidationError here so nothing downstream has to
second-guess a payload; operator-entered numbers are coerced leniently.

A deleted day record stays in the dataset as a Tombstone until it ages out,
so a device that has not seen the delete yet cannot bring it back.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from errors import RecordValidationError
from shared import (
    CONFIG_KEY,
    MACHINE_TYPES,
    day_key,
    format_clock,
    parse_clock,
    parse_day_key,
    to_int,
    to_number,
    wraparound_diff,
)

KIND_DAY = "day"
KIND_CONFIG = "config"
KIND_DELETED = "deleted"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class Shift(str, Enum):
    DAY = "day"
    NIGHT = "night"

    @classmethod
    def parse(cls, value: Any) -> "Shift":
        if value is None or value == "":
            return cls.DAY
        if isinstance(value, Shift):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"unknown shift {value!r}")


# ---------------------------------------------------------------------------
# TimeWindow
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TimeWindow:
    """Start/end clock times in minutes since midnight (None when unset)."""

    start: int | None = None
    end: int | None = None

    @classmethod
    def from_strings(cls, start: Any, end: Any) -> "TimeWindow":
        return cls(parse_clock(start), parse_clock(end))

    @property
    def duration_minutes(self) -> int:
        return wraparound_diff(self.start, self.end)

    def start_text(self) -> str | None:
        return format_clock(self.start)

    def end_text(self) -> str | None:
        return format_clock(self.end)


# ---------------------------------------------------------------------------
# Production rows
# ---------------------------------------------------------------------------
@dataclass
class BreakdownEvent:
    category: str = ""
    description: str = ""
    window: TimeWindow = field(default_factory=TimeWindow)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "description": self.description,
            "start_time": self.window.start_text(),
            "end_time": self.window.end_text(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], fallback_id: str | None = None) -> "BreakdownEvent":
        return cls(
            id=str(data.get("id") or fallback_id or _new_id()),
            category=str(data.get("category") or ""),
            description=str(data.get("description") or ""),
            window=TimeWindow.from_strings(data.get("start_time"), data.get("end_time")),
        )


@dataclass
class ProductionRecord:
    """One machine run within one shift."""

    shift: Shift = Shift.DAY
    window: TimeWindow = field(default_factory=TimeWindow)
    machine: str = ""
    product: str = ""
    unit_weight_grams: float = 0.0
    rate_per_hour: float = 0.0
    cavities: int = 1
    cycle_time_seconds: float = 0.0
    achieved_qty: int = 0
    rejection_qty: int = 0
    startup_qty: int = 0
    breakdowns: list[BreakdownEvent] = field(default_factory=list)
    id: str = field(default_factory=_new_id)

    @property
    def accepted_qty(self) -> int:
        # Derived, never stored; negative when operator counts disagree.
        return self.achieved_qty - self.rejection_qty - self.startup_qty

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shift": self.shift.value,
            "start_time": self.window.start_text(),
            "end_time": self.window.end_text(),
            "machine": self.machine,
            "product": self.product,
            "unit_weight_grams": self.unit_weight_grams,
            "rate_per_hour": self.rate_per_hour,
            "cavities": self.cavities,
            "cycle_time_seconds": self.cycle_time_seconds,
            "achieved_qty": self.achieved_qty,
            "rejection_qty": self.rejection_qty,
            "startup_qty": self.startup_qty,
            "breakdowns": [bd.to_dict() for bd in self.breakdowns],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], fallback_id: str | None = None) -> "ProductionRecord":
        breakdowns = data.get("breakdowns") or []
        if not isinstance(breakdowns, list):
            raise ValueError("breakdowns must be a list")
        if not all(isinstance(bd, Mapping) for bd in breakdowns):
            raise ValueError("every breakdown must be an object")
        row_id = str(data.get("id") or fallback_id or _new_id())
        return cls(
            id=row_id,
            shift=Shift.parse(data.get("shift")),
            window=TimeWindow.from_strings(data.get("start_time"), data.get("end_time")),
            machine=str(data.get("machine") or ""),
            product=str(data.get("product") or ""),
            unit_weight_grams=to_number(data.get("unit_weight_grams")),
            rate_per_hour=to_number(data.get("rate_per_hour")),
            cavities=max(1, to_int(data.get("cavities"), 1)),
            cycle_time_seconds=to_number(data.get("cycle_time_seconds")),
            achieved_qty=to_int(data.get("achieved_qty")),
            rejection_qty=to_int(data.get("rejection_qty")),
            startup_qty=to_int(data.get("startup_qty")),
            breakdowns=[
                BreakdownEvent.from_dict(bd, fallback_id=f"{row_id}-bd{i}")
                for i, bd in enumerate(breakdowns)
            ],
        )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------
@dataclass
class DayRecord:
    """All rows logged for one date and machine type."""

    date: str
    machine_type: str
    day_supervisor: str = ""
    night_supervisor: str = ""
    rows: list[ProductionRecord] = field(default_factory=list)

    kind = KIND_DAY

    @property
    def key(self) -> str:
        return day_key(self.date, self.machine_type)

    def add_row(self, row: ProductionRecord) -> ProductionRecord:
        self.rows.append(row)
        return row

    def update_row(self, row_id: str, **changes: Any) -> ProductionRecord:
        for i, row in enumerate(self.rows):
            if row.id == row_id:
                self.rows[i] = replace(row, **changes)
                return self.rows[i]
        raise KeyError(row_id)

    def remove_row(self, row_id: str) -> None:
        # The aggregate itself survives with zero rows.
        self.rows = [row for row in self.rows if row.id != row_id]

    def rows_for_shift(self, shift: Shift) -> list[ProductionRecord]:
        return [row for row in self.rows if row.shift == shift]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": KIND_DAY,
            "date": self.date,
            "machine_type": self.machine_type,
            "day_supervisor": self.day_supervisor,
            "night_supervisor": self.night_supervisor,
            "rows": [row.to_dict() for row in self.rows],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DayRecord":
        machine_type = str(data.get("machine_type") or "")
        if machine_type not in MACHINE_TYPES:
            raise ValueError(f"machine_type must be one of {', '.join(MACHINE_TYPES)}")
        date = str(data.get("date") or "")
        if not date:
            raise ValueError("date is required")
        rows = data.get("rows") or []
        if not isinstance(rows, list):
            raise ValueError("rows must be a list")
        if not all(isinstance(row, Mapping) for row in rows):
            raise ValueError("every row must be an object")
        return cls(
            date=date,
            machine_type=machine_type,
            day_supervisor=str(data.get("day_supervisor") or ""),
            night_supervisor=str(data.get("night_supervisor") or ""),
            rows=[
                ProductionRecord.from_dict(row, fallback_id=f"{date}_{machine_type}-r{i}")
                for i, row in enumerate(rows)
            ],
        )


@dataclass
class ProductionItem:
    """A named item the admin screen maps to a machine, with its rated figures."""

    name: str
    machine_type: str = "IM"
    machine: str = ""
    customer: str = ""
    unit_weight_grams: float = 0.0
    rate_per_hour: float = 0.0
    cavities: int = 1
    cycle_time_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "machine_type": self.machine_type,
            "machine": self.machine,
            "customer": self.customer,
            "unit_weight_grams": self.unit_weight_grams,
            "rate_per_hour": self.rate_per_hour,
            "cavities": self.cavities,
            "cycle_time_seconds": self.cycle_time_seconds,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProductionItem":
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValueError("production item name is required")
        return cls(
            name=name,
            machine_type=str(data.get("machine_type") or "IM"),
            machine=str(data.get("machine") or ""),
            customer=str(data.get("customer") or ""),
            unit_weight_grams=to_number(data.get("unit_weight_grams")),
            rate_per_hour=to_number(data.get("rate_per_hour")),
            cavities=max(1, to_int(data.get("cavities"), 1)),
            cycle_time_seconds=to_number(data.get("cycle_time_seconds")),
        )


def _string_list(data: Mapping[str, Any], name: str) -> list[str]:
    value = data.get(name) or []
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list")
    return [str(v) for v in value]


@dataclass
class ConfigRecord:
    """Process-wide reference data shared by every DayRecord."""

    production_items: list[ProductionItem] = field(default_factory=list)
    breakdown_categories: list[str] = field(default_factory=list)
    defect_categories: list[str] = field(default_factory=list)
    shift_teams: list[str] = field(default_factory=list)

    kind = KIND_CONFIG

    @property
    def key(self) -> str:
        return CONFIG_KEY

    def items_for(self, machine_type: str) -> list[ProductionItem]:
        return [item for item in self.production_items if item.machine_type == machine_type]

    def find_item(self, name: str) -> ProductionItem | None:
        for item in self.production_items:
            if item.name == name:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": KIND_CONFIG,
            "production_items": [item.to_dict() for item in self.production_items],
            "breakdown_categories": list(self.breakdown_categories),
            "defect_categories": list(self.defect_categories),
            "shift_teams": list(self.shift_teams),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConfigRecord":
        items = data.get("production_items") or []
        if not isinstance(items, list) or not all(isinstance(i, Mapping) for i in items):
            raise ValueError("production_items must be a list of objects")
        return cls(
            production_items=[ProductionItem.from_dict(item) for item in items],
            breakdown_categories=_string_list(data, "breakdown_categories"),
            defect_categories=_string_list(data, "defect_categories"),
            shift_teams=_string_list(data, "shift_teams"),
        )


@dataclass
class Tombstone:
    """Marks a deleted day record. ``deleted_at`` is an ISO-8601 timestamp."""

    deleted_at: str | None = None

    kind = KIND_DELETED

    def to_dict(self) -> dict[str, Any]:
        return {"kind": KIND_DELETED, "deleted": True, "deleted_at": self.deleted_at}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Tombstone":
        deleted_at = data.get("deleted_at")
        return cls(deleted_at=str(deleted_at) if deleted_at else None)


Record = DayRecord | ConfigRecord | Tombstone


# ---------------------------------------------------------------------------
# Decoding boundary
# ---------------------------------------------------------------------------
def _infer_kind(key: str) -> str | None:
    if key == CONFIG_KEY:
        return KIND_CONFIG
    if parse_day_key(key):
        return KIND_DAY
    return None


def decode_entry(key: str, payload: Any) -> Record:
    """Build the typed record stored under ``key``.

    Raises RecordValidationError for anything that is not a well-formed
    day, config or deleted entry, or whose kind disagrees with its key.
    """
    if not isinstance(payload, Mapping):
        raise RecordValidationError(key, "entry must be an object")

    kind = payload.get("kind") or (KIND_DELETED if payload.get("deleted") is True else _infer_kind(key))
    try:
        if kind == KIND_DELETED:
            if parse_day_key(key) is None:
                raise ValueError("only day entries can be deleted")
            return Tombstone.from_dict(payload)
        if kind == KIND_CONFIG:
            if key != CONFIG_KEY:
                raise ValueError(f"config entries must be stored under {CONFIG_KEY!r}")
            return ConfigRecord.from_dict(payload)
        if kind == KIND_DAY:
            record = DayRecord.from_dict(payload)
            if parse_day_key(key) is None:
                raise ValueError("day entries must be keyed <date>_<machine type>")
            if record.key != key:
                raise ValueError(f"entry describes {record.key}")
            return record
    except (TypeError, ValueError) as exc:
        raise RecordValidationError(key, str(exc)) from exc
    raise RecordValidationError(key, f"unknown record kind {kind!r}")


def decode_dataset(raw: Any) -> dict[str, Record]:
    """Decode a whole keyed map; the first malformed entry aborts."""
    if not isinstance(raw, Mapping):
        raise RecordValidationError("<dataset>", "dataset must be an object keyed by entry")
    return {str(key): decode_entry(str(key), payload) for key, payload in raw.items()}


def encode_dataset(entries: Mapping[str, Record]) -> dict[str, dict[str, Any]]:
    return {key: record.to_dict() for key, record in entries.items()}
