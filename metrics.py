"""
Metrics Engine for the Production Log
======================================
Turns one ProductionRecord into planned, achieved and lost quantities, and
splits the loss between logged breakdown time and residual efficiency.

Pure and deterministic: no I/O, no hidden state, never raises on bad
numbers. Reports and exporters rely on MetricsResult as their whole contract.

Quantities are signed. When an operator's achieved count exceeds
plan, lost_qty and efficiency_loss_qty go negative rather than being clamped.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

from shared import to_int, to_number

MASS_DECIMALS = 2
PCT_DECIMALS = 1


@dataclass(frozen=True)
class MetricsResult:
    plan_qty: int
    plan_kg: float
    achieved_kg: float
    lost_qty: int
    lost_kg: float
    breakdown_minutes: int
    breakdown_lost_qty: int
    breakdown_lost_kg: float
    efficiency_loss_qty: int
    efficiency_loss_kg: float
    accepted_qty: int
    accepted_kg: float
    efficiency_pct: float
    duration_minutes: int = 0
    time_hours: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def qty_for_minutes(rate_per_hour: float, cavities: int, minutes: int) -> int:
    """floor(rate_per_minute * minutes), evaluated as one product over 60
    so 100/h x 2 cavities x 720 min is exactly 2400."""
    return int(math.floor(rate_per_hour * cavities * minutes / 60))


def _kg(qty: int, unit_weight_grams: float) -> float:
    return round(qty * unit_weight_grams / 1000, MASS_DECIMALS)


def compute_metrics(row) -> MetricsResult:
    """Derive every reported figure for one production row."""
    unit_weight = to_number(getattr(row, "unit_weight_grams", 0))
    rate_per_hour = to_number(getattr(row, "rate_per_hour", 0))
    cavities = max(1, to_int(getattr(row, "cavities", 1), 1))
    achieved = to_int(getattr(row, "achieved_qty", 0))
    rejection = to_int(getattr(row, "rejection_qty", 0))
    startup = to_int(getattr(row, "startup_qty", 0))

    window = getattr(row, "window", None)
    duration = window.duration_minutes if window is not None else 0
    plan_qty = qty_for_minutes(rate_per_hour, cavities, duration)

    bd_minutes = 0
    bd_lost_qty = 0
    for event in getattr(row, "breakdowns", None) or []:
        minutes = event.window.duration_minutes
        bd_minutes += minutes
        bd_lost_qty += qty_for_minutes(rate_per_hour, cavities, minutes)

    lost_qty = plan_qty - achieved
    efficiency_loss_qty = lost_qty - bd_lost_qty
    accepted_qty = achieved - rejection - startup
    efficiency = round(achieved / plan_qty * 100, PCT_DECIMALS) if plan_qty > 0 else 0.0

    return MetricsResult(
        plan_qty=plan_qty,
        plan_kg=_kg(plan_qty, unit_weight),
        achieved_kg=_kg(achieved, unit_weight),
        lost_qty=lost_qty,
        lost_kg=_kg(lost_qty, unit_weight),
        breakdown_minutes=bd_minutes,
        breakdown_lost_qty=bd_lost_qty,
        breakdown_lost_kg=_kg(bd_lost_qty, unit_weight),
        efficiency_loss_qty=efficiency_loss_qty,
        efficiency_loss_kg=_kg(efficiency_loss_qty, unit_weight),
        accepted_qty=accepted_qty,
        accepted_kg=_kg(accepted_qty, unit_weight),
        efficiency_pct=efficiency,
        duration_minutes=duration,
        time_hours=round(duration / 60, 2),
    )
