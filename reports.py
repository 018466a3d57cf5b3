"""
Production Reports
==================
Tabular views over DayRecords for the reporting/export side of the app.
Everything here reads MetricsResult values and never recalculates plan or
loss on its own.

  - day_report_frame / write_day_csv: one line per production row
  - daily_summary: achieved vs plan kg and downtime per machine type
  - breakdown_summary: one line per logged breakdown, planned stops skipped
  - efficiency_loss_by_type: residual (non-breakdown) loss per machine type
"""

import os

import pandas as pd

from metrics import compute_metrics, qty_for_minutes
from records import DayRecord
from shared import (
    MACHINE_TYPES,
    SKIPPED_BREAKDOWN_CATEGORIES,
    category_sort_key,
    day_key,
)

DAY_REPORT_COLUMNS = [
    "Shift", "Start", "End", "Machine", "Product", "Unit Wt", "Qty/Hr", "Cavities",
    "Time Hr", "Plan Qty", "Achieved Qty", "Plan Kg", "Achieved Kg", "Lost Qty",
    "BD Minutes", "Efficiency %",
]

BREAKDOWN_COLUMNS = ["Category", "Shift", "Machine", "Minutes", "Lost Kg", "Reason", "Product"]


def _day_records(entries, date):
    """The IM and BM DayRecords stored for ``date``, keyed by machine type."""
    found = {}
    for machine_type in MACHINE_TYPES:
        record = entries.get(day_key(date, machine_type))
        if isinstance(record, DayRecord):
            found[machine_type] = record
    return found


# =========================================================================
# Day report
# =========================================================================

def day_report_frame(day):
    """One row per ProductionRecord with its derived metrics."""
    records = []
    for row in day.rows:
        m = compute_metrics(row)
        records.append({
            "Shift": row.shift.value,
            "Start": row.window.start_text() or "",
            "End": row.window.end_text() or "",
            "Machine": row.machine,
            "Product": row.product,
            "Unit Wt": row.unit_weight_grams,
            "Qty/Hr": row.rate_per_hour,
            "Cavities": row.cavities,
            "Time Hr": m.time_hours,
            "Plan Qty": m.plan_qty,
            "Achieved Qty": row.achieved_qty,
            "Plan Kg": m.plan_kg,
            "Achieved Kg": m.achieved_kg,
            "Lost Qty": m.lost_qty,
            "BD Minutes": m.breakdown_minutes,
            "Efficiency %": m.efficiency_pct,
        })
    return pd.DataFrame(records, columns=DAY_REPORT_COLUMNS)


def day_report_filename(day):
    return f"Production_Report_{day.date}_{day.machine_type}.csv"


def write_day_csv(day, directory):
    """Write the day report CSV into ``directory`` and return its path."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, day_report_filename(day))
    day_report_frame(day).to_csv(path, index=False)
    return path


# =========================================================================
# Daily summary
# =========================================================================

def daily_summary(entries, date):
    """Achieved kg, plan kg, breakdown minutes and efficiency per machine type.

    Returns a dict keyed by machine type plus "total". Machine types with no
    record for the date report zeros.
    """
    summary = {}
    for machine_type in MACHINE_TYPES:
        record = entries.get(day_key(date, machine_type))
        achieved = plan = 0.0
        bd_minutes = 0
        if isinstance(record, DayRecord):
            for row in record.rows:
                m = compute_metrics(row)
                achieved += m.achieved_kg
                plan += m.plan_kg
                bd_minutes += m.breakdown_minutes
        summary[machine_type] = {
            "achieved_kg": round(achieved, 2),
            "plan_kg": round(plan, 2),
            "breakdown_minutes": bd_minutes,
            "efficiency_pct": round(achieved / plan * 100, 1) if plan > 0 else 0.0,
        }

    total_achieved = sum(s["achieved_kg"] for s in summary.values())
    total_plan = sum(s["plan_kg"] for s in summary.values())
    summary["total"] = {
        "achieved_kg": round(total_achieved, 2),
        "plan_kg": round(total_plan, 2),
        "breakdown_minutes": sum(s["breakdown_minutes"] for s in summary.values()),
        "efficiency_pct": round(total_achieved / total_plan * 100, 1) if total_plan > 0 else 0.0,
    }
    return summary


# =========================================================================
# Breakdown summary
# =========================================================================

def breakdown_summary(entries, date):
    """Every logged breakdown for ``date`` across IM and BM.

    Planned stops (SKIPPED_BREAKDOWN_CATEGORIES) are left out. Rows are
    ordered by category priority, then by minutes descending.
    """
    items = []
    for record in _day_records(entries, date).values():
        for row in record.rows:
            for bd in row.breakdowns:
                category = bd.category.strip() or "Unknown"
                if category.upper() in SKIPPED_BREAKDOWN_CATEGORIES:
                    continue
                minutes = bd.window.duration_minutes
                lost_qty = qty_for_minutes(row.rate_per_hour, row.cavities, minutes)
                items.append({
                    "Category": category,
                    "Shift": row.shift.value.capitalize(),
                    "Machine": row.machine or "-",
                    "Minutes": minutes,
                    "Lost Kg": round(lost_qty * row.unit_weight_grams / 1000, 2),
                    "Reason": bd.description or "-",
                    "Product": row.product or "-",
                })

    df = pd.DataFrame(items, columns=BREAKDOWN_COLUMNS)
    if df.empty:
        return df
    ranked = sorted(df["Category"].unique(), key=category_sort_key)
    df["_order"] = df["Category"].map({cat: i for i, cat in enumerate(ranked)})
    df = df.sort_values(["_order", "Minutes"], ascending=[True, False], kind="mergesort")
    return df.drop(columns="_order").reset_index(drop=True)


def breakdown_totals(entries, date):
    """Minutes and lost kg per breakdown category, in priority order."""
    df = breakdown_summary(entries, date)
    if df.empty:
        return pd.DataFrame(columns=["Category", "Events", "Minutes", "Lost Kg"])
    totals = (
        df.groupby("Category", as_index=False, sort=False)
        .agg(Events=("Minutes", "count"), Minutes=("Minutes", "sum"), **{"Lost Kg": ("Lost Kg", "sum")})
    )
    totals["Lost Kg"] = totals["Lost Kg"].round(2)
    return totals


def efficiency_loss_by_type(entries, date):
    """Summed efficiency-loss kg (loss not explained by breakdowns) per machine type."""
    result = {}
    for machine_type in MACHINE_TYPES:
        record = entries.get(day_key(date, machine_type))
        rows = record.rows if isinstance(record, DayRecord) else []
        result[machine_type] = round(sum(compute_metrics(row).efficiency_loss_kg for row in rows), 2)
    return result
