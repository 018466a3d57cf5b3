"""
Shared constants and utilities for the Production Log
======================================================
Single source of truth for storage keys, machine types, breakdown category
ordering, environment-driven settings, and the clock/date helpers used by
records.py, metrics.py, reconciler.py and reports.py.
"""

import os
import re

import pandas as pd

_DIR = os.path.dirname(os.path.abspath(__file__))

# ---------------------------------------------------------------------------
# Storage layout
# ---------------------------------------------------------------------------
# Local Cache key holding the whole serialized dataset
STORAGE_KEY = "production_db"
# Local Cache key holding the stamped schema version
VERSION_KEY = "production_db_version"
# Local Cache key holding the persisted cloud-sync preference
CLOUD_ENABLED_KEY = "production_cloud_enabled"
# Reserved dataset key for the process-wide ConfigRecord
CONFIG_KEY = "adminConfig"

# Bump whenever the stored entry layout changes; older local data is wiped.
DB_VERSION = 1

# Sentinel serialized value meaning "no data"
EMPTY_DATASET = "{}"

# ---------------------------------------------------------------------------
# Environment-driven settings
# ---------------------------------------------------------------------------
CACHE_FILE = os.environ.get("PRODUCTION_CACHE_FILE", os.path.join(_DIR, "production_cache.json"))
REMOTE_TABLE = os.environ.get("PRODUCTION_REMOTE_TABLE", "production_data")
REMOTE_DOC_ID = os.environ.get("PRODUCTION_REMOTE_DOC", "production_log")
CLOUD_SYNC_DEFAULT = os.environ.get("PRODUCTION_CLOUD_SYNC", "1") != "0"
LOG_LEVEL = os.environ.get("PRODUCTION_LOG_LEVEL", "INFO")
# Days a deleted entry is kept as a tombstone before it is purged from both stores
TOMBSTONE_RETENTION_DAYS = int(os.environ.get("PRODUCTION_TOMBSTONE_DAYS", "30"))

# ---------------------------------------------------------------------------
# Plant reference data
# ---------------------------------------------------------------------------
MACHINE_TYPES = ("IM", "BM")  # injection molding, blow molding
SHIFTS = ("day", "night")

# Planned stops that are not counted as breakdowns in the daily summary
SKIPPED_BREAKDOWN_CATEGORIES = {"MOLD CHANGE", "PLANNED"}

# Report ordering for breakdown categories; anything else sorts alphabetically after
BREAKDOWN_PRIORITY = [
    "BD Production",
    "BD Engineering",
    "Machine Settings",
    "Cycle Time Deviation",
    "Mold Change Delay",
    "Absenteeism",
    "Power Failure",
]

MINUTES_PER_DAY = 1440

DAY_KEY_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})_(IM|BM)$")


# ---------------------------------------------------------------------------
# Clock helpers
# ---------------------------------------------------------------------------
def parse_clock(value):
    """Parse an "HH:MM" string into minutes since midnight.

    Returns None for anything unset or malformed instead of raising.
    """
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value if 0 <= value < MINUTES_PER_DAY else None
    text = str(value).strip()
    if ":" not in text:
        return None
    hours, _, minutes = text.partition(":")
    try:
        h = int(hours)
        m = int(minutes[:2]) if minutes else 0
    except ValueError:
        return None
    if not (0 <= h <= 23 and 0 <= m <= 59):
        return None
    return h * 60 + m


def format_clock(minutes):
    """Inverse of parse_clock. None stays None."""
    if minutes is None:
        return None
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def wraparound_diff(start, end):
    """Minutes from start to end, assuming the interval crosses midnight when end < start."""
    if start is None or end is None:
        return 0
    if end < start:
        end += MINUTES_PER_DAY
    return max(0, end - start)


# ---------------------------------------------------------------------------
# Number coercion
# ---------------------------------------------------------------------------
def to_number(value, default=0.0):
    """Operator-entered numbers: missing or non-numeric becomes the default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if pd.isna(num) or num in (float("inf"), float("-inf")):
        return default
    return num


def to_int(value, default=0):
    return int(to_number(value, default))


# ---------------------------------------------------------------------------
# Keys and dates
# ---------------------------------------------------------------------------
def day_key(date, machine_type):
    """Dataset key for a DayRecord, e.g. 2025-03-01_IM."""
    return f"{date}_{machine_type}"


def parse_day_key(key):
    """Split a DayRecord key into (date, machine_type), or None if it isn't one."""
    m = DAY_KEY_RE.match(str(key))
    if not m:
        return None
    return m.group(1), m.group(2)


def dates_in_range(start_date, end_date):
    """Inclusive list of YYYY-MM-DD strings between two dates."""
    return [d.strftime("%Y-%m-%d") for d in pd.date_range(start_date, end_date, freq="D")]


def category_sort_key(category):
    """Sort key that puts BREAKDOWN_PRIORITY categories first, in order."""
    if category in BREAKDOWN_PRIORITY:
        return (0, BREAKDOWN_PRIORITY.index(category), "")
    return (1, 0, category.lower())
