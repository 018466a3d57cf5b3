"""
Tests for record types and the decoding boundary.

Run: python -m pytest test_records.py -v
"""

import pytest

from errors import RecordValidationError
from records import (
    ConfigRecord,
    DayRecord,
    ProductionItem,
    ProductionRecord,
    Shift,
    TimeWindow,
    Tombstone,
    decode_dataset,
    decode_entry,
    encode_dataset,
)


def _day_payload(**overrides):
    payload = {
        "kind": "day",
        "date": "2025-03-01",
        "machine_type": "IM",
        "day_supervisor": "Asha",
        "night_supervisor": "Ravi",
        "rows": [{
            "id": "r1",
            "shift": "day",
            "start_time": "08:00",
            "end_time": "20:00",
            "machine": "M01",
            "product": "Cap 28mm",
            "unit_weight_grams": 25,
            "rate_per_hour": 100,
            "cavities": 2,
            "achieved_qty": 2200,
            "rejection_qty": 50,
            "startup_qty": 20,
            "breakdowns": [{"id": "b1", "category": "BD Engineering",
                            "description": "heater", "start_time": "10:00", "end_time": "10:30"}],
        }],
    }
    payload.update(overrides)
    return payload


# =====================================================================
# Shift
# =====================================================================

class TestShift:

    def test_parse_values(self):
        assert Shift.parse("day") is Shift.DAY
        assert Shift.parse("NIGHT") is Shift.NIGHT
        assert Shift.parse(Shift.NIGHT) is Shift.NIGHT

    def test_missing_defaults_to_day(self):
        assert Shift.parse(None) is Shift.DAY
        assert Shift.parse("") is Shift.DAY

    def test_unknown_raises(self):
        with pytest.raises(ValueError):
            Shift.parse("swing")


# =====================================================================
# DayRecord helpers
# =====================================================================

class TestDayRecord:

    def test_key(self):
        assert DayRecord("2025-03-01", "BM").key == "2025-03-01_BM"

    def test_add_update_remove_row(self):
        day = DayRecord("2025-03-01", "IM")
        row = day.add_row(ProductionRecord(machine="M01", achieved_qty=10))
        updated = day.update_row(row.id, achieved_qty=25)
        assert updated.achieved_qty == 25
        assert updated.machine == "M01"
        assert day.rows[0] is updated

        day.remove_row(row.id)
        assert day.rows == []
        assert day.key == "2025-03-01_IM"

    def test_update_unknown_row_raises(self):
        day = DayRecord("2025-03-01", "IM")
        with pytest.raises(KeyError):
            day.update_row("missing", achieved_qty=1)

    def test_rows_for_shift(self):
        day = DayRecord("2025-03-01", "IM", rows=[
            ProductionRecord(shift=Shift.DAY),
            ProductionRecord(shift=Shift.NIGHT),
            ProductionRecord(shift=Shift.NIGHT),
        ])
        assert len(day.rows_for_shift(Shift.NIGHT)) == 2
        assert len(day.rows_for_shift(Shift.DAY)) == 1

    def test_accepted_qty_is_derived(self):
        row = ProductionRecord(achieved_qty=100, rejection_qty=7, startup_qty=3)
        assert row.accepted_qty == 90
        assert "accepted_qty" not in row.to_dict()

    def test_round_trip(self):
        day = DayRecord.from_dict(_day_payload())
        again = DayRecord.from_dict(day.to_dict())
        assert again == day
        assert again.rows[0].window == TimeWindow.from_strings("08:00", "20:00")


# =====================================================================
# Decoding boundary
# =====================================================================

class TestDecodeEntry:

    def test_tagged_day_entry(self):
        record = decode_entry("2025-03-01_IM", _day_payload())
        assert isinstance(record, DayRecord)
        assert record.rows[0].breakdowns[0].window.duration_minutes == 30

    def test_untagged_day_entry_inferred_from_key(self):
        payload = _day_payload()
        del payload["kind"]
        assert isinstance(decode_entry("2025-03-01_IM", payload), DayRecord)

    def test_config_entry(self):
        record = decode_entry("adminConfig", {
            "production_items": [{"name": "Cap 28mm", "machine_type": "IM", "cavities": 4}],
            "breakdown_categories": ["BD Production"],
        })
        assert isinstance(record, ConfigRecord)
        assert record.find_item("Cap 28mm").cavities == 4
        assert record.items_for("BM") == []

    def test_key_mismatch_rejected(self):
        with pytest.raises(RecordValidationError) as exc_info:
            decode_entry("2025-03-02_IM", _day_payload())
        assert exc_info.value.key == "2025-03-02_IM"

    def test_config_under_wrong_key_rejected(self):
        with pytest.raises(RecordValidationError):
            decode_entry("2025-03-01_IM", {"kind": "config"})

    def test_tombstone_entry(self):
        record = decode_entry("2025-03-01_IM", {"kind": "deleted", "deleted": True,
                                                "deleted_at": "2025-03-02T10:00:00+00:00"})
        assert record == Tombstone(deleted_at="2025-03-02T10:00:00+00:00")
        assert record.to_dict()["deleted"] is True

    def test_untagged_deleted_flag_is_a_tombstone(self):
        assert isinstance(decode_entry("2025-03-01_BM", {"deleted": True}), Tombstone)

    def test_tombstone_only_under_day_key(self):
        with pytest.raises(RecordValidationError):
            decode_entry("adminConfig", {"deleted": True})

    def test_unknown_kind_rejected(self):
        with pytest.raises(RecordValidationError):
            decode_entry("notes", {"text": "hello"})

    @pytest.mark.parametrize("payload", [
        "not an object",
        None,
        ["a", "b"],
    ])
    def test_non_object_rejected(self, payload):
        with pytest.raises(RecordValidationError):
            decode_entry("2025-03-01_IM", payload)

    def test_bad_machine_type_rejected(self):
        with pytest.raises(RecordValidationError):
            decode_entry("2025-03-01_IM", _day_payload(machine_type="XX"))

    def test_rows_must_be_a_list(self):
        with pytest.raises(RecordValidationError):
            decode_entry("2025-03-01_IM", _day_payload(rows={"r1": {}}))

    def test_bad_shift_rejected(self):
        payload = _day_payload()
        payload["rows"][0]["shift"] = "swing"
        with pytest.raises(RecordValidationError):
            decode_entry("2025-03-01_IM", payload)

    def test_operator_numbers_coerced_leniently(self):
        payload = _day_payload()
        payload["rows"][0].update(achieved_qty="", cavities=0, rate_per_hour="abc")
        row = decode_entry("2025-03-01_IM", payload).rows[0]
        assert row.achieved_qty == 0
        assert row.cavities == 1
        assert row.rate_per_hour == 0.0

    def test_missing_ids_are_deterministic(self):
        payload = _day_payload()
        del payload["rows"][0]["id"]
        del payload["rows"][0]["breakdowns"][0]["id"]
        first = decode_entry("2025-03-01_IM", payload)
        second = decode_entry("2025-03-01_IM", payload)
        assert first == second
        assert first.rows[0].id == "2025-03-01_IM-r0"
        assert first.rows[0].breakdowns[0].id == "2025-03-01_IM-r0-bd0"

    def test_production_item_requires_name(self):
        with pytest.raises(ValueError):
            ProductionItem.from_dict({"machine_type": "IM"})


class TestDecodeDataset:

    def test_mixed_dataset(self):
        decoded = decode_dataset({
            "2025-03-01_IM": _day_payload(),
            "adminConfig": {"kind": "config"},
        })
        assert set(decoded) == {"2025-03-01_IM", "adminConfig"}
        assert isinstance(decoded["adminConfig"], ConfigRecord)

    def test_one_bad_entry_aborts(self):
        with pytest.raises(RecordValidationError):
            decode_dataset({"2025-03-01_IM": _day_payload(), "junk": 42})

    def test_non_mapping_dataset(self):
        with pytest.raises(RecordValidationError):
            decode_dataset(["2025-03-01_IM"])

    def test_encode_round_trip(self):
        decoded = decode_dataset({"2025-03-01_IM": _day_payload()})
        assert decode_dataset(encode_dataset(decoded)) == decoded
        assert encode_dataset(decoded)["2025-03-01_IM"]["kind"] == "day"
