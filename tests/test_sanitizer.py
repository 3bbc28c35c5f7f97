import json
import math
from datetime import datetime

import pytest

from services.sanitizer import is_corrupt, sanitize, sanitize_reading_fields, sanitize_series, threshold_for


def test_interpolates_between_valid_neighbours():
    value, corr = sanitize(999999, "kwh_value", 50, 54, meter_id=7, meter_number="M7")
    assert value == 52
    assert corr is not None
    assert corr.original_value == 999999
    assert corr.corrected_value == 52
    assert corr.reason == "Interpolated from neighbors (50.00, 54.00)"


def test_series_produces_exactly_one_correction(make_reading, half_hours):
    ts = half_hours(datetime(2025, 1, 1), 3)
    readings = [make_reading(ts[0], 50), make_reading(ts[1], 999999), make_reading(ts[2], 54)]
    corrections = []

    out = sanitize_reading_fields(readings, corrections, meter_id=1, meter_number="M1")

    assert [kwh for kwh, _ in out] == [50, 52, 54]
    assert len(corrections) == 1
    assert corrections[0].timestamp == ts[1]
    assert corrections[0].field_name == "kwh_value"


def test_clean_value_passes_through():
    assert sanitize(120.5, "kwh_value", 1, 2) == (120.5, None)


@pytest.mark.parametrize(
    "field, threshold",
    [
        ("kwh_value", 10_000),
        ("P1", 10_000),
        ("p12", 10_000),
        ("T1 kWh", 10_000),
        ("S", 50_000),
        ("kVA max", 50_000),
        ("Voltage", 100_000),
        ("PF", 100_000),
    ],
)
def test_threshold_by_field_name(field, threshold):
    assert threshold_for(field) == threshold


def test_magnitude_is_checked_both_ways():
    assert is_corrupt(-20_000, "kwh_value")
    assert not is_corrupt(-9_999, "kwh_value")
    assert is_corrupt(math.nan, "S")
    assert is_corrupt(math.inf, "Voltage")


def test_corrupt_neighbour_is_not_trusted():
    value, corr = sanitize(20_000, "kwh_value", 15_000, 40)
    assert value == 40
    assert corr.reason == "Used next value (40.00)"


def test_previous_only():
    value, corr = sanitize(20_000, "kwh_value", 30, None)
    assert value == 30
    assert corr.reason == "Used previous value (30.00)"


def test_zeroed_without_valid_neighbours():
    value, corr = sanitize(20_000, "kwh_value", None, 70_000)
    assert value == 0
    assert corr.reason == "Zeroed out (no valid neighbors)"


def test_series_does_not_propagate_repairs():
    corrections = []
    out = sanitize_series([20_000, 30_000, 10], "P1", corrections)
    # first has no valid neighbour, second borrows the clean third value
    assert out == [0.0, 10, 10]
    assert len(corrections) == 2


def test_imported_fields_use_same_key_neighbours(make_reading, half_hours):
    ts = half_hours(datetime(2025, 3, 1), 3)
    readings = [
        make_reading(ts[0], 1, S=100),
        make_reading(ts[1], 1, S=60_000),
        make_reading(ts[2], 1, S=200),
    ]
    corrections = []

    out = sanitize_reading_fields(readings, corrections)

    assert [fields["S"] for _, fields in out] == [100, 150, 200]
    assert [c.field_name for c in corrections] == ["S"]


def test_oversized_integer_is_repaired_not_raised(make_reading, half_hours):
    ts = half_hours(datetime(2025, 3, 1), 3)
    huge = json.loads("1" + "0" * 400)  # JSON decodes this to an int beyond float range
    readings = [
        make_reading(ts[0], 1, P1=10),
        make_reading(ts[1], huge, P1=huge),
        make_reading(ts[2], 1, P1=20),
    ]
    corrections = []

    out = sanitize_reading_fields(readings, corrections, meter_id=4, meter_number="M4")

    assert [kwh for kwh, _ in out] == [1, 1, 1]
    assert [fields["P1"] for _, fields in out] == [10, 15, 20]
    assert sorted(c.field_name for c in corrections) == ["P1", "kwh_value"]
    assert all(math.isinf(c.original_value) for c in corrections)


def test_non_mapping_imported_fields_are_ignored(half_hours):
    ts = half_hours(datetime(2025, 3, 1), 2)
    readings = [
        {"reading_timestamp": ts[0], "kwh_value": 5, "imported_fields": [1, 2, 3]},
        {"reading_timestamp": ts[1], "kwh_value": 6, "imported_fields": None},
    ]
    corrections = []

    assert sanitize_reading_fields(readings, corrections) == [(5, {}), (6, {})]
    assert corrections == []
