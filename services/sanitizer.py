# services/sanitizer.py
"""
Detect and repair corrupt reading values.

A value is corrupt when its magnitude exceeds the threshold for its field:
  - energy fields (kwh_value, *kwh*, P1, P2, ...)  -> MAX_KWH_PER_READING
  - apparent power fields (*kva*, S)               -> MAX_KVA_PER_READING
  - any other imported column                      -> MAX_METADATA_VALUE

Repair never raises: neighbours are averaged when both are valid, otherwise the
single valid neighbour is copied, otherwise the value is zeroed.
"""
from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from schemas import CorrectionRecord
from services import config

logger = logging.getLogger("uvicorn")

PRIMARY_FIELD = "kwh_value"
_REGISTER_RE = re.compile(r"^p\d+$", re.IGNORECASE)


def is_energy_field(field_name: str) -> bool:
    f = field_name.lower()
    return f == PRIMARY_FIELD or "kwh" in f or bool(_REGISTER_RE.match(f))


def is_apparent_power_field(field_name: str) -> bool:
    f = field_name.lower()
    return "kva" in f or f == "s"


def threshold_for(field_name: str) -> float:
    if is_energy_field(field_name):
        return config.MAX_KWH_PER_READING
    if is_apparent_power_field(field_name):
        return config.MAX_KVA_PER_READING
    return config.MAX_METADATA_VALUE


def is_corrupt(value: float, field_name: str) -> bool:
    if not math.isfinite(value):
        return True
    return abs(value) > threshold_for(field_name)


def _valid(value: Optional[float], field_name: str) -> bool:
    return value is not None and not is_corrupt(value, field_name)


def sanitize(
    value: float,
    field_name: str,
    previous: Optional[float] = None,
    next_: Optional[float] = None,
    *,
    meter_id: int = 0,
    meter_number: str = "",
    timestamp: Optional[datetime] = None,
) -> Tuple[float, Optional[CorrectionRecord]]:
    """Return (value, None) for clean input, else (repaired value, correction)."""
    if not is_corrupt(value, field_name):
        return value, None

    prev_ok = _valid(previous, field_name)
    next_ok = _valid(next_, field_name)

    if prev_ok and next_ok:
        corrected = (previous + next_) / 2
        reason = f"Interpolated from neighbors ({previous:.2f}, {next_:.2f})"
    elif prev_ok:
        corrected = previous
        reason = f"Used previous value ({previous:.2f})"
    elif next_ok:
        corrected = next_
        reason = f"Used next value ({next_:.2f})"
    else:
        corrected = 0.0
        reason = "Zeroed out (no valid neighbors)"

    logger.warning(
        f"[sanitize] corrupt value {meter_number or meter_id} @ {timestamp} - "
        f"{field_name}: {value:,.2f} -> {corrected:.2f} ({reason})"
    )
    return corrected, CorrectionRecord(
        meter_id=meter_id,
        meter_number=meter_number,
        field_name=field_name,
        timestamp=timestamp,
        original_value=value,
        corrected_value=corrected,
        reason=reason,
    )


def _num(v: Any) -> Optional[float]:
    if v is None:
        return None
    try:
        return float(v)
    except OverflowError:
        # integer too large for a float: keep it so it is repaired as corrupt
        return math.inf
    except (TypeError, ValueError):
        return None


def _fields(row: Dict[str, Any]) -> Dict[str, Any]:
    value = row.get("imported_fields")
    return value if isinstance(value, dict) else {}


def sanitize_series(
    values: Sequence[Optional[float]],
    field_name: str,
    corrections: List[CorrectionRecord],
    *,
    meter_id: int = 0,
    meter_number: str = "",
    timestamps: Optional[Sequence[Optional[datetime]]] = None,
) -> List[float]:
    """
    Sanitize an ordered series against its immediate neighbours.
    Missing entries count as 0 for the value itself and as "no neighbour" for others.
    """
    out: List[float] = []
    n = len(values)
    for i, raw in enumerate(values):
        prev_v = values[i - 1] if i > 0 else None
        next_v = values[i + 1] if i < n - 1 else None
        corrected, corr = sanitize(
            raw if raw is not None else 0.0,
            field_name,
            prev_v,
            next_v,
            meter_id=meter_id,
            meter_number=meter_number,
            timestamp=timestamps[i] if timestamps else None,
        )
        if corr:
            corrections.append(corr)
        out.append(corrected)
    return out


def sanitize_reading_fields(
    readings: Sequence[Dict[str, Any]],
    corrections: List[CorrectionRecord],
    *,
    meter_id: int = 0,
    meter_number: str = "",
) -> List[Tuple[float, Dict[str, float]]]:
    """
    Sanitize kwh_value and every imported field of an ordered reading page.
    Returns (kwh, {field: value}) per reading, in input order.
    """
    timestamps = [r.get("reading_timestamp") for r in readings]
    kwh = sanitize_series(
        [_num(r.get(PRIMARY_FIELD)) for r in readings],
        PRIMARY_FIELD,
        corrections,
        meter_id=meter_id,
        meter_number=meter_number,
        timestamps=timestamps,
    )

    imported = [_fields(r) for r in readings]
    fields_out: List[Dict[str, float]] = [{} for _ in readings]
    n = len(readings)
    for i, row in enumerate(imported):
        for key, raw in row.items():
            prev_v = _num(imported[i - 1].get(key)) if i > 0 else None
            next_v = _num(imported[i + 1].get(key)) if i < n - 1 else None
            value, corr = sanitize(
                _num(raw) or 0.0,
                key,
                prev_v,
                next_v,
                meter_id=meter_id,
                meter_number=meter_number,
                timestamp=timestamps[i],
            )
            if corr:
                corrections.append(corr)
            fields_out[i][key] = value
    return list(zip(kwh, fields_out))
