from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Mapping, TypeAlias

# Ordered candidates per canonical field; first present non-zero alias wins.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "heart_rate": ("heart_rate", "heartRate", "bpm", "hr"),
    "spo2": ("spo2", "SpO2", "oxygen"),
    "ir": ("ir", "IR"),
    "red": ("red", "RED"),
}

DEFAULT_USER_ID = 1

Number: TypeAlias = int | float


@dataclass(frozen=True)
class CanonicalReading:
    heart_rate: Number = 0
    spo2: Number = 0
    ir: Number = 0
    red: Number = 0

    def as_dict(self) -> dict[str, Number]:
        return asdict(self)


@dataclass(frozen=True)
class SyncPayload:
    user_id: int
    heart_rate: Number
    spo2: Number
    ir: Number
    red: Number

    def as_dict(self) -> dict[str, Number]:
        return asdict(self)


def _coerce_metric(value: Any) -> Number | None:
    """Return a usable positive metric, or None when the value should be skipped."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError:
                return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value <= 0:
        return None
    return value


def normalize(raw: Any) -> CanonicalReading:
    """Map a firmware-specific readings body onto the canonical four fields.

    Missing, zero or unusable values fall back to 0. A warming-up sensor
    legitimately reports zeros, so nothing here raises.
    """

    source: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    values: dict[str, Number] = {}
    for field_name, aliases in FIELD_ALIASES.items():
        picked: Number = 0
        for alias in aliases:
            coerced = _coerce_metric(source.get(alias))
            if coerced is not None:
                picked = coerced
                break
        values[field_name] = picked
    return CanonicalReading(**values)


def should_forward(reading: CanonicalReading) -> bool:
    """Readings with neither heart rate nor SpO2 are sensor warm-up noise."""

    return reading.heart_rate > 0 or reading.spo2 > 0


def resolve_user_id(raw: str | None) -> int:
    if raw is None:
        return DEFAULT_USER_ID
    try:
        parsed = float(str(raw).strip())
    except ValueError:
        return DEFAULT_USER_ID
    if not math.isfinite(parsed) or not parsed.is_integer() or parsed == 0:
        return DEFAULT_USER_ID
    return int(parsed)


def build_payload(reading: CanonicalReading, *, user_id: int) -> SyncPayload:
    return SyncPayload(
        user_id=user_id,
        heart_rate=reading.heart_rate,
        spo2=reading.spo2,
        ir=reading.ir,
        red=reading.red,
    )
