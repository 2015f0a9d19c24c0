from __future__ import annotations

import pytest

from pulsebridge.readings import (
    FIELD_ALIASES,
    CanonicalReading,
    build_payload,
    normalize,
    resolve_user_id,
    should_forward,
)


@pytest.mark.parametrize(
    "raw",
    [
        {"heart_rate": 72, "spo2": 98},
        {"heartRate": 72, "SpO2": 98},
        {"bpm": 72, "oxygen": 98},
        {"hr": 72, "spo2": 98},
    ],
)
def test_alias_variants_normalize_identically(raw: dict[str, int]) -> None:
    assert normalize(raw) == CanonicalReading(heart_rate=72, spo2=98, ir=0, red=0)


def test_normalize_empty_payload_is_all_zeros() -> None:
    assert normalize({}).as_dict() == {"heart_rate": 0, "spo2": 0, "ir": 0, "red": 0}


@pytest.mark.parametrize("raw", [None, [], "warming up", 42])
def test_normalize_non_object_bodies_degrade_to_zeros(raw: object) -> None:
    assert normalize(raw) == CanonicalReading()


def test_first_present_alias_wins_and_zero_falls_through() -> None:
    reading = normalize({"heart_rate": 0, "heartRate": 0, "bpm": 64, "hr": 99, "IR": 51234, "RED": 48001})
    assert reading.heart_rate == 64
    assert reading.ir == 51234
    assert reading.red == 48001


def test_primary_name_takes_priority_over_aliases() -> None:
    reading = normalize({"spo2": 97, "SpO2": 91, "oxygen": 90, "ir": 10, "IR": 20})
    assert reading.spo2 == 97
    assert reading.ir == 10


def test_unusable_values_are_treated_as_absent() -> None:
    reading = normalize(
        {
            "heart_rate": True,
            "heartRate": -5,
            "bpm": float("nan"),
            "hr": "70",
            "spo2": "n/a",
            "oxygen": 96.5,
            "ir": None,
            "red": {"raw": 1},
        }
    )
    assert reading == CanonicalReading(heart_rate=70, spo2=96.5, ir=0, red=0)


def test_alias_table_covers_all_canonical_fields() -> None:
    assert set(FIELD_ALIASES) == set(CanonicalReading().as_dict())
    for field_name, aliases in FIELD_ALIASES.items():
        assert aliases[0] == field_name


@pytest.mark.parametrize(
    ("reading", "expected"),
    [
        (CanonicalReading(), False),
        (CanonicalReading(ir=50000, red=40000), False),
        (CanonicalReading(heart_rate=72), True),
        (CanonicalReading(spo2=98), True),
        (CanonicalReading(heart_rate=72, spo2=98, ir=1, red=1), True),
    ],
)
def test_should_forward_requires_heart_rate_or_spo2(reading: CanonicalReading, expected: bool) -> None:
    assert should_forward(reading) is expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("42", 42),
        (" 42 ", 42),
        ("42.0", 42),
        (None, 1),
        ("", 1),
        ("abc", 1),
        ("0", 1),
        ("1.5", 1),
    ],
)
def test_resolve_user_id_defaults_to_one(raw: str | None, expected: int) -> None:
    assert resolve_user_id(raw) == expected


def test_build_payload_carries_user_and_reading() -> None:
    payload = build_payload(CanonicalReading(heart_rate=72, spo2=98, ir=3, red=4), user_id=7)
    assert payload.as_dict() == {"user_id": 7, "heart_rate": 72, "spo2": 98, "ir": 3, "red": 4}
