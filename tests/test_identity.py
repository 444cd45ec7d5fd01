import pytest

from fleetauth.service.identity import (
    driver_subject,
    is_plate,
    normalize_plate,
    plate_from_subject,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("T991 EFN", "T991 EFN"),
        ("T991-EFN", "T991 EFN"),
        ("T991EFN", "T991 EFN"),
        ("t991 efn", "T991 EFN"),
        ("T1234 ABC", "T1234 ABC"),
        (" T123-xyz ", "T123 XYZ"),
    ],
)
def test_normalize_plate(raw, expected):
    assert normalize_plate(raw) == expected
    assert is_plate(raw)


@pytest.mark.parametrize("raw", ["jdoe", "T99 EFN", "T12345 EFN", "T991 EF", "X991 EFN", "T991  EFN"])
def test_non_plates(raw):
    assert normalize_plate(raw) is None
    assert not is_plate(raw)


def test_driver_subject_round_trip():
    assert driver_subject("t991-efn") == "driver_T991_EFN"
    assert plate_from_subject("driver_T991_EFN") == "T991 EFN"


def test_standard_subject_is_not_a_plate():
    assert plate_from_subject("4f6c2a3e-0000-4000-8000-000000000000") is None
