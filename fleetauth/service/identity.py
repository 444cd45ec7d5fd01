"""Identifier classification for standard users and vehicle-plate drivers."""

from __future__ import annotations

import re
from typing import Optional

# T + 3-4 digits, optional space or hyphen, 3 letters: "T991 EFN", "T991-EFN", "T1234ABC"
PLATE_PATTERN = re.compile(r"^T(\d{3,4})[-\s]?([A-Z]{3})$", re.IGNORECASE)

DRIVER_ID_PREFIX = "driver_"


def is_plate(identifier: str) -> bool:
    return bool(PLATE_PATTERN.match(identifier.strip()))


def normalize_plate(identifier: str) -> Optional[str]:
    """Return the canonical space-separated plate, or None if not a plate.

    Space, hyphen and unseparated variants of the same plate all normalise to
    the same value, so lookups never depend on how the caller typed it.
    """
    match = PLATE_PATTERN.match(identifier.strip())
    if not match:
        return None
    digits, letters = match.groups()
    return f"T{digits} {letters.upper()}"


def driver_subject(plate: str) -> str:
    """Token subject for a driver account: ``driver_T991_EFN``."""
    canonical = normalize_plate(plate) or plate.strip().upper()
    return DRIVER_ID_PREFIX + canonical.replace(" ", "_")


def plate_from_subject(subject: str) -> Optional[str]:
    """Reverse of :func:`driver_subject`; None for non-driver subjects."""
    if not subject.startswith(DRIVER_ID_PREFIX):
        return None
    return normalize_plate(subject[len(DRIVER_ID_PREFIX):].replace("_", " "))
