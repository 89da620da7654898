"""
Unit classification and canonical unit names.

Census exports name units inconsistently ("CCU", "CCU-2", "Cardiac ICU",
"N07E", "7E STEPDOWN", ...). Two deterministic helpers live here:

- classify():     raw unit name -> icu / floor, used for every census row
- canonicalize(): raw unit name -> canonical bucket, used only when the
                  census is merged with the procedure admissions feed

Both are substring tests on the upper-cased name. Markers are checked in
the order listed below with no further tie-break, so a name containing both
an ICU marker and a floor alias (e.g. "7E ICU OVERFLOW") is ICU.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple


class UnitType(str, Enum):
    """Coarse unit acuity used for staffing ratios and downgrades."""
    ICU = "icu"
    FLOOR = "floor"


# Substrings that mark a raw unit name as an ICU
ICU_MARKERS: Tuple[str, ...] = ("CCU", "CSIU", "CVU", "ICU", "CICU", "MSM")

# Alias families folded together by canonicalize()
ICU_ALIASES: Tuple[str, ...] = ("CCU", "CSIU", "CVU", "CICU", "ICU", "MSM")
FLOOR_ALIASES: Tuple[str, ...] = ("N07E", "7E", "N7E")

CANONICAL_ICU = "CCU"
CANONICAL_FLOOR = "N07E"


@dataclass(frozen=True)
class UnitClassification:
    """Result of classifying a raw unit name."""
    unit_type: UnitType
    is_icu: bool


def classify(raw_name: str) -> UnitClassification:
    """
    Classify a raw unit name as ICU or floor.

    Args:
        raw_name: Unit name exactly as it appears in the census export

    Returns:
        UnitClassification with the unit type and ICU flag
    """
    upper = (raw_name or "").upper()
    is_icu = any(marker in upper for marker in ICU_MARKERS)
    return UnitClassification(
        unit_type=UnitType.ICU if is_icu else UnitType.FLOOR,
        is_icu=is_icu,
    )


def canonicalize(raw_name: str) -> str:
    """
    Fold aliased unit names onto a canonical label.

    ICU aliases become "CCU", floor aliases become "N07E". Names matching
    neither family (and empty names) are returned unchanged.
    """
    if not raw_name:
        return raw_name

    upper = raw_name.upper().strip()

    for alias in ICU_ALIASES:
        if alias in upper:
            return CANONICAL_ICU

    for alias in FLOOR_ALIASES:
        if alias in upper:
            return CANONICAL_FLOOR

    return raw_name


def canonical_units() -> List[Tuple[str, UnitType]]:
    """Canonical buckets every hospital forecast is seeded with."""
    return [
        (CANONICAL_ICU, UnitType.ICU),
        (CANONICAL_FLOOR, UnitType.FLOOR),
    ]

