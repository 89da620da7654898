"""
Clinical text helpers used while ingesting census rows.

- Initials are derived from the exported full name; the full name itself
  is never persisted.
- One-to-one nursing is flagged when the clinical text mentions a device
  that needs a dedicated nurse. Ventilator/intubation alone does NOT
  require 1:1 nursing and is deliberately absent from the keyword list.
- When AI predictions are merged later, the provenance of the one-to-one
  flag is combined with the keyword provenance (see merge_one_to_one_source).
"""

from __future__ import annotations

import re
from enum import Enum
from typing import List, Optional


class OneToOneSource(str, Enum):
    """Where a one-to-one nursing flag came from."""
    KEYWORD = "keyword"
    AI = "ai"
    BOTH = "both"


# Device keywords, checked against upper-cased clinical text
ONE_TO_ONE_KEYWORDS = ["ECMO", "CVVH", "IMPELLA", "IABP"]

# "Johnson, Bob (60 y.o. M)" -> "Johnson, Bob"
_AGE_SEX_SUFFIX = re.compile(r"\s*\(\d+\s*y\.?o\.?\s*[MF]?\)\s*", re.IGNORECASE)


def name_to_initials(full_name: str) -> str:
    """
    Convert a full name to initials.

        "Johnson, Bob"            -> "JB"
        "Bob Johnson"             -> "BJ"
        "Johnson, Bob (60 y.o. M)" -> "JB"
    """
    name = _AGE_SEX_SUFFIX.sub("", full_name or "")

    if "," in name:
        last, first = [part.strip() for part in name.split(",", 1)]
        return f"{last[:1]}{first[:1]}".upper()

    parts = name.split()
    return "".join(part[0].upper() for part in parts)


def detect_one_to_one_devices(*texts: Optional[str]) -> List[str]:
    """
    Return the one-to-one device keywords mentioned in any of the texts.

    Keywords are returned in ONE_TO_ONE_KEYWORDS order, each at most once.
    """
    upper = " ".join(t for t in texts if t).upper()
    if not upper:
        return []
    return [keyword for keyword in ONE_TO_ONE_KEYWORDS if keyword in upper]


def merge_one_to_one_source(
    stored: Optional[OneToOneSource],
    asserted: Optional[bool],
) -> Optional[OneToOneSource]:
    """
    Combine the stored one-to-one provenance with an AI assertion.

    An AI assertion of True upgrades "keyword" to "both" and an empty source
    to "ai". Every other combination keeps the stored source.
    """
    if asserted is True:
        if stored == OneToOneSource.KEYWORD:
            return OneToOneSource.BOTH
        if stored is None:
            return OneToOneSource.AI
    return stored
