"""
Nurse staffing derivation from the current census.

For each unit the calculator projects the census at the end of the AM and PM
shifts and converts it to registered nurses:

    amDischarges = projected discharge in <= 1 day
    pmDischarges = projected discharge in exactly 2 days
    amDowngrades = ICU only: downgrade predicted for the census date,
                   or projected discharge in <= 2 days

    amEndCensus  = max(0, current - amDischarges - amDowngrades)
    pmEndCensus  = max(0, current - amDischarges - pmDischarges - amDowngrades)

One-to-one patients are taken out of the ratio math and each gets a
dedicated nurse:

    rnNeeded = ceil(max(0, endCensus - oneToOne) / ratio)
    totalRn  = rnNeeded + oneToOne

An ICU patient projected to leave within a day counts both as a discharge
and as a downgrade; the end-of-shift census is floored at zero.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .config import settings
from .database import CensusDatabase
from .queries import select_active_patients, select_latest_import
from .units import UnitType

logger = logging.getLogger(__name__)


class StaffedPatient(Protocol):
    projected_discharge_days: Optional[int]
    predicted_downgrade_date: Optional[date]
    requires_one_to_one: bool


@dataclass
class UnitStaffing:
    """Staffing projection of one unit."""
    unit_name: str
    unit_type: UnitType
    current_census: int
    one_to_one_count: int
    nurse_ratio: int
    am_discharges: int
    pm_discharges: int
    am_downgrades: int
    am_end_census: int
    pm_end_census: int
    am_rn_needed: int
    pm_rn_needed: int
    total_am_rn: int
    total_pm_rn: int


@dataclass
class StaffingTotals:
    current_census: int = 0
    one_to_one_count: int = 0
    am_discharges: int = 0
    pm_discharges: int = 0
    am_downgrades: int = 0
    am_end_census: int = 0
    pm_end_census: int = 0
    am_rn_needed: int = 0
    pm_rn_needed: int = 0
    total_am_rn: int = 0
    total_pm_rn: int = 0

    def add(self, unit: UnitStaffing) -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(unit, name))


@dataclass
class StaffingReport:
    hospital_id: str
    has_import: bool = False
    import_id: Optional[int] = None
    census_date: Optional[date] = None
    units: List[UnitStaffing] = field(default_factory=list)
    totals: StaffingTotals = field(default_factory=StaffingTotals)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_unit_staffing(
    unit_name: str,
    unit_type: UnitType,
    patients: Sequence[StaffedPatient],
    census_date: Optional[date],
    nurse_ratio: int,
) -> UnitStaffing:
    """Apply the shift projection and nurse ratio to one unit's patients."""
    is_icu = unit_type == UnitType.ICU
    current = len(patients)
    one_to_one = sum(1 for p in patients if p.requires_one_to_one)

    am_discharges = 0
    pm_discharges = 0
    am_downgrades = 0
    for p in patients:
        days = p.projected_discharge_days
        if days is not None and days <= 1:
            am_discharges += 1
        if days == 2:
            pm_discharges += 1
        if is_icu and (
            (census_date is not None and p.predicted_downgrade_date == census_date)
            or (days is not None and days <= 2)
        ):
            am_downgrades += 1

    am_end = max(0, current - am_discharges - am_downgrades)
    pm_end = max(0, current - am_discharges - pm_discharges - am_downgrades)

    am_rn = math.ceil(max(0, am_end - one_to_one) / nurse_ratio)
    pm_rn = math.ceil(max(0, pm_end - one_to_one) / nurse_ratio)

    return UnitStaffing(
        unit_name=unit_name,
        unit_type=unit_type,
        current_census=current,
        one_to_one_count=one_to_one,
        nurse_ratio=nurse_ratio,
        am_discharges=am_discharges,
        pm_discharges=pm_discharges,
        am_downgrades=am_downgrades,
        am_end_census=am_end,
        pm_end_census=pm_end,
        am_rn_needed=am_rn,
        pm_rn_needed=pm_rn,
        total_am_rn=am_rn + one_to_one,
        total_pm_rn=pm_rn + one_to_one,
    )


class StaffingCalculator:
    """Derives AM/PM nurse needs per unit from the latest import."""

    def __init__(
        self,
        database: CensusDatabase,
        icu_ratio: Optional[int] = None,
        floor_ratio: Optional[int] = None,
    ) -> None:
        self.database = database
        self.icu_ratio = icu_ratio or settings.icu_nurse_ratio
        self.floor_ratio = floor_ratio or settings.floor_nurse_ratio

    def ratio_for(self, unit_type: UnitType) -> int:
        return self.icu_ratio if unit_type == UnitType.ICU else self.floor_ratio

    def calculate(self, hospital_id: str) -> StaffingReport:
        """
        Staffing predictions by unit and shift.

        Returns an empty report (has_import=False) when the hospital has no
        import yet.
        """
        with self.database.session() as session:
            latest = select_latest_import(session, hospital_id)
            if latest is None:
                logger.warning(f"No census import for hospital {hospital_id}; empty staffing")
                return StaffingReport(hospital_id=hospital_id)
            patients = select_active_patients(session, hospital_id, latest.id)

        by_unit: Dict[str, list] = defaultdict(list)
        for patient in patients:
            by_unit[patient.current_unit_name].append(patient)

        units = []
        for unit_name, unit_patients in by_unit.items():
            unit_type = UnitType(unit_patients[0].unit_type)
            units.append(compute_unit_staffing(
                unit_name,
                unit_type,
                unit_patients,
                latest.upload_date,
                self.ratio_for(unit_type),
            ))

        units.sort(key=lambda u: (u.unit_type != UnitType.ICU, -u.current_census, u.unit_name))

        totals = StaffingTotals()
        for unit in units:
            totals.add(unit)

        return StaffingReport(
            hospital_id=hospital_id,
            has_import=True,
            import_id=latest.id,
            census_date=latest.upload_date,
            units=units,
            totals=totals,
        )
