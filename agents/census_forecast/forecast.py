"""
Census Forecast Agent - Multi-Day Census Simulation

Projects each unit's census N days ahead from the predictions stored on the
active patients, optionally merged with the procedure admissions feed.

================================================================================
SIMULATION
================================================================================

    day 0   projected = current census (unmodified)
    day d   discharges(d) = patients with projected_discharge_days == d
            downgrades(d) = ICU only: predicted_downgrade_date == anchor + d
            running(d)    = max(0, running(d-1) - discharges(d) - downgrades(d))
            projected(d)  = running(d) + admits(d)
            net_change(d) = projected(d) - projected(d-1)

The anchor date is the latest import's upload date for every comparison,
so the forecast depends only on stored data and not on when it is read.

Admits only exist in the combined forecast. A procedure patient who will be
admitted occupies its ICU bucket for icu_days starting at the visit day and
then its floor bucket for floor_days. Admits are an occupancy overlay: they
are not fed back into the running census.

The combined forecast groups units by canonical name (see units.canonicalize)
so aliased names from the census and the feed land in the same bucket.
================================================================================
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from .config import settings
from .database import CensusDatabase, CensusPatient
from .queries import select_active_patients, select_latest_import
from .schemas import ProcedureAdmission
from .units import (
    CANONICAL_FLOOR,
    CANONICAL_ICU,
    UnitType,
    canonical_units,
    canonicalize,
    classify,
)

logger = logging.getLogger(__name__)


@dataclass
class ForecastDay:
    day: int
    date: date
    projected_census: int
    predicted_discharges: int
    predicted_downgrades: int
    predicted_admits: int
    net_change: int


@dataclass
class UnitForecast:
    unit_name: str
    unit_type: UnitType
    current_census: int
    days: List[ForecastDay] = field(default_factory=list)


@dataclass
class CensusForecast:
    hospital_id: str
    horizon_days: int
    has_import: bool = False
    anchor_date: Optional[date] = None
    combined: bool = False
    units: List[UnitForecast] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_frame(self) -> pd.DataFrame:
        """One row per unit and day, for export and charting."""
        records = [
            {"unit_name": unit.unit_name, "unit_type": unit.unit_type.value, **asdict(day)}
            for unit in self.units
            for day in unit.days
        ]
        columns = [
            "unit_name", "unit_type", "day", "date", "projected_census",
            "predicted_discharges", "predicted_downgrades", "predicted_admits", "net_change",
        ]
        return pd.DataFrame.from_records(records, columns=columns)


def simulate_unit(
    unit_name: str,
    unit_type: UnitType,
    patients: Sequence[CensusPatient],
    anchor: date,
    horizon_days: int,
    admits_by_day: Optional[Dict[int, int]] = None,
) -> UnitForecast:
    """Run the day-by-day census projection for one unit."""
    admits_by_day = admits_by_day or {}
    is_icu = unit_type == UnitType.ICU
    current = len(patients)

    forecast = UnitForecast(unit_name=unit_name, unit_type=unit_type, current_census=current)
    forecast.days.append(ForecastDay(
        day=0,
        date=anchor,
        projected_census=current,
        predicted_discharges=0,
        predicted_downgrades=0,
        predicted_admits=0,
        net_change=0,
    ))

    running = current
    previous = current
    for d in range(1, horizon_days + 1):
        day_date = anchor + timedelta(days=d)
        discharges = sum(1 for p in patients if p.projected_discharge_days == d)
        downgrades = (
            sum(1 for p in patients if p.predicted_downgrade_date == day_date) if is_icu else 0
        )
        running = max(0, running - discharges - downgrades)
        admits = admits_by_day.get(d, 0)
        projected = running + admits

        forecast.days.append(ForecastDay(
            day=d,
            date=day_date,
            projected_census=projected,
            predicted_discharges=discharges,
            predicted_downgrades=downgrades,
            predicted_admits=admits,
            net_change=projected - previous,
        ))
        previous = projected

    return forecast


def distribute_admissions(
    admissions: Iterable[ProcedureAdmission],
    anchor: date,
    horizon_days: int,
) -> Dict[str, Counter]:
    """
    Spread will-admit procedure patients over canonical unit buckets.

    Returns:
        canonical unit name -> Counter(day index -> occupants)
    """
    admits: Dict[str, Counter] = defaultdict(Counter)

    for admission in admissions:
        if not admission.will_admit:
            continue
        start = (admission.visit_date - anchor).days
        if start < 0 or start > horizon_days:
            continue

        icu_unit = canonicalize(admission.icu_unit or CANONICAL_ICU)
        floor_unit = canonicalize(admission.floor_unit or CANONICAL_FLOOR)

        for offset in range(admission.icu_days):
            day = start + offset
            if 1 <= day <= horizon_days:
                admits[icu_unit][day] += 1

        floor_start = start + admission.icu_days
        for offset in range(admission.floor_days):
            day = floor_start + offset
            if 1 <= day <= horizon_days:
                admits[floor_unit][day] += 1

    return admits


def _sorted_units(units: List[UnitForecast]) -> List[UnitForecast]:
    return sorted(units, key=lambda u: (u.unit_type != UnitType.ICU, -u.current_census, u.unit_name))


class CensusForecaster:
    """N-day census projections for a hospital."""

    def __init__(
        self,
        database: CensusDatabase,
        allowed_horizons: Optional[Sequence[int]] = None,
        default_horizon: Optional[int] = None,
    ) -> None:
        self.database = database
        self.allowed_horizons = tuple(allowed_horizons or settings.forecast_allowed_horizons)
        self.default_horizon = default_horizon or settings.forecast_default_horizon_days

    def _resolve_horizon(self, horizon_days: Optional[int]) -> int:
        horizon = horizon_days if horizon_days is not None else self.default_horizon
        if horizon not in self.allowed_horizons:
            raise ValueError(
                f"Unsupported forecast horizon {horizon}; expected one of {list(self.allowed_horizons)}"
            )
        return horizon

    def forecast(self, hospital_id: str, horizon_days: Optional[int] = None) -> CensusForecast:
        """
        Project the census of the latest import, unit by raw unit name.

        Raises:
            ValueError: If the horizon is not an allowed value
        """
        horizon = self._resolve_horizon(horizon_days)

        with self.database.session() as session:
            latest = select_latest_import(session, hospital_id)
            if latest is None:
                logger.warning(f"No census import for hospital {hospital_id}; empty forecast")
                return CensusForecast(hospital_id=hospital_id, horizon_days=horizon)
            patients = select_active_patients(session, hospital_id, latest.id)

        anchor = latest.upload_date
        by_unit: Dict[str, List[CensusPatient]] = defaultdict(list)
        for patient in patients:
            by_unit[patient.current_unit_name].append(patient)

        units = [
            simulate_unit(name, UnitType(members[0].unit_type), members, anchor, horizon)
            for name, members in by_unit.items()
        ]

        return CensusForecast(
            hospital_id=hospital_id,
            horizon_days=horizon,
            has_import=True,
            anchor_date=anchor,
            units=_sorted_units(units),
        )

    def combined_forecast(
        self,
        hospital_id: str,
        admissions: Iterable[ProcedureAdmission],
        horizon_days: Optional[int] = None,
    ) -> CensusForecast:
        """
        Project the census merged with the procedure admissions feed.

        Uses every active patient of the hospital, grouped by canonical unit.
        The two canonical units are always present; units named only by the
        feed get their own bucket.

        Raises:
            ValueError: If the horizon is not an allowed value
        """
        horizon = self._resolve_horizon(horizon_days)

        with self.database.session() as session:
            latest = select_latest_import(session, hospital_id)
            if latest is None:
                logger.warning(f"No census import for hospital {hospital_id}; empty forecast")
                return CensusForecast(hospital_id=hospital_id, horizon_days=horizon, combined=True)
            patients = select_active_patients(session, hospital_id)

        anchor = latest.upload_date
        admits = distribute_admissions(admissions, anchor, horizon)

        buckets: Dict[str, List[CensusPatient]] = {name: [] for name, _ in canonical_units()}
        for patient in patients:
            buckets.setdefault(canonicalize(patient.current_unit_name), []).append(patient)
        for unit_name in admits:
            buckets.setdefault(unit_name, [])

        units = [
            simulate_unit(
                name,
                classify(name).unit_type,
                members,
                anchor,
                horizon,
                admits_by_day=admits.get(name),
            )
            for name, members in buckets.items()
        ]

        logger.info(
            f"Combined forecast for hospital {hospital_id}: {len(patients)} patients, "
            f"{sum(sum(c.values()) for c in admits.values())} admit-days over {horizon} days"
        )

        return CensusForecast(
            hospital_id=hospital_id,
            horizon_days=horizon,
            has_import=True,
            anchor_date=anchor,
            combined=True,
            units=_sorted_units(units),
        )
