"""
Read-side queries over the census store.

"The latest import" of a hospital is always resolved here by ordering
(newest active import first) at read time; it is never cached.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import (
    CensusDatabase,
    CensusImport,
    CensusPatient,
    PatientStatus,
    TransferEvent,
    UnitMapping,
)
from .units import UnitType

logger = logging.getLogger(__name__)


def select_latest_import(session: Session, hospital_id: str) -> Optional[CensusImport]:
    """Most recently created active import of a hospital, if any."""
    return session.scalars(
        select(CensusImport)
        .where(
            CensusImport.hospital_id == hospital_id,
            CensusImport.is_active.is_(True),
        )
        .order_by(CensusImport.created_at.desc(), CensusImport.id.desc())
        .limit(1)
    ).first()


def select_active_patients(
    session: Session,
    hospital_id: str,
    import_id: Optional[int] = None,
) -> List[CensusPatient]:
    """Active patients of a hospital, optionally limited to one import."""
    query = select(CensusPatient).where(
        CensusPatient.hospital_id == hospital_id,
        CensusPatient.status == PatientStatus.ACTIVE,
    )
    if import_id is not None:
        query = query.where(CensusPatient.import_id == import_id)
    return list(session.scalars(query.order_by(CensusPatient.id)).all())


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class UnitCensus:
    unit_name: str
    unit_type: UnitType
    patient_count: int
    avg_projected_days: int
    total_projected_days: int
    patients_with_predictions: int


@dataclass
class CensusSummary:
    units: List[UnitCensus] = field(default_factory=list)
    total_patients: int = 0
    icu_patients: int = 0
    floor_patients: int = 0
    census_date: Optional[date] = None
    imported_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize_by_unit(patients: List[CensusPatient]) -> List[UnitCensus]:
    """
    Group patients by raw unit name.

    The average projected stay only counts patients with a non-zero
    projection and is rounded half up.
    """
    if not patients:
        return []

    frame = pd.DataFrame(
        {
            "unit_name": [p.current_unit_name for p in patients],
            "unit_type": [UnitType(p.unit_type) for p in patients],
            "projected": [p.projected_discharge_days for p in patients],
        }
    )
    frame["projected"] = pd.to_numeric(frame["projected"], errors="coerce").fillna(0)
    frame["has_prediction"] = frame["projected"] != 0

    grouped = frame.groupby("unit_name", sort=False).agg(
        unit_type=("unit_type", "first"),
        patient_count=("unit_name", "size"),
        total_projected_days=("projected", "sum"),
        patients_with_predictions=("has_prediction", "sum"),
    )

    units = []
    for unit_name, row in grouped.iterrows():
        with_predictions = int(row["patients_with_predictions"])
        total = int(row["total_projected_days"])
        units.append(UnitCensus(
            unit_name=str(unit_name),
            unit_type=row["unit_type"],
            patient_count=int(row["patient_count"]),
            avg_projected_days=round_half_up(total / with_predictions) if with_predictions else 0,
            total_projected_days=total,
            patients_with_predictions=with_predictions,
        ))

    units.sort(key=lambda u: (u.unit_type != UnitType.ICU, -u.patient_count, u.unit_name))
    return units


class CensusQueries:
    """Read-only views the REST layer exposes to collaborators."""

    def __init__(self, database: CensusDatabase) -> None:
        self.database = database

    def latest_import(self, hospital_id: str) -> Optional[CensusImport]:
        with self.database.session() as session:
            return select_latest_import(session, hospital_id)

    def list_imports(self, hospital_id: str, limit: int = 50) -> List[CensusImport]:
        with self.database.session() as session:
            return list(session.scalars(
                select(CensusImport)
                .where(CensusImport.hospital_id == hospital_id)
                .order_by(CensusImport.created_at.desc(), CensusImport.id.desc())
                .limit(limit)
            ).all())

    def census_summary(self, hospital_id: str) -> CensusSummary:
        """Current census by unit, taken from the latest import."""
        with self.database.session() as session:
            latest = select_latest_import(session, hospital_id)
            if latest is None:
                logger.warning(f"No census import for hospital {hospital_id}")
                return CensusSummary()

            patients = select_active_patients(session, hospital_id, latest.id)

        return CensusSummary(
            units=summarize_by_unit(patients),
            total_patients=len(patients),
            icu_patients=sum(1 for p in patients if p.unit_type == UnitType.ICU),
            floor_patients=sum(1 for p in patients if p.unit_type == UnitType.FLOOR),
            census_date=latest.upload_date,
            imported_at=latest.created_at,
        )

    def patients_by_date(
        self,
        hospital_id: str,
        census_date: date,
        unit_name: Optional[str] = None,
    ) -> List[CensusPatient]:
        with self.database.session() as session:
            query = select(CensusPatient).where(
                CensusPatient.hospital_id == hospital_id,
                CensusPatient.census_date == census_date,
                CensusPatient.status == PatientStatus.ACTIVE,
            )
            if unit_name:
                query = query.where(CensusPatient.current_unit_name == unit_name)
            return list(session.scalars(query.order_by(CensusPatient.id)).all())

    def patient_history(self, hospital_id: str, mrn: str) -> List[TransferEvent]:
        """Transfer ledger of one MRN, newest first."""
        with self.database.session() as session:
            return list(session.scalars(
                select(TransferEvent)
                .where(
                    TransferEvent.hospital_id == hospital_id,
                    TransferEvent.mrn == mrn,
                )
                .order_by(TransferEvent.created_at.desc(), TransferEvent.id.desc())
            ).all())

    def unit_mappings(self, hospital_id: str) -> List[UnitMapping]:
        with self.database.session() as session:
            return list(session.scalars(
                select(UnitMapping)
                .where(UnitMapping.hospital_id == hospital_id)
                .order_by(UnitMapping.raw_unit_name)
            ).all())
