"""
Input schemas shared by the census engine and the REST layer.

PatientRow and PredictionPatch use pydantic's set-field tracking as an
explicit present/absent marker: a field the caller supplied (even as null)
is in `model_fields_set` and overwrites the stored value; a field the caller
left out is absent and leaves the stored value untouched.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class PatientRow(BaseModel):
    """One patient row of an uploaded census file."""

    mrn: str = Field(min_length=1, description="Medical record number")
    patient_name: str = Field(description="Full name; only initials are kept")
    unit_name: str = Field(min_length=1, description="Raw unit name from the export")
    admission_date: Optional[date] = None
    census_date: Optional[date] = None

    service: Optional[str] = None
    los_days: Optional[int] = Field(default=None, ge=0)
    attending_doctor: Optional[str] = None

    # Demographics
    sex: Optional[str] = None
    age: Optional[int] = Field(default=None, ge=0, le=130)
    language: Optional[str] = None

    # Clinical input
    general_comments: Optional[str] = None

    # Optional AI-predicted fields
    primary_diagnosis: Optional[str] = None
    clinical_status: Optional[str] = None
    disposition_considerations: Optional[str] = None
    pending_procedures: Optional[str] = None
    projected_discharge_days: Optional[int] = Field(default=None, ge=0)
    predicted_downgrade_date: Optional[date] = None
    predicted_downgrade_unit: Optional[str] = None
    requires_one_to_one: Optional[bool] = None
    one_to_one_devices: Optional[List[str]] = None

    @field_validator("mrn", "unit_name")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    def present_fields(self) -> Dict[str, Any]:
        """Fields the uploader actually supplied."""
        return self.model_dump(exclude_unset=True)

    @property
    def carries_prediction(self) -> bool:
        return self.projected_discharge_days is not None


class PredictionPatch(BaseModel):
    """AI-derived fields merged into a stored patient."""

    primary_diagnosis: Optional[str] = None
    clinical_status: Optional[str] = None
    disposition_considerations: Optional[str] = None
    pending_procedures: Optional[str] = None
    los_reasoning: Optional[str] = None
    trajectory: Optional[str] = None
    projected_discharge_days: Optional[int] = Field(default=None, ge=0)
    projected_downgrade_days: Optional[int] = Field(default=None, ge=0)
    predicted_downgrade_date: Optional[date] = None
    predicted_downgrade_unit: Optional[str] = None
    requires_one_to_one: Optional[bool] = None
    one_to_one_devices: Optional[List[str]] = None

    class Config:
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "primary_diagnosis": "68M s/p CABG x3 POD2, uncomplicated.",
                "projected_discharge_days": 4,
                "predicted_downgrade_date": "2024-01-16",
                "predicted_downgrade_unit": "7C",
                "requires_one_to_one": False,
            }
        }

    def present_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ProcedureAdmission(BaseModel):
    """One record of the external procedure admissions feed."""

    mrn: str
    visit_date: date
    will_admit: bool
    icu_days: int = Field(default=0, ge=0)
    icu_unit: Optional[str] = None
    floor_days: int = Field(default=0, ge=0)
    floor_unit: Optional[str] = None
