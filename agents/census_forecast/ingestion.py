"""
Census Forecast Agent - Import Ingestion and Discharge Reconciliation

This module keeps the persistent census in step with re-uploaded rosters.

================================================================================
RECONCILIATION MODEL
================================================================================

Census exports carry no admit/transfer/discharge events, only "who is where
right now". Events are therefore inferred:

    row for a new MRN                    -> initial admission event
    row whose unit differs from stored   -> transfer event (from -> to)
    active MRN missing from an upload    -> "DISCHARGED" event (reconcile step)
    discharged MRN shows up again        -> discharge inference was wrong:
                                            its DISCHARGED events are removed
                                            and the same record is reactivated

Ingestion and reconciliation are separate calls. The uploader ingests all
rows of a file (possibly in several batches) and only then reconciles with
the full MRN list of that file.

Each call is one transaction. Inside ingest_rows every row runs in its own
SAVEPOINT so a failing row is rolled back and reported without losing the
rows around it.
================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .config import settings
from .database import (
    DISCHARGED_UNIT,
    CensusDatabase,
    CensusImport,
    CensusPatient,
    ImportStatus,
    PatientStatus,
    RecordNotFoundError,
    TransferEvent,
    UnitMapping,
    utcnow,
)
from .schemas import PatientRow, PredictionPatch
from .signals import (
    OneToOneSource,
    detect_one_to_one_devices,
    merge_one_to_one_source,
    name_to_initials,
)
from .units import UnitClassification, UnitType, classify

logger = logging.getLogger(__name__)

ASSUMED_DISCHARGE_SUMMARY = "assumed discharged or transferred off service"

# Row fields copied onto the patient record as-is when supplied
_ROW_COLUMNS = (
    "admission_date",
    "census_date",
    "los_days",
    "service",
    "attending_doctor",
    "sex",
    "age",
    "language",
    "general_comments",
    "primary_diagnosis",
    "clinical_status",
    "disposition_considerations",
    "pending_procedures",
    "projected_discharge_days",
    "predicted_downgrade_date",
    "predicted_downgrade_unit",
)

# Row fields that mark a row as carrying AI output
_AI_ROW_COLUMNS = (
    "primary_diagnosis",
    "clinical_status",
    "disposition_considerations",
    "pending_procedures",
    "projected_discharge_days",
    "predicted_downgrade_date",
    "predicted_downgrade_unit",
)

# Patch fields copied as-is; the one-to-one pair has its own merge rule
_PATCH_COLUMNS = tuple(
    name for name in PredictionPatch.model_fields
    if name not in ("requires_one_to_one", "one_to_one_devices")
)

RowInput = Union[PatientRow, Mapping[str, Any]]
AccessCheck = Callable[[str], None]


@dataclass
class IngestionResult:
    """Outcome of one ingest_rows call."""
    created: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"created": self.created, "updated": self.updated, "errors": list(self.errors)}


@dataclass
class ReconcileResult:
    """Outcome of one reconcile_discharges call."""
    discharged_count: int = 0

    def to_dict(self) -> dict:
        return {"discharged_count": self.discharged_count}


def _row_label(row: RowInput) -> str:
    if isinstance(row, PatientRow):
        return row.mrn
    mrn = str(row.get("mrn") or "").strip() if isinstance(row, Mapping) else ""
    return mrn or "unknown"


def _error_message(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'row'}: {err['msg']}"
            for err in exc.errors()
        )
    return str(exc) or exc.__class__.__name__


def _clear_one_to_one(patient: CensusPatient) -> None:
    patient.requires_one_to_one = False
    patient.one_to_one_devices = []
    patient.one_to_one_source = None


class CensusIngestor:
    """
    Writes census uploads into the patient store and transfer ledger.

    Args:
        database: Census store handle
        access_check: Optional callable invoked with the hospital id before
            any mutation; whatever it raises aborts the call untouched
        ttl_days: Days a written patient/transfer row lives (default from settings)
    """

    def __init__(
        self,
        database: CensusDatabase,
        access_check: Optional[AccessCheck] = None,
        ttl_days: Optional[int] = None,
    ) -> None:
        self.database = database
        self.access_check = access_check
        self.ttl_days = ttl_days if ttl_days is not None else settings.record_ttl_days

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _authorize(self, hospital_id: str) -> None:
        if self.access_check is not None:
            self.access_check(hospital_id)

    def _expires_at(self, now: datetime) -> datetime:
        return now + timedelta(days=self.ttl_days)

    @staticmethod
    def _get_import(session: Session, import_id: int) -> CensusImport:
        record = session.get(CensusImport, import_id)
        if record is None:
            raise RecordNotFoundError("Import", import_id)
        return record

    @staticmethod
    def _get_patient(session: Session, patient_id: int) -> CensusPatient:
        patient = session.get(CensusPatient, patient_id)
        if patient is None:
            raise RecordNotFoundError("Patient", patient_id)
        return patient

    # =========================================================================
    # IMPORTS
    # =========================================================================

    def create_import(
        self,
        hospital_id: str,
        file_name: str,
        upload_date: date,
        now: Optional[datetime] = None,
    ) -> int:
        """Register a new pending census import and return its id."""
        self._authorize(hospital_id)
        now = now or utcnow()

        with self.database.transaction() as session:
            record = CensusImport(
                hospital_id=hospital_id,
                file_name=file_name,
                upload_date=upload_date,
                patients_processed=0,
                predictions_generated=0,
                status=ImportStatus.PENDING,
                errors=None,
                created_at=now,
                is_active=True,
            )
            session.add(record)
            session.flush()
            import_id = record.id

        logger.info(f"Created census import {import_id} for hospital {hospital_id}: {file_name}")
        return import_id

    def update_import_status(
        self,
        import_id: int,
        status: ImportStatus,
        patients_processed: Optional[int] = None,
        predictions_generated: Optional[int] = None,
        errors: Optional[List[str]] = None,
    ) -> CensusImport:
        """Set an import's status and, when given, its counters and errors."""
        with self.database.transaction() as session:
            record = self._get_import(session, import_id)
            self._authorize(record.hospital_id)

            record.status = ImportStatus(status)
            if patients_processed is not None:
                record.patients_processed = patients_processed
            if predictions_generated is not None:
                record.predictions_generated = predictions_generated
            if errors is not None:
                record.errors = list(errors)
            return record

    def record_predictions(self, import_id: int, predictions_generated: int) -> CensusImport:
        """Store how many AI predictions were generated for an import."""
        with self.database.transaction() as session:
            record = self._get_import(session, import_id)
            self._authorize(record.hospital_id)
            record.predictions_generated = predictions_generated
            return record

    # =========================================================================
    # ROW INGESTION
    # =========================================================================

    def ingest_rows(
        self,
        import_id: int,
        rows: Sequence[RowInput],
        now: Optional[datetime] = None,
    ) -> IngestionResult:
        """
        Upsert a batch of census rows belonging to one import.

        Rows are processed strictly in order. A row that fails validation or
        raises while being written is rolled back on its own and reported as
        "<mrn>: <message>"; the rest of the batch continues. The import is
        marked completed either way.

        Args:
            import_id: Import the rows belong to
            rows: PatientRow instances or plain mappings (validated per row)
            now: Write time (default: current UTC time)

        Returns:
            IngestionResult with created/updated counts and row errors

        Raises:
            RecordNotFoundError: If the import does not exist
        """
        now = now or utcnow()
        expires_at = self._expires_at(now)
        result = IngestionResult()
        predictions = 0

        with self.database.transaction() as session:
            record = self._get_import(session, import_id)
            self._authorize(record.hospital_id)

            for raw in rows:
                label = _row_label(raw)
                try:
                    with session.begin_nested():
                        row = raw if isinstance(raw, PatientRow) else PatientRow.model_validate(raw)
                        created = self._upsert_patient(session, record, row, now, expires_at)
                except Exception as e:
                    message = f"{label}: {_error_message(e)}"
                    result.errors.append(message)
                    logger.warning(f"Census import {import_id} row rejected - {message}")
                    continue

                if created:
                    result.created += 1
                else:
                    result.updated += 1
                if row.carries_prediction:
                    predictions += 1

            record.patients_processed = result.created + result.updated
            record.predictions_generated = predictions
            record.status = ImportStatus.COMPLETED
            record.errors = list(result.errors) if result.errors else None

        logger.info(
            f"Census import {import_id}: {result.created} created, "
            f"{result.updated} updated, {len(result.errors)} errors"
        )
        return result

    def _upsert_patient(
        self,
        session: Session,
        record: CensusImport,
        row: PatientRow,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """Write one row; returns True when a new patient was created."""
        hospital_id = record.hospital_id
        classification = classify(row.unit_name)
        fields = row.present_fields()

        patient = session.scalars(
            select(CensusPatient).where(
                CensusPatient.hospital_id == hospital_id,
                CensusPatient.mrn == row.mrn,
            )
        ).first()

        if patient is not None:
            if patient.status == PatientStatus.DISCHARGED:
                # The earlier absence was not a discharge after all
                session.execute(
                    delete(TransferEvent).where(
                        TransferEvent.patient_id == patient.id,
                        TransferEvent.to_unit_name == DISCHARGED_UNIT,
                    )
                )
                logger.info(f"Reactivating MRN {row.mrn} at hospital {hospital_id}")

            if patient.current_unit_name != row.unit_name:
                session.add(TransferEvent(
                    patient_id=patient.id,
                    hospital_id=hospital_id,
                    mrn=row.mrn,
                    from_unit_name=patient.current_unit_name,
                    to_unit_name=row.unit_name,
                    event_date=row.census_date or record.upload_date,
                    clinical_summary=fields.get("primary_diagnosis", patient.primary_diagnosis),
                    created_at=now,
                    expires_at=expires_at,
                ))

            self._merge_row(patient, row, fields, classification)
            patient.import_id = record.id
            patient.status = PatientStatus.ACTIVE
            patient.expires_at = expires_at
            patient.updated_at = now
            created = False
        else:
            patient = CensusPatient(
                hospital_id=hospital_id,
                import_id=record.id,
                mrn=row.mrn,
                requires_one_to_one=False,
                one_to_one_devices=[],
                one_to_one_source=None,
                status=PatientStatus.ACTIVE,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
            self._merge_row(patient, row, fields, classification)
            session.add(patient)
            session.flush()

            session.add(TransferEvent(
                patient_id=patient.id,
                hospital_id=hospital_id,
                mrn=row.mrn,
                from_unit_name=None,
                to_unit_name=row.unit_name,
                event_date=row.admission_date or row.census_date or record.upload_date,
                clinical_summary=row.primary_diagnosis,
                created_at=now,
                expires_at=expires_at,
            ))
            created = True

        self._ensure_unit_mapping(session, hospital_id, row.unit_name, classification, now)
        return created

    @staticmethod
    def _merge_row(
        patient: CensusPatient,
        row: PatientRow,
        fields: Mapping[str, Any],
        classification: UnitClassification,
    ) -> None:
        if "patient_name" in fields:
            patient.initials = name_to_initials(row.patient_name)
        patient.current_unit_name = row.unit_name
        patient.unit_type = classification.unit_type

        for name in _ROW_COLUMNS:
            if name in fields:
                setattr(patient, name, fields[name])

        CensusIngestor._apply_one_to_one(patient, fields)

    @staticmethod
    def _apply_one_to_one(patient: CensusPatient, fields: Mapping[str, Any]) -> None:
        """
        Refresh the one-to-one flag from the clinical text of this upload.

        Keyword hits always flag the patient. Without hits, a flag that an AI
        prediction set earlier survives; a keyword-only flag is cleared.

        A row that states requires_one_to_one explicitly has the final word.
        True is credited to "ai" when the row also carries AI fields and to
        "keyword" otherwise. False clears the flag, devices and source. An
        explicit null counts as not stated.
        """
        stored = patient.one_to_one_source
        ai_backed = stored in (OneToOneSource.AI, OneToOneSource.BOTH)
        devices = detect_one_to_one_devices(patient.general_comments, patient.primary_diagnosis)

        if devices:
            patient.requires_one_to_one = True
            patient.one_to_one_devices = devices
            patient.one_to_one_source = OneToOneSource.BOTH if ai_backed else OneToOneSource.KEYWORD
        elif ai_backed:
            patient.one_to_one_source = OneToOneSource.AI
        else:
            _clear_one_to_one(patient)

        asserted = fields.get("requires_one_to_one")
        if asserted is True:
            patient.requires_one_to_one = True
            if any(fields.get(name) is not None for name in _AI_ROW_COLUMNS):
                patient.one_to_one_source = merge_one_to_one_source(patient.one_to_one_source, True)
            elif patient.one_to_one_source is None:
                patient.one_to_one_source = OneToOneSource.KEYWORD
        elif asserted is False:
            _clear_one_to_one(patient)
        if fields.get("one_to_one_devices") is not None:
            patient.one_to_one_devices = list(fields["one_to_one_devices"])

    @staticmethod
    def _ensure_unit_mapping(
        session: Session,
        hospital_id: str,
        raw_unit_name: str,
        classification: UnitClassification,
        now: datetime,
    ) -> None:
        existing = session.scalars(
            select(UnitMapping.id).where(
                UnitMapping.hospital_id == hospital_id,
                UnitMapping.raw_unit_name == raw_unit_name,
            )
        ).first()
        if existing is None:
            session.add(UnitMapping(
                hospital_id=hospital_id,
                raw_unit_name=raw_unit_name,
                unit_type=classification.unit_type,
                is_icu=classification.is_icu,
                created_at=now,
            ))
            logger.debug(f"New unit mapping for hospital {hospital_id}: {raw_unit_name}")

    # =========================================================================
    # DISCHARGE RECONCILIATION
    # =========================================================================

    def reconcile_discharges(
        self,
        import_id: int,
        current_mrns: Iterable[str],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Mark active patients missing from an import as discharged.

        Absence is only a heuristic: the patient may have left the hospital
        or moved to a service the export does not cover. A later import that
        lists the MRN again reverses the inference (see ingest_rows).

        Args:
            import_id: The completed import whose MRNs are authoritative
            current_mrns: Every MRN present in that import
            now: Write time (default: current UTC time)

        Returns:
            ReconcileResult with the number of newly discharged patients

        Raises:
            RecordNotFoundError: If the import does not exist
        """
        now = now or utcnow()
        expires_at = self._expires_at(now)
        present = {str(mrn).strip() for mrn in current_mrns}
        result = ReconcileResult()

        with self.database.transaction() as session:
            record = self._get_import(session, import_id)
            self._authorize(record.hospital_id)

            active = session.scalars(
                select(CensusPatient).where(
                    CensusPatient.hospital_id == record.hospital_id,
                    CensusPatient.status == PatientStatus.ACTIVE,
                )
            ).all()

            for patient in active:
                if patient.mrn in present:
                    continue

                patient.status = PatientStatus.DISCHARGED
                patient.updated_at = now
                patient.expires_at = expires_at
                session.add(TransferEvent(
                    patient_id=patient.id,
                    hospital_id=record.hospital_id,
                    mrn=patient.mrn,
                    from_unit_name=patient.current_unit_name,
                    to_unit_name=DISCHARGED_UNIT,
                    event_date=record.upload_date,
                    clinical_summary=ASSUMED_DISCHARGE_SUMMARY,
                    created_at=now,
                    expires_at=expires_at,
                ))
                result.discharged_count += 1

        logger.info(
            f"Census import {import_id}: {result.discharged_count} patients "
            f"assumed discharged"
        )
        return result

    # =========================================================================
    # PREDICTIONS AND MANUAL EDITS
    # =========================================================================

    def apply_predictions(
        self,
        patient_id: int,
        patch: PredictionPatch,
        now: Optional[datetime] = None,
    ) -> CensusPatient:
        """
        Merge AI-derived fields into a stored patient.

        Only fields present on the patch are written. An asserted one-to-one
        flag upgrades a keyword source to "both" and an empty source to "ai".
        An asserted False clears the flag, devices and source; null is ignored.

        Raises:
            RecordNotFoundError: If the patient does not exist
        """
        now = now or utcnow()
        fields = patch.present_fields()

        with self.database.transaction() as session:
            patient = self._get_patient(session, patient_id)
            self._authorize(patient.hospital_id)

            for name in _PATCH_COLUMNS:
                if name in fields:
                    setattr(patient, name, fields[name])

            asserted = fields.get("requires_one_to_one")
            if asserted is True:
                patient.one_to_one_source = merge_one_to_one_source(
                    patient.one_to_one_source, True
                )
                patient.requires_one_to_one = True
            elif asserted is False:
                _clear_one_to_one(patient)
            if fields.get("one_to_one_devices") is not None:
                patient.one_to_one_devices = list(fields["one_to_one_devices"])

            patient.updated_at = now
            return patient

    def update_unit_mapping(
        self,
        hospital_id: str,
        raw_unit_name: str,
        unit_type: UnitType,
        is_icu: bool,
        unit_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UnitMapping:
        """Create or overwrite the operator mapping for a raw unit name."""
        self._authorize(hospital_id)
        now = now or utcnow()

        with self.database.transaction() as session:
            mapping = session.scalars(
                select(UnitMapping).where(
                    UnitMapping.hospital_id == hospital_id,
                    UnitMapping.raw_unit_name == raw_unit_name,
                )
            ).first()

            if mapping is None:
                mapping = UnitMapping(
                    hospital_id=hospital_id,
                    raw_unit_name=raw_unit_name,
                    created_at=now,
                )
                session.add(mapping)

            mapping.unit_type = UnitType(unit_type)
            mapping.is_icu = is_icu
            mapping.unit_id = unit_id
            session.flush()
            return mapping

    def deactivate_patient(self, patient_id: int, now: Optional[datetime] = None) -> CensusPatient:
        """Manually take a patient off the census without writing a ledger event."""
        now = now or utcnow()

        with self.database.transaction() as session:
            patient = self._get_patient(session, patient_id)
            self._authorize(patient.hospital_id)
            patient.status = PatientStatus.DISCHARGED
            patient.updated_at = now

        logger.info(f"Deactivated patient {patient_id} (MRN {patient.mrn})")
        return patient
