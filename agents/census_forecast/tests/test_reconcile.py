"""
Census Forecast Agent - Discharge Reconciliation Tests

Run with: pytest agents/census_forecast/tests/test_reconcile.py -v
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import select

from agents.census_forecast.database import (
    DISCHARGED_UNIT,
    CensusPatient,
    PatientStatus,
    RecordNotFoundError,
)
from agents.census_forecast.ingestion import ASSUMED_DISCHARGE_SUMMARY
from agents.census_forecast.queries import CensusQueries
from agents.census_forecast.tests.factories import HOSPITAL, NOW, row


def patient_status(database, mrn):
    with database.session() as session:
        patient = session.scalars(
            select(CensusPatient).where(
                CensusPatient.hospital_id == HOSPITAL,
                CensusPatient.mrn == mrn,
            )
        ).one()
        return patient.status, patient.id


class TestReconcileDischarges:
    """Tests for reconcile_discharges()."""

    def test_absent_patient_is_discharged_with_event(self, load_census, database):
        load_census([row("100", unit="CCU"), row("200", unit="N07E")])
        load_census(
            [row("100", unit="CCU")],
            upload_date=date(2024, 1, 16),
            now=NOW + timedelta(days=1),
        )

        status, _ = patient_status(database, "200")
        assert status == PatientStatus.DISCHARGED

        events = CensusQueries(database).patient_history(HOSPITAL, "200")
        assert len(events) == 2
        discharge = events[0]
        assert discharge.from_unit_name == "N07E"
        assert discharge.to_unit_name == DISCHARGED_UNIT
        assert discharge.event_date == date(2024, 1, 16)
        assert discharge.clinical_summary == ASSUMED_DISCHARGE_SUMMARY

    def test_empty_set_discharges_each_active_patient_once(self, load_census, ingestor):
        import_id, _ = load_census([row("100"), row("200"), row("300")], reconcile=False)

        first = ingestor.reconcile_discharges(import_id, [], now=NOW)
        second = ingestor.reconcile_discharges(import_id, [], now=NOW)

        assert first.discharged_count == 3
        assert second.discharged_count == 0

    def test_present_mrns_are_untouched(self, load_census, ingestor, database):
        import_id, _ = load_census([row("100"), row("200")], reconcile=False)

        result = ingestor.reconcile_discharges(import_id, ["100", "200"], now=NOW)

        assert result.discharged_count == 0
        assert len(CensusQueries(database).patient_history(HOSPITAL, "100")) == 1

    def test_other_hospitals_are_untouched(self, load_census, ingestor, database):
        load_census([row("100")], hospital_id="other-hospital")
        import_id, _ = load_census([row("200")], reconcile=False)

        result = ingestor.reconcile_discharges(import_id, [], now=NOW)

        assert result.discharged_count == 1

    def test_unknown_import_raises(self, ingestor):
        with pytest.raises(RecordNotFoundError):
            ingestor.reconcile_discharges(7, [])


class TestReactivation:
    """A discharged MRN that shows up again is the same patient, still admitted."""

    def test_reappearing_patient_is_reactivated(self, load_census, database):
        load_census([row("100", unit="CCU"), row("200", unit="N07E")])
        _, original_id = patient_status(database, "200")
        load_census([row("100", unit="CCU")], upload_date=date(2024, 1, 16), now=NOW + timedelta(days=1))

        _, result = load_census(
            [row("100", unit="CCU"), row("200", unit="N07E")],
            upload_date=date(2024, 1, 17),
            now=NOW + timedelta(days=2),
        )

        assert result.created == 0
        assert result.updated == 2

        status, patient_id = patient_status(database, "200")
        assert status == PatientStatus.ACTIVE
        assert patient_id == original_id

        events = CensusQueries(database).patient_history(HOSPITAL, "200")
        assert len(events) == 1
        assert events[0].from_unit_name is None
        assert all(e.to_unit_name != DISCHARGED_UNIT for e in events)

    def test_reactivated_in_new_unit_gets_transfer_event(self, load_census, database):
        load_census([row("100", unit="CCU")])
        load_census([], upload_date=date(2024, 1, 16), now=NOW + timedelta(days=1))

        load_census(
            [row("100", unit="N07E")],
            upload_date=date(2024, 1, 17),
            now=NOW + timedelta(days=2),
        )

        events = CensusQueries(database).patient_history(HOSPITAL, "100")
        assert [(e.from_unit_name, e.to_unit_name) for e in events] == [
            ("CCU", "N07E"),
            (None, "CCU"),
        ]
