"""
Census Forecast Agent - Staffing Tests

Run with: pytest agents/census_forecast/tests/test_staffing.py -v
"""

from types import SimpleNamespace

from agents.census_forecast.staffing import StaffingCalculator, compute_unit_staffing
from agents.census_forecast.tests.factories import HOSPITAL, UPLOAD_DATE, row
from agents.census_forecast.units import UnitType


def patient(discharge_days=None, downgrade_date=None, one_to_one=False):
    return SimpleNamespace(
        projected_discharge_days=discharge_days,
        predicted_downgrade_date=downgrade_date,
        requires_one_to_one=one_to_one,
    )


class TestComputeUnitStaffing:
    """Tests for the per-unit shift math."""

    def test_one_to_one_patients_get_dedicated_nurses(self):
        patients = [patient(one_to_one=i < 2) for i in range(10)]

        unit = compute_unit_staffing("CCU", UnitType.ICU, patients, UPLOAD_DATE, nurse_ratio=2)

        assert unit.current_census == 10
        assert unit.one_to_one_count == 2
        assert unit.am_end_census == 10
        assert unit.am_rn_needed == 4
        assert unit.total_am_rn == 6
        assert unit.total_pm_rn == 6

    def test_floor_discharges_by_shift(self):
        patients = [patient(1), patient(0), patient(2), patient(3), patient(), patient()]

        unit = compute_unit_staffing("N07E", UnitType.FLOOR, patients, UPLOAD_DATE, nurse_ratio=5)

        assert unit.am_discharges == 2
        assert unit.pm_discharges == 1
        assert unit.am_downgrades == 0
        assert unit.am_end_census == 4
        assert unit.pm_end_census == 3
        assert unit.am_rn_needed == 1
        assert unit.pm_rn_needed == 1

    def test_icu_downgrades(self):
        patients = [
            patient(downgrade_date=UPLOAD_DATE),
            patient(discharge_days=2),
            patient(),
            patient(),
        ]

        unit = compute_unit_staffing("CCU", UnitType.ICU, patients, UPLOAD_DATE, nurse_ratio=2)

        assert unit.am_downgrades == 2
        assert unit.pm_discharges == 1
        assert unit.am_end_census == 2
        assert unit.pm_end_census == 1
        assert unit.am_rn_needed == 1
        assert unit.pm_rn_needed == 1

    def test_floor_ignores_downgrade_dates(self):
        unit = compute_unit_staffing(
            "N07E", UnitType.FLOOR, [patient(downgrade_date=UPLOAD_DATE)], UPLOAD_DATE, nurse_ratio=5
        )

        assert unit.am_downgrades == 0
        assert unit.am_end_census == 1

    def test_end_census_never_negative(self):
        unit = compute_unit_staffing("CCU", UnitType.ICU, [patient(1)], UPLOAD_DATE, nurse_ratio=2)

        assert unit.am_discharges == 1
        assert unit.am_downgrades == 1
        assert unit.am_end_census == 0
        assert unit.pm_end_census == 0
        assert unit.total_am_rn == 0

    def test_one_to_one_above_end_census(self):
        patients = [patient(1, one_to_one=True), patient(one_to_one=True)]

        unit = compute_unit_staffing("N07E", UnitType.FLOOR, patients, UPLOAD_DATE, nurse_ratio=5)

        assert unit.am_end_census == 1
        assert unit.am_rn_needed == 0
        assert unit.total_am_rn == 2


class TestStaffingCalculator:
    """Tests for StaffingCalculator.calculate()."""

    def test_no_import_returns_empty_report(self, database):
        report = StaffingCalculator(database).calculate(HOSPITAL)

        assert report.has_import is False
        assert report.units == []
        assert report.totals.total_am_rn == 0

    def test_units_from_latest_import(self, load_census, database):
        rows = [row(f"icu-{i}", unit="CCU", general_comments="ECMO" if i < 2 else None) for i in range(10)]
        rows += [row(f"fl-{i}", unit="N07E", projected_discharge_days=1 if i == 0 else None) for i in range(6)]
        import_id, _ = load_census(rows)

        report = StaffingCalculator(database, icu_ratio=2, floor_ratio=5).calculate(HOSPITAL)

        assert report.has_import is True
        assert report.import_id == import_id
        assert report.census_date == UPLOAD_DATE
        assert [u.unit_name for u in report.units] == ["CCU", "N07E"]

        icu, floor = report.units
        assert icu.total_am_rn == 6
        assert icu.nurse_ratio == 2
        assert floor.am_end_census == 5
        assert floor.total_am_rn == 1
        assert floor.nurse_ratio == 5

        assert report.totals.current_census == 16
        assert report.totals.total_am_rn == 7

    def test_to_dict_serializes_units(self, load_census, database):
        load_census([row("100", unit="MICU")])

        data = StaffingCalculator(database).calculate(HOSPITAL).to_dict()

        assert data["units"][0]["unit_type"] == UnitType.ICU
        assert data["totals"]["current_census"] == 1
