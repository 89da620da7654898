"""
Census Forecast Agent - Forecast Simulation Tests

Run with: pytest agents/census_forecast/tests/test_forecast.py -v
"""

from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from agents.census_forecast.forecast import (
    CensusForecaster,
    distribute_admissions,
    simulate_unit,
)
from agents.census_forecast.schemas import ProcedureAdmission
from agents.census_forecast.tests.factories import HOSPITAL, UPLOAD_DATE, row
from agents.census_forecast.units import UnitType


def patient(discharge_days=None, downgrade_date=None):
    return SimpleNamespace(
        projected_discharge_days=discharge_days,
        predicted_downgrade_date=downgrade_date,
    )


def admission(visit_offset, icu_days=0, floor_days=0, will_admit=True, **units):
    return ProcedureAdmission(
        mrn="P1",
        visit_date=UPLOAD_DATE + timedelta(days=visit_offset),
        will_admit=will_admit,
        icu_days=icu_days,
        floor_days=floor_days,
        **units,
    )


class TestSimulateUnit:
    """Tests for the day-by-day projection."""

    def test_floor_discharges(self):
        patients = [patient(1), patient(1), patient(), patient(), patient()]

        unit = simulate_unit("N07E", UnitType.FLOOR, patients, UPLOAD_DATE, 7)

        census = [d.projected_census for d in unit.days]
        assert census == [5, 3, 3, 3, 3, 3, 3, 3]
        assert unit.days[0].date == UPLOAD_DATE
        assert unit.days[0].net_change == 0
        assert unit.days[1].predicted_discharges == 2
        assert unit.days[1].net_change == -2
        assert unit.days[7].date == date(2024, 1, 22)

    def test_census_never_negative(self):
        patients = [patient(1, downgrade_date=UPLOAD_DATE + timedelta(days=1))]

        unit = simulate_unit("CCU", UnitType.ICU, patients, UPLOAD_DATE, 5)

        assert unit.days[1].predicted_discharges == 1
        assert unit.days[1].predicted_downgrades == 1
        assert all(d.projected_census >= 0 for d in unit.days)

    def test_icu_downgrades_by_date(self):
        patients = [patient(downgrade_date=UPLOAD_DATE + timedelta(days=2)), patient()]

        unit = simulate_unit("CCU", UnitType.ICU, patients, UPLOAD_DATE, 5)

        assert [d.projected_census for d in unit.days] == [2, 2, 1, 1, 1, 1]

    def test_floor_ignores_downgrade_dates(self):
        patients = [patient(downgrade_date=UPLOAD_DATE + timedelta(days=1))]

        unit = simulate_unit("N07E", UnitType.FLOOR, patients, UPLOAD_DATE, 5)

        assert unit.days[1].predicted_downgrades == 0
        assert unit.days[1].projected_census == 1

    def test_admits_are_an_overlay(self):
        unit = simulate_unit("CCU", UnitType.ICU, [patient()], UPLOAD_DATE, 5, admits_by_day={1: 2, 2: 1})

        assert [d.projected_census for d in unit.days] == [1, 3, 2, 1, 1, 1]
        assert [d.net_change for d in unit.days] == [0, 2, -1, -1, 0, 0]


class TestDistributeAdmissions:
    """Tests for spreading procedure admissions over units."""

    def test_icu_then_floor_span(self):
        admits = distribute_admissions([admission(1, icu_days=2, floor_days=3)], UPLOAD_DATE, 7)

        assert dict(admits["CCU"]) == {1: 1, 2: 1}
        assert dict(admits["N07E"]) == {3: 1, 4: 1, 5: 1}

    def test_day_zero_and_beyond_horizon_are_dropped(self):
        admits = distribute_admissions([admission(0, icu_days=1, floor_days=9)], UPLOAD_DATE, 5)

        assert dict(admits["CCU"]) == {}
        assert dict(admits["N07E"]) == {1: 1, 2: 1, 3: 1, 4: 1, 5: 1}

    def test_visits_outside_window_and_non_admits_are_ignored(self):
        admits = distribute_admissions(
            [
                admission(-1, icu_days=3),
                admission(8, icu_days=3),
                admission(2, icu_days=3, will_admit=False),
            ],
            UPLOAD_DATE,
            7,
        )

        assert admits == {}

    def test_units_are_canonicalized(self):
        admits = distribute_admissions(
            [admission(1, icu_days=1, floor_days=1, icu_unit="CSIU", floor_unit="5 West")],
            UPLOAD_DATE,
            5,
        )

        assert set(admits) == {"CCU", "5 West"}


class TestCensusForecaster:
    """Tests for CensusForecaster."""

    def test_no_import_returns_empty_forecast(self, database):
        result = CensusForecaster(database).forecast(HOSPITAL)

        assert result.has_import is False
        assert result.units == []
        assert result.horizon_days == 7

    @pytest.mark.parametrize("horizon", [1, 6, 14])
    def test_rejects_unsupported_horizon(self, database, horizon):
        with pytest.raises(ValueError):
            CensusForecaster(database).forecast(HOSPITAL, horizon)

    def test_forecast_by_raw_unit(self, load_census, database):
        load_census([
            row("1", unit="N07E", projected_discharge_days=1),
            row("2", unit="N07E", projected_discharge_days=1),
            row("3", unit="N07E"),
            row("4", unit="N07E"),
            row("5", unit="N07E"),
            row("6", unit="MICU"),
        ])

        result = CensusForecaster(database).forecast(HOSPITAL, 5)

        assert result.anchor_date == UPLOAD_DATE
        assert [u.unit_name for u in result.units] == ["MICU", "N07E"]
        floor = result.units[1]
        assert len(floor.days) == 6
        assert floor.days[0].projected_census == 5
        assert floor.days[1].projected_census == 3

    def test_combined_forecast_merges_aliases_and_feed(self, load_census, database):
        load_census([
            row("1", unit="CCU"),
            row("2", unit="CSIU"),
            row("3", unit="7E STEPDOWN", projected_discharge_days=2),
        ])

        result = CensusForecaster(database).combined_forecast(
            HOSPITAL,
            [admission(1, icu_days=1, floor_days=2), admission(3, floor_days=1, floor_unit="5 West")],
            5,
        )

        units = {u.unit_name: u for u in result.units}
        assert [u.unit_name for u in result.units] == ["CCU", "N07E", "5 West"]
        assert result.combined is True

        icu = units["CCU"]
        assert icu.unit_type == UnitType.ICU
        assert icu.current_census == 2
        assert [d.projected_census for d in icu.days] == [2, 3, 2, 2, 2, 2]

        floor = units["N07E"]
        assert [d.predicted_admits for d in floor.days] == [0, 0, 1, 1, 0, 0]
        assert [d.projected_census for d in floor.days] == [1, 1, 1, 1, 0, 0]

        assert units["5 West"].current_census == 0
        assert units["5 West"].days[3].predicted_admits == 1

    def test_combined_forecast_seeds_canonical_units(self, load_census, database):
        load_census([row("1", unit="5 West")])

        result = CensusForecaster(database).combined_forecast(HOSPITAL, [], 5)

        assert {u.unit_name for u in result.units} == {"CCU", "N07E", "5 West"}

    def test_combined_forecast_without_import_is_empty(self, database):
        result = CensusForecaster(database).combined_forecast(HOSPITAL, [admission(1, icu_days=1)])

        assert result.has_import is False
        assert result.units == []

    def test_to_frame_has_one_row_per_unit_day(self, load_census, database):
        load_census([row("1", unit="CCU"), row("2", unit="N07E")])

        frame = CensusForecaster(database).forecast(HOSPITAL, 5).to_frame()

        assert len(frame) == 12
        assert set(frame["unit_type"]) == {"icu", "floor"}
        assert frame.loc[frame["day"] == 0, "projected_census"].tolist() == [1, 1]
