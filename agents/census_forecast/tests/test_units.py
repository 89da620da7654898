"""
Census Forecast Agent - Unit Classification Tests

Run with: pytest agents/census_forecast/tests/test_units.py -v
"""

import pytest

from agents.census_forecast.units import (
    CANONICAL_FLOOR,
    CANONICAL_ICU,
    UnitType,
    canonical_units,
    canonicalize,
    classify,
)


class TestClassify:
    """Tests for classify()."""

    @pytest.mark.parametrize(
        "raw_name",
        ["CCU", "ccu-2", "CSIU", "CVU EAST", "MICU", "Cardiac ICU", "CICU", "MSM", "7E ICU OVERFLOW"],
    )
    def test_icu_markers_classify_as_icu(self, raw_name):
        result = classify(raw_name)
        assert result.unit_type == UnitType.ICU
        assert result.is_icu is True

    @pytest.mark.parametrize("raw_name", ["N07E", "7E STEPDOWN", "5 WEST", "Telemetry", "", None])
    def test_other_names_classify_as_floor(self, raw_name):
        result = classify(raw_name)
        assert result.unit_type == UnitType.FLOOR
        assert result.is_icu is False


class TestCanonicalize:
    """Tests for canonicalize()."""

    @pytest.mark.parametrize("raw_name", ["CCU", "ccu-2", "CSIU", "CVU", "Cardiac ICU", "MSM"])
    def test_icu_aliases_fold_to_ccu(self, raw_name):
        assert canonicalize(raw_name) == CANONICAL_ICU

    @pytest.mark.parametrize("raw_name", ["N07E", "7E", "n7e", " 7E STEPDOWN "])
    def test_floor_aliases_fold_to_n07e(self, raw_name):
        assert canonicalize(raw_name) == CANONICAL_FLOOR

    def test_unknown_name_passes_through(self):
        assert canonicalize("5 West") == "5 West"

    def test_empty_name_passes_through(self):
        assert canonicalize("") == ""

    def test_icu_alias_wins_over_floor_alias(self):
        assert canonicalize("7E ICU") == CANONICAL_ICU

    def test_canonical_units_are_seeded_in_order(self):
        assert canonical_units() == [
            ("CCU", UnitType.ICU),
            ("N07E", UnitType.FLOOR),
        ]
