import pytest

from rx_cds.errors import InvalidDoseFormat, UnitConversionError
from rx_cds.schemas import GeriatricRule, PediatricRule, RenalRule
from rx_cds.services.dose_rules import (
    apply_renal_adjustment,
    clarks_rule,
    geriatric_max_dose,
    pediatric_dose,
    pediatric_rule_applies,
    weight_based_range,
    youngs_rule,
)
from rx_cds.services.extract import parse_dose, parse_frequency
from rx_cds.services.normalize import convert_unit, normalize_unit


@pytest.mark.parametrize(
    "dose, expected",
    [
        ("500mg", (500.0, "mg")),
        ("2.5 g", (2.5, "g")),
        ("15mg/day", (15.0, "mg")),
        ("100 µg", (100.0, "mcg")),
        (".5 mL", (0.5, "ml")),
        ("10 IU", (10.0, "units")),
    ],
)
def test_parse_dose(dose, expected):
    assert parse_dose(dose) == expected


@pytest.mark.parametrize("dose", ["five hundred mg", "mg500", "", "10 furlongs", "500", None])
def test_parse_dose_rejects_malformed(dose):
    with pytest.raises(InvalidDoseFormat):
        parse_dose(dose)


@pytest.mark.parametrize(
    "frequency, per_day",
    [("bid", 2), ("TID.", 3), ("q6h", 4), ("q 8 hours", 3), ("3 times daily", 3), ("once daily", 1)],
)
def test_parse_frequency(frequency, per_day):
    assert parse_frequency(frequency) == per_day


@pytest.mark.parametrize("frequency", [None, "", "prn", "with meals"])
def test_parse_frequency_without_fixed_schedule(frequency):
    assert parse_frequency(frequency) is None


def test_convert_mass_units():
    assert convert_unit(1000, "mg", "g") == 1
    assert convert_unit(1, "g", "mg") == 1000
    assert convert_unit(0.5, "mg", "mcg") == 500
    assert convert_unit(250, "ug", "mg") == pytest.approx(0.25)


@pytest.mark.parametrize("value", [1, 2.5, 333, 1000])
def test_mg_g_round_trip(value):
    assert convert_unit(convert_unit(value, "mg", "g"), "g", "mg") == pytest.approx(value)


def test_same_unit_is_identity():
    assert convert_unit(40, "units", "IU") == 40
    assert convert_unit(5, "mL", "ml") == 5


@pytest.mark.parametrize("src, dst", [("mg", "ml"), ("units", "mg"), ("mg", "tablet"), ("furlong", "mg")])
def test_unconvertible_units_raise(src, dst):
    with pytest.raises(UnitConversionError):
        convert_unit(1, src, dst)


def test_normalize_unit():
    assert normalize_unit("Milligrams") == "mg"
    assert normalize_unit("µg") == "mcg"
    assert normalize_unit("tablet") is None


def test_clarks_rule():
    assert clarks_rule(20, 100) == pytest.approx(28.57, abs=0.01)


def test_youngs_rule_uses_age_in_years():
    # 12 months -> 1 / (1 + 12)
    assert youngs_rule(12, 130) == pytest.approx(10)


def test_pediatric_dose_picks_rule_by_age():
    older = pediatric_dose(60, 20, 100)
    assert older.method == "Clark's rule"
    assert older.dose == pytest.approx(28.57, abs=0.01)

    infant = pediatric_dose(12, None, 130)
    assert infant.method == "Young's rule"
    assert infant.dose == pytest.approx(10)


def test_pediatric_dose_needs_weight_from_two_years():
    assert pediatric_dose(60, None, 100) is None
    assert pediatric_dose(24, None, 100) is None


def test_renal_adjustment_below_threshold():
    rule = RenalRule(gfr_threshold=30, adjustment=50)
    adjusted = apply_renal_adjustment(1000, 25, rule)
    assert adjusted.adjusted_dose == 500
    assert adjusted.adjustment == 50
    assert "GFR 25 < 30" in adjusted.reason


@pytest.mark.parametrize("gfr", [30, 60])
def test_renal_adjustment_is_a_no_op_at_or_above_threshold(gfr):
    adjusted = apply_renal_adjustment(1000, gfr, RenalRule(gfr_threshold=30, adjustment=50))
    assert adjusted.adjusted_dose == 1000
    assert adjusted.adjustment == 0


def test_renal_rule_accepts_camel_case_keys():
    rule = RenalRule.model_validate({"gfrThreshold": 45, "adjustment": 25})
    assert rule.gfr_threshold == 45


def test_geriatric_max_dose():
    assert geriatric_max_dose(10, GeriatricRule(adjustment=50)) == 5


@pytest.mark.parametrize(
    "age_months, applies",
    [(11, False), (12, True), (100, True), (216, True), (217, False)],
)
def test_pediatric_rule_age_band_is_inclusive(age_months, applies):
    rule = PediatricRule(age_min=12, age_max=216)
    assert pediatric_rule_applies(rule, age_months) is applies


def test_pediatric_rule_missing_bound_is_open():
    assert pediatric_rule_applies(PediatricRule(age_max=24), 0)
    assert pediatric_rule_applies(PediatricRule(age_min=24), 200)
    assert pediatric_rule_applies(PediatricRule(), 5)


def test_weight_based_range():
    rule = PediatricRule.model_validate({"minDose": 20, "maxDose": 50, "calculationMethod": "mg/kg"})
    assert weight_based_range(rule, 12) == (240, 600)
    assert weight_based_range(rule, None) is None
    assert weight_based_range(PediatricRule(min_dose=20, max_dose=50, calculation_method="fixed"), 12) is None
    assert weight_based_range(PediatricRule(max_dose=50, calculation_method="mg/kg"), 12) is None
