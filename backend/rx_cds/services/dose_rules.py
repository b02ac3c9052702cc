# backend/rx_cds/services/dose_rules.py
from typing import NamedTuple, Optional, Tuple

ADULT_REFERENCE_WEIGHT_KG = 70.0
YOUNGS_RULE_MAX_MONTHS = 24  # below this age Young's Rule, from it Clark's Rule
YOUNGS_RULE = "Young's rule"
CLARKS_RULE = "Clark's rule"


class PediatricDose(NamedTuple):
    dose: float
    method: str


class RenalAdjustment(NamedTuple):
    adjusted_dose: float
    adjustment: float  # percent actually applied, 0 when no reduction
    reason: str


def youngs_rule(age_months: float, adult_dose: float) -> float:
    """Young's Rule: age / (age + 12) x adult dose, age in years."""
    age_years = age_months / 12.0
    return age_years / (age_years + 12.0) * adult_dose


def clarks_rule(weight_kg: float, adult_dose: float) -> float:
    """Clark's Rule: weight / 70kg x adult dose."""
    return weight_kg / ADULT_REFERENCE_WEIGHT_KG * adult_dose


def pediatric_dose(age_months: float, weight_kg: Optional[float], adult_dose: float) -> Optional[PediatricDose]:
    """
    Scale an adult dose for a child.

    Infants (< 24 months) use Young's Rule, which needs only the age. Older
    children use Clark's Rule and need a weight; without one no dose can be
    computed and None is returned.
    """
    if age_months < YOUNGS_RULE_MAX_MONTHS:
        return PediatricDose(youngs_rule(age_months, adult_dose), YOUNGS_RULE)
    if not weight_kg:
        return None
    return PediatricDose(clarks_rule(weight_kg, adult_dose), CLARKS_RULE)


def apply_renal_adjustment(dose: float, gfr: float, rule) -> RenalAdjustment:
    """Reduce ``dose`` by ``rule.adjustment`` percent when GFR is below ``rule.gfr_threshold``."""
    if gfr >= rule.gfr_threshold:
        return RenalAdjustment(dose, 0, "No adjustment needed")
    adjusted = dose * (1 - rule.adjustment / 100.0)
    reason = (
        f"Renal impairment (GFR {gfr:g} < {rule.gfr_threshold:g}): "
        f"reduce dose by {rule.adjustment:g}%"
    )
    if rule.recommendation:
        reason += f". {rule.recommendation}"
    return RenalAdjustment(adjusted, rule.adjustment, reason)


def geriatric_max_dose(max_dose: float, rule) -> float:
    return max_dose * (1 - rule.adjustment / 100.0)


def pediatric_rule_applies(rule, age_months: float) -> bool:
    """True when ``age_months`` lies within the rule's [age_min, age_max]; a missing bound is open."""
    if rule.age_min is not None and age_months < rule.age_min:
        return False
    if rule.age_max is not None and age_months > rule.age_max:
        return False
    return True


def weight_based_range(rule, weight_kg: Optional[float]) -> Optional[Tuple[float, float]]:
    """Per-dose range for a ``<unit>/kg`` rule, or None when the rule is not weight based or weight is unknown."""
    method = (rule.calculation_method or "").replace(" ", "").lower()
    if not weight_kg or not method.endswith("/kg"):
        return None
    if rule.min_dose is None or rule.max_dose is None:
        return None
    return rule.min_dose * weight_kg, rule.max_dose * weight_kg
