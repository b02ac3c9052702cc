# backend/rx_cds/services/dose_validation.py
"""
Dose range validation.

Each prescribed dose is checked against the stored therapeutic range for the
medication and route, after patient-specific adjustments (pediatric,
geriatric, renal, hepatic). Missing reference data degrades to a pass with a
warning; a dose that cannot be parsed or converted is treated as unsafe.
"""
import logging
from typing import List

from rx_cds.errors import InvalidDoseFormat, UnitConversionError
from rx_cds.repository import ReferenceStore
from rx_cds.schemas import (
    AdjustedDose,
    DoseRange,
    DoseStatus,
    DoseValidation,
    DoseValidationResult,
    HepaticFunction,
    MedicationOrder,
    PatientContext,
)
from rx_cds.services import dose_rules
from rx_cds.services.extract import parse_dose, parse_frequency
from rx_cds.services.normalize import convert_unit

log = logging.getLogger("dose_validation")

NO_RANGE_WARNING = "No therapeutic range data available for validation"
LOW_END_FACTOR = 1.2   # within [min, min*1.2) -> below-range
HIGH_END_FACTOR = 0.8  # within (max*0.8, max] -> above-range
PEDIATRIC_AGE = 18
GERIATRIC_AGE = 65


def _fmt(value: float) -> str:
    return f"{round(value, 2):g}"


class DoseValidator:
    def __init__(self, store: ReferenceStore):
        self.store = store

    def validate_doses(
        self, medications: List[MedicationOrder], patient: PatientContext = None
    ) -> DoseValidationResult:
        patient = patient or PatientContext()
        log.info("Validating doses for %d medications", len(medications))
        return DoseValidationResult(
            validations=[self.validate_dose(m, patient) for m in medications]
        )

    def validate_dose(self, medication: MedicationOrder, patient: PatientContext) -> DoseValidation:
        rng = self.store.find_therapeutic_range(medication.name, medication.route)
        if rng is None:
            log.warning("No therapeutic range on file for %s (%s)", medication.name, medication.route)
            return DoseValidation(
                medication=medication.name,
                therapeutic_range=DoseRange(min=0, max=0, unit=""),
                status=DoseStatus.OK,
                warnings=[NO_RANGE_WARNING],
            )

        stored_range = DoseRange(min=rng.min_dose, max=rng.max_dose, unit=rng.unit)

        try:
            value, unit = parse_dose(medication.dose)
        except InvalidDoseFormat as e:
            log.warning("Unparsable dose for %s: %s", medication.name, e)
            return DoseValidation(
                medication=medication.name,
                therapeutic_range=stored_range,
                status=DoseStatus.TOXIC,
                warnings=["Cannot parse dose format"],
                recommendations=['Review dose format: expected format like "500mg"'],
                adjustment_needed=True,
            )

        try:
            dose = convert_unit(value, unit, rng.unit)
        except UnitConversionError:
            return DoseValidation(
                medication=medication.name,
                prescribed_dose=value,
                prescribed_unit=unit,
                therapeutic_range=stored_range,
                status=DoseStatus.TOXIC,
                warnings=[f"Unit mismatch: prescribed in {unit}, expected {rng.unit}"],
                recommendations=[f"Convert dose to {rng.unit}"],
                adjustment_needed=True,
            )

        min_dose, max_dose = rng.min_dose, rng.max_dose
        warnings, recommendations = [], []
        adjusted = None

        if patient.age is not None:
            rule = rng.pediatric_dose
            age_months = patient.age * 12
            if patient.age < PEDIATRIC_AGE and rule and dose_rules.pediatric_rule_applies(rule, age_months):
                warnings.append("Pediatric patient - adjusted dosing required")
                recommendations.append("Use pediatric dosing guidelines")
                weight_range = dose_rules.weight_based_range(rule, patient.weight)
                if weight_range is not None:
                    low, high = weight_range
                    recommendations.append(
                        f"Pediatric range: {_fmt(low)}-{_fmt(high)}{rng.unit} "
                        f"({_fmt(rule.min_dose)}-{_fmt(rule.max_dose)} {rule.calculation_method})"
                    )
                    if dose < low:
                        warnings.append(f"Dose below weight-based pediatric minimum of {_fmt(low)}{rng.unit}")
                    elif dose > high:
                        warnings.append(f"Dose above weight-based pediatric maximum of {_fmt(high)}{rng.unit}")
                ped = dose_rules.pediatric_dose(age_months, patient.weight, rng.max_dose)
                if ped is not None:
                    if ped.method == dose_rules.YOUNGS_RULE:
                        basis = f"age {_fmt(patient.age)} years"
                    else:
                        basis = f"weight {_fmt(patient.weight)}kg"
                    adjusted = AdjustedDose(
                        dose=ped.dose,
                        unit=rng.unit,
                        reason=f"Pediatric dose calculated using {ped.method} based on {basis}",
                    )
            if patient.age >= GERIATRIC_AGE and rng.geriatric_dose:
                reduction = rng.geriatric_dose.adjustment
                max_dose = dose_rules.geriatric_max_dose(max_dose, rng.geriatric_dose)
                warnings.append("Geriatric patient - dose reduction recommended")
                recommendations.append(
                    rng.geriatric_dose.recommendation
                    or f"Consider {_fmt(reduction)}% dose reduction for elderly patient"
                )

        if patient.renal_function is not None and rng.renal_adjustment:
            base = adjusted.dose if adjusted else dose
            renal = dose_rules.apply_renal_adjustment(base, patient.renal_function, rng.renal_adjustment)
            if renal.adjustment > 0:
                warnings.append(f"Renal impairment detected (GFR: {_fmt(patient.renal_function)})")
                recommendations.append(renal.reason)
                reason = renal.reason if adjusted is None else f"{adjusted.reason}; {renal.reason}"
                adjusted = AdjustedDose(dose=renal.adjusted_dose, unit=rng.unit, reason=reason)

        if (
            patient.hepatic_function is not None
            and patient.hepatic_function != HepaticFunction.NORMAL
            and rng.hepatic_adjustment
        ):
            warnings.append(f"Hepatic impairment: {patient.hepatic_function.value}")
            recommendations.append(rng.hepatic_adjustment.recommendation)

        if dose < min_dose:
            status = DoseStatus.SUB_THERAPEUTIC
            warnings.append("Dose below therapeutic range")
            recommendations.append(f"Increase dose to at least {_fmt(min_dose)}{rng.unit}")
        elif dose > max_dose:
            status = DoseStatus.TOXIC
            warnings.append("Dose above therapeutic range - risk of toxicity")
            recommendations.append(f"Reduce dose to maximum {_fmt(max_dose)}{rng.unit}")
        elif dose < min_dose * LOW_END_FACTOR:
            status = DoseStatus.BELOW_RANGE
            warnings.append("Dose in lower therapeutic range")
        elif dose > max_dose * HIGH_END_FACTOR:
            status = DoseStatus.ABOVE_RANGE
            warnings.append("Dose in upper therapeutic range")
        else:
            status = DoseStatus.OK

        recommendations.extend(f"Monitoring required: {m}" for m in rng.monitoring_required)

        doses_per_day = parse_frequency(medication.frequency)
        return DoseValidation(
            medication=medication.name,
            prescribed_dose=dose,
            prescribed_unit=rng.unit,
            therapeutic_range=DoseRange(min=min_dose, max=max_dose, unit=rng.unit),
            status=status,
            warnings=warnings,
            recommendations=recommendations,
            adjustment_needed=adjusted is not None,
            adjusted_dose=adjusted,
            doses_per_day=doses_per_day,
            daily_dose=dose * doses_per_day if doses_per_day else None,
        )
