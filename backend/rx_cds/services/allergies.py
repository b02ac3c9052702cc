# backend/rx_cds/services/allergies.py
import logging
from typing import Dict, List, Optional, Tuple

from rx_cds.repository import ReferenceStore
from rx_cds.schemas import (
    AllergyAlert,
    AllergyAlertType,
    AllergyCheckResult,
    AllergyRecord,
    AllergySeverity,
    MedicationRef,
)
from rx_cds.services.drug_class import DrugClassifier, default_classifier
from rx_cds.services.normalize import normalize_drug_name

log = logging.getLogger("allergies")

# allergen class -> {related medication class: risk percentage}
CROSS_REACTIVITY_PATTERNS: Dict[str, Dict[str, int]] = {
    "penicillin": {"cephalosporin": 10, "carbapenem": 1},
    "cephalosporin": {"penicillin": 10, "carbapenem": 1},
    "sulfonamide": {"sulfonylurea": 10, "thiazide": 10, "loop-diuretic": 10},
    "nsaid": {"nsaid": 20},
}

# risk assumed for a relation recorded only on the allergy record
RECORDED_CROSS_REACTIVITY_RISK = 10

# severity used for a direct match when no allergy record is on file
UNRECORDED_DIRECT_MATCH_SEVERITY = AllergySeverity.SEVERE


def cross_reactivity(
    allergen_class: str, medication_class: str, recorded: List[str] = ()
) -> Tuple[bool, int]:
    """(related, risk percentage) for an allergen class and a medication class."""
    risk = CROSS_REACTIVITY_PATTERNS.get(allergen_class, {}).get(medication_class)
    if risk is not None:
        return True, risk
    if medication_class in [c.lower() for c in recorded]:
        return True, RECORDED_CROSS_REACTIVITY_RISK
    return False, 0


class AllergyChecker:
    def __init__(self, store: ReferenceStore, classifier: DrugClassifier = None):
        self.store = store
        self.classifier = classifier or default_classifier(store)

    def check_allergies(self, medications: List[MedicationRef], allergens: List[str]) -> AllergyCheckResult:
        log.info(
            "Checking allergies for %d medications against %d allergies",
            len(medications), len(allergens),
        )
        if not allergens:
            return AllergyCheckResult()

        records: Dict[str, Optional[AllergyRecord]] = {}
        classes: Dict[str, Optional[str]] = {}

        def record_for(allergen):
            key = normalize_drug_name(allergen)
            if key not in records:
                records[key] = self.store.find_allergy(allergen)
            return records[key]

        def class_of(name):
            key = normalize_drug_name(name)
            if key not in classes:
                classes[key] = self.classifier.classify(name)
            return classes[key]

        alerts = []
        for med in medications:
            med_class = class_of(med.name)
            for allergen in allergens:
                if not allergen or not allergen.strip():
                    continue
                record = record_for(allergen)

                direct = self._direct_match(med, allergen, record)
                if direct:
                    alerts.append(direct)

                allergen_class = None
                if record and record.allergen_class:
                    allergen_class = record.allergen_class.lower()
                allergen_class = allergen_class or class_of(allergen)
                if not med_class or not allergen_class:
                    # unknown class: skip the class-based checks for this pair only
                    continue

                cross = self._cross_reactivity(med, allergen, med_class, allergen_class, record)
                if cross:
                    alerts.append(cross)

                warning = self._class_warning(med, allergen, med_class, allergen_class)
                if warning:
                    alerts.append(warning)

        result = AllergyCheckResult(alerts=alerts)
        log.info(
            "Allergy check produced %d alerts (highest severity: %s)",
            len(alerts), result.highest_severity,
        )
        return result

    def _direct_match(self, med, allergen, record) -> Optional[AllergyAlert]:
        if normalize_drug_name(med.name) != normalize_drug_name(allergen):
            return None
        severity = record.severity if record else UNRECORDED_DIRECT_MATCH_SEVERITY
        reaction = (record.reaction if record else None) or "not documented"
        return AllergyAlert(
            medication=med.name,
            allergen=allergen,
            alert_type=AllergyAlertType.DIRECT_MATCH,
            severity=severity,
            description=f"Direct allergy match: Patient has documented {severity.value} allergy to {allergen}",
            recommendation=(
                f"DO NOT ADMINISTER. Patient has known {severity.value} allergy. "
                f"Previous reaction: {reaction}"
            ),
        )

    def _cross_reactivity(self, med, allergen, med_class, allergen_class, record) -> Optional[AllergyAlert]:
        related, risk = cross_reactivity(
            allergen_class, med_class, record.cross_reactive_with if record else ()
        )
        if not related:
            return None
        # class relatedness is a probabilistic warning, never severe on its own
        return AllergyAlert(
            medication=med.name,
            allergen=allergen,
            alert_type=AllergyAlertType.CROSS_REACTIVITY,
            severity=AllergySeverity.MODERATE,
            cross_reactivity_risk=risk,
            description=f"Possible cross-reactivity: {med_class} with {allergen_class} allergy",
            recommendation=(
                f"Use with caution. Cross-reactivity risk: {risk}%. "
                "Monitor patient closely for allergic reactions."
            ),
        )

    def _class_warning(self, med, allergen, med_class, allergen_class) -> Optional[AllergyAlert]:
        if med_class != allergen_class:
            return None
        return AllergyAlert(
            medication=med.name,
            allergen=allergen,
            alert_type=AllergyAlertType.CLASS_WARNING,
            severity=AllergySeverity.MODERATE,
            description=f"Same drug class: Both are {med_class}",
            recommendation=(
                f"Review carefully. Both belong to {med_class} class. "
                "Consider alternative drug class."
            ),
        )
