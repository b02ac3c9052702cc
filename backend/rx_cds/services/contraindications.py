# backend/rx_cds/services/contraindications.py
import logging
from typing import List

from rx_cds.repository import ReferenceStore
from rx_cds.schemas import (
    ConditionRef,
    ContraindicationAlert,
    ContraindicationRecord,
    ContraindicationResult,
    ContraindicationType,
    MedicationRef,
)

log = logging.getLogger("contraindications")


def recommendation_for(rec: ContraindicationRecord) -> str:
    rationale = rec.rationale.rstrip(".")
    if rec.type == ContraindicationType.ABSOLUTE:
        if rec.alternatives:
            return f"DO NOT USE. Consider alternatives: {', '.join(rec.alternatives)}"
        return f"DO NOT USE. {rationale}".rstrip(". ") + "."
    text = "Use with caution."
    if rationale:
        text += f" {rationale}."
    return text + " Monitor patient closely for adverse effects."


class ContraindicationChecker:
    def __init__(self, store: ReferenceStore):
        self.store = store

    def check_contraindications(
        self, medications: List[MedicationRef], conditions: List[ConditionRef]
    ) -> ContraindicationResult:
        log.info(
            "Checking contraindications for %d medications against %d conditions",
            len(medications), len(conditions),
        )
        if not conditions:
            return ContraindicationResult()

        alerts = []
        for med in medications:
            for condition in conditions:
                rec = self.store.find_contraindication(med.name, condition.code)
                if rec is None:
                    continue
                condition_name = condition.name or rec.condition_name or condition.code
                alerts.append(
                    ContraindicationAlert(
                        medication=med.name,
                        condition_code=condition.code,
                        condition_name=condition_name,
                        type=rec.type,
                        severity=rec.severity,
                        rationale=rec.rationale,
                        description=(
                            f"{rec.type.value.capitalize()} contraindication: "
                            f"{med.name} in patients with {condition_name}"
                        ),
                        recommendation=recommendation_for(rec),
                        alternatives=list(rec.alternatives),
                        evidence_level=rec.evidence_level,
                    )
                )

        result = ContraindicationResult(alerts=alerts)
        log.info(
            "Contraindication check found %d absolute, %d relative",
            len(result.absolute_contraindications), len(result.relative_contraindications),
        )
        return result
