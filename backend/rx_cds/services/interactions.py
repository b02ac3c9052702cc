# backend/rx_cds/services/interactions.py
import logging
from typing import List

from rx_cds.repository import ReferenceStore
from rx_cds.schemas import (
    InteractionAlert,
    InteractionRecord,
    InteractionResult,
    InteractionStatistics,
    MedicationRef,
)
from rx_cds.services.normalize import normalize_drug_name

log = logging.getLogger("interactions")


class InteractionChecker:
    def __init__(self, store: ReferenceStore):
        self.store = store

    def check_interactions(self, medications: List[MedicationRef]) -> InteractionResult:
        """
        Look up every unordered pair of medications. Fewer than two
        medications is a no-op; lookup failures propagate.
        """
        log.info("Checking interactions for %d medications", len(medications))
        if len(medications) < 2:
            return InteractionResult()

        alerts = []
        seen = set()
        for i in range(len(medications)):
            for j in range(i + 1, len(medications)):
                a = medications[i]
                b = medications[j]
                key = frozenset((normalize_drug_name(a.name), normalize_drug_name(b.name)))
                if len(key) < 2 or key in seen:
                    continue
                seen.add(key)
                rec = self.store.find_interaction(a.name, b.name)
                if rec:
                    alerts.append(
                        InteractionAlert(
                            drug1=a.name,
                            drug2=b.name,
                            severity=rec.severity,
                            description=rec.description,
                            mechanism=rec.mechanism,
                            recommendation=rec.recommendation,
                            evidence_level=rec.evidence_level,
                        )
                    )

        result = InteractionResult(alerts=alerts)
        log.info(
            "Interaction check found %d interactions (highest severity: %s)",
            len(alerts), result.highest_severity,
        )
        return result

    def interactions_for_medication(self, medication: str, limit: int = 100) -> List[InteractionRecord]:
        return self.store.interactions_for(medication, limit=limit)

    def statistics(self) -> InteractionStatistics:
        return self.store.interaction_statistics()
