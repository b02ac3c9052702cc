# backend/rx_cds/services/safety.py
"""
Comprehensive medication safety check.

Runs the four independent checkers, plus guideline lookup when configured,
concurrently and scores the combined findings:

    score = 2 x interactions + 3 x allergy alerts + 4 x contraindications
            + 2 if any dose error

    low < 5 <= medium < 10 <= high

The score only classifies. Whether to block, warn or log stays with the caller.
"""
import concurrent.futures
import logging
import time
from typing import List

from rx_cds.errors import LookupFailed
from rx_cds.schemas import (
    AllergyCheckResult,
    ContraindicationResult,
    DoseValidationResult,
    InteractionResult,
    InteractionSeverity,
    MedicationOrder,
    OverallRisk,
    PatientContext,
    SafetyCheckResult,
)

log = logging.getLogger("safety")

INTERACTION_WEIGHT = 2
ALLERGY_WEIGHT = 3
CONTRAINDICATION_WEIGHT = 4
DOSE_ERROR_WEIGHT = 2
MEDIUM_RISK = 5
HIGH_RISK = 10


def overall_risk(
    interactions: InteractionResult,
    allergies: AllergyCheckResult,
    contraindications: ContraindicationResult,
    doses: DoseValidationResult,
) -> OverallRisk:
    factors = {
        "interactions": len(interactions.alerts),
        "allergies": len(allergies.alerts),
        "contraindications": len(contraindications.alerts),
        "dose_issues": 1 if doses.has_errors else 0,
    }
    score = (
        factors["interactions"] * INTERACTION_WEIGHT
        + factors["allergies"] * ALLERGY_WEIGHT
        + factors["contraindications"] * CONTRAINDICATION_WEIGHT
        + factors["dose_issues"] * DOSE_ERROR_WEIGHT
    )
    if score >= HIGH_RISK:
        level = "high"
    elif score >= MEDIUM_RISK:
        level = "medium"
    else:
        level = "low"
    blocks = (
        allergies.blocks_administration
        or contraindications.blocks_administration
        or interactions.highest_severity == InteractionSeverity.CRITICAL.value
    )
    return OverallRisk(score=score, level=level, factors=factors, blocks_administration=blocks)


def findings_summary(result: SafetyCheckResult) -> dict:
    return {
        "interactions": {
            "count": len(result.interactions.alerts),
            "highest_severity": result.interactions.highest_severity,
        },
        "allergies": {
            "count": len(result.allergy_alerts.alerts),
            "highest_severity": result.allergy_alerts.highest_severity,
        },
        "contraindications": {
            "absolute": len(result.contraindications.absolute_contraindications),
            "relative": len(result.contraindications.relative_contraindications),
        },
        "doses": {
            "has_errors": result.dose_validation.has_errors,
            "has_warnings": result.dose_validation.has_warnings,
        },
        "guidelines": len(result.guidelines),
    }


def call_with_deadline(fn, *args, timeout: float, what: str):
    """Run a single checker call, failing with ``LookupFailed`` once ``timeout`` seconds pass."""
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="cds-call")
    try:
        return pool.submit(fn, *args).result(timeout=timeout)
    except concurrent.futures.TimeoutError as e:
        log.error("%s timed out after %gs", what, timeout)
        raise LookupFailed(f"{what} timed out after {timeout:g}s") from e
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def alert_recommendations(result: SafetyCheckResult) -> List[str]:
    alerts = result.interactions.alerts + result.allergy_alerts.alerts + result.contraindications.alerts
    return list(dict.fromkeys(a.recommendation for a in alerts if a.recommendation))


class SafetyCheckService:
    def __init__(
        self,
        interactions,
        allergies,
        contraindications,
        doses,
        history=None,
        timeout: float = 15.0,
        guidelines=None,
    ):
        self.interactions = interactions
        self.allergies = allergies
        self.contraindications = contraindications
        self.doses = doses
        self.guidelines = guidelines
        self.history = history
        self.timeout = timeout

    def check_medication(self, medications: List[MedicationOrder], patient: PatientContext) -> SafetyCheckResult:
        log.info("Comprehensive safety check for %d medications", len(medications))
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=5, thread_name_prefix="cds-check")
        try:
            futures = {
                "interactions": pool.submit(self.interactions.check_interactions, medications),
                "allergy_alerts": pool.submit(self.allergies.check_allergies, medications, patient.allergies),
                "contraindications": pool.submit(
                    self.contraindications.check_contraindications, medications, patient.conditions
                ),
                "dose_validation": pool.submit(self.doses.validate_doses, medications, patient),
            }
            if self.guidelines is not None:
                futures["guidelines"] = pool.submit(
                    self.guidelines.get_guidelines, medications, patient.conditions
                )
            deadline = time.monotonic() + self.timeout
            results = {}
            for name, future in futures.items():
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    results[name] = future.result(timeout=remaining)
                except concurrent.futures.TimeoutError as e:
                    log.error("Safety check timed out waiting for %s", name)
                    raise LookupFailed(f"Safety check timed out after {self.timeout:g}s ({name})") from e
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        result = SafetyCheckResult(
            overall_risk=overall_risk(
                results["interactions"],
                results["allergy_alerts"],
                results["contraindications"],
                results["dose_validation"],
            ),
            **results,
        )

        if self.history is not None:
            result.check_id = self.history.record(
                patient.patient_id,
                [m.model_dump(by_alias=True, exclude_none=True) for m in medications],
                result.overall_risk,
                findings_summary(result),
                recommendations=alert_recommendations(result),
            )

        log.info(
            "Safety check complete: risk %s (score %d), blocks administration: %s",
            result.overall_risk.level, result.overall_risk.score,
            result.overall_risk.blocks_administration,
        )
        return result
