# backend/rx_cds/services/guidelines.py
"""
Clinical practice guidelines for the patient's active conditions.

Only guidelines reviewed within the last five years are offered. Each one is
scored for applicability to the order:

    50  guideline covers the patient condition it was found under
  + 10  for every other patient condition it also covers
  + 30  a proposed medication is first-line therapy (or + 15 if second-line)
  + 10  grade A evidence (or + 5 for grade B)

capped at 100. High applicability is 70 and up, medium 40 and up.
"""
import datetime
import logging
from typing import Dict, List, Optional

from rx_cds.repository import ReferenceStore
from rx_cds.schemas import (
    ConditionRef,
    GuidelineRecommendation,
    GuidelineRecord,
    GuidelineStatistics,
    MedicationRef,
)

log = logging.getLogger("guidelines")

GUIDELINE_REVIEW_YEARS = 5
GUIDELINES_PER_CONDITION = 20
MAX_GUIDELINES = 10
HIGH_APPLICABILITY = 70
MEDIUM_APPLICABILITY = 40

CONDITION_MATCH_SCORE = 50
EXTRA_CONDITION_SCORE = 10
FIRST_LINE_SCORE = 30
SECOND_LINE_SCORE = 15
EVIDENCE_SCORE = {"A": 10, "B": 5}

EVIDENCE_LEVELS = {
    "A": "High-quality evidence from multiple randomized trials or meta-analyses",
    "B": "Moderate-quality evidence from a single randomized trial or non-randomized studies",
    "C": "Limited evidence from observational studies",
    "D": "Expert opinion or consensus",
}


def review_cutoff(today: datetime.date) -> datetime.date:
    try:
        return today.replace(year=today.year - GUIDELINE_REVIEW_YEARS)
    except ValueError:
        # Feb 29
        return today.replace(year=today.year - GUIDELINE_REVIEW_YEARS, day=28)


def is_current(guideline: GuidelineRecord, today: datetime.date) -> bool:
    return guideline.last_reviewed is not None and guideline.last_reviewed >= review_cutoff(today)


def _matches(therapies: List[str], medication_names: List[str]) -> bool:
    return any(med in therapy.lower() for therapy in therapies for med in medication_names)


def applicability_score(
    guideline: GuidelineRecord, condition_codes: List[str], medication_names: List[str]
) -> int:
    """Score a guideline found under one of ``condition_codes``. Names and codes are lower/upper-cased by the caller."""
    covered = {c.upper() for c in guideline.icd_codes}
    score = CONDITION_MATCH_SCORE
    score += EXTRA_CONDITION_SCORE * max(0, len(covered.intersection(condition_codes)) - 1)
    if _matches(guideline.first_line_therapy, medication_names):
        score += FIRST_LINE_SCORE
    elif _matches(guideline.second_line_therapy, medication_names):
        score += SECOND_LINE_SCORE
    score += EVIDENCE_SCORE.get((guideline.evidence_level or "").upper(), 0)
    return min(score, 100)


def applicability(score: int) -> str:
    if score >= HIGH_APPLICABILITY:
        return "high"
    if score >= MEDIUM_APPLICABILITY:
        return "medium"
    return "low"


def reasoning(guideline: GuidelineRecord, medication_names: List[str], score: int) -> str:
    parts = []
    if score >= CONDITION_MATCH_SCORE:
        parts.append("Patient condition matches guideline")
    if _matches(guideline.first_line_therapy, medication_names):
        parts.append("Proposed medication is first-line therapy")
    elif _matches(guideline.second_line_therapy, medication_names):
        parts.append("Proposed medication is second-line therapy")
    if (guideline.evidence_level or "").upper() == "A":
        parts.append("High-quality evidence (Grade A)")
    if not parts:
        parts.append("General guideline for this condition")
    return ". ".join(parts) + "."


class GuidelineService:
    def __init__(self, store: ReferenceStore, today: Optional[datetime.date] = None):
        self.store = store
        self._today = today

    @property
    def today(self) -> datetime.date:
        return self._today or datetime.date.today()

    def get_guidelines(
        self, medications: List[MedicationRef], conditions: List[ConditionRef]
    ) -> List[GuidelineRecommendation]:
        """Best-matching current guidelines for the patient's conditions, most applicable first."""
        if not conditions:
            return []
        log.info(
            "Finding guidelines for %d conditions and %d medications", len(conditions), len(medications)
        )
        codes = [c.code.upper() for c in conditions]
        names = [m.name.lower() for m in medications]
        today = self.today

        scored: Dict[int, tuple] = {}
        for code in dict.fromkeys(codes):
            for guideline in self.store.find_guidelines(code, limit=GUIDELINES_PER_CONDITION):
                if guideline.id in scored or not is_current(guideline, today):
                    continue
                scored[guideline.id] = (applicability_score(guideline, codes, names), guideline)

        ranked = sorted(scored.values(), key=lambda item: item[0], reverse=True)[:MAX_GUIDELINES]
        log.info("Found %d applicable guidelines", len(ranked))
        return [
            GuidelineRecommendation(
                guideline_id=g.id,
                guideline=g.title,
                condition=g.condition,
                recommendation=g.summary,
                evidence_level=EVIDENCE_LEVELS.get((g.evidence_level or "").upper(), g.evidence_level),
                strength=g.strength_of_recommendation,
                score=score,
                applicability=applicability(score),
                reasoning=reasoning(g, names, score),
            )
            for score, g in ranked
        ]

    def search(self, query: str, limit: int = 50) -> List[GuidelineRecord]:
        return self.store.search_guidelines(query, limit=limit)

    def get(self, guideline_id: int) -> Optional[GuidelineRecord]:
        return self.store.find_guideline(guideline_id)

    def statistics(self) -> GuidelineStatistics:
        return self.store.guideline_statistics(review_cutoff(self.today))
