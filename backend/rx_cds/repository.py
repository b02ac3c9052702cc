# backend/rx_cds/repository.py
"""
Read-only access to the reference tables the checkers depend on.

Lookups return ``None`` when nothing is on file and raise ``LookupFailed``
when the store cannot answer. Callers must never treat the second case as
the first.
"""
import abc
import datetime
import logging
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError

from rx_cds.db import (
    Allergy,
    ClinicalGuideline,
    Contraindication,
    DrugInteraction,
    GuidelineCondition,
    Medication,
    SafetyCheck,
    TherapeuticRange,
    _utcnow,
)
from rx_cds.errors import LookupFailed
from rx_cds.schemas import (
    AlertStatus,
    AlertSummary,
    AllergyRecord,
    ContraindicationRecord,
    GuidelineRecord,
    GuidelineStatistics,
    InteractionRecord,
    InteractionSeverity,
    InteractionStatistics,
    SafetyCheckSummary,
    TherapeuticRangeRecord,
    severity_rank,
)

log = logging.getLogger("repository")


class ReferenceStore(abc.ABC):
    """Lookup interface injected into every checker."""

    @abc.abstractmethod
    def find_interaction(self, drug_a: str, drug_b: str) -> Optional[InteractionRecord]:
        ...

    @abc.abstractmethod
    def interactions_for(self, medication: str, limit: int = 100) -> List[InteractionRecord]:
        ...

    @abc.abstractmethod
    def interaction_statistics(self) -> InteractionStatistics:
        ...

    @abc.abstractmethod
    def find_allergy(self, allergen: str) -> Optional[AllergyRecord]:
        ...

    @abc.abstractmethod
    def find_drug_class(self, medication: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    def find_contraindication(
        self, medication: str, condition_code: str
    ) -> Optional[ContraindicationRecord]:
        ...

    @abc.abstractmethod
    def find_therapeutic_range(
        self, medication: str, route: Optional[str] = None
    ) -> Optional[TherapeuticRangeRecord]:
        ...

    @abc.abstractmethod
    def find_guidelines(self, condition_code: str, limit: int = 20) -> List[GuidelineRecord]:
        """Guidelines covering an ICD-10 code, most recently reviewed first."""

    @abc.abstractmethod
    def search_guidelines(self, query: str, limit: int = 50) -> List[GuidelineRecord]:
        ...

    @abc.abstractmethod
    def find_guideline(self, guideline_id: int) -> Optional[GuidelineRecord]:
        ...

    @abc.abstractmethod
    def guideline_statistics(self, reviewed_since: datetime.date) -> GuidelineStatistics:
        ...


@contextmanager
def session_scope(session_factory, what: str):
    db = session_factory()
    try:
        yield db
    except SQLAlchemyError as e:
        log.error("Reference lookup failed (%s): %s", what, e)
        raise LookupFailed(f"Reference lookup failed: {what}") from e
    finally:
        db.close()


def _by_severity(records: List[InteractionRecord]) -> List[InteractionRecord]:
    return sorted(records, key=lambda r: severity_rank(r.severity), reverse=True)


class SqlReferenceStore(ReferenceStore):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_interaction(self, drug_a, drug_b):
        a, b = drug_a.lower(), drug_b.lower()
        d1 = func.lower(DrugInteraction.drug1_name)
        d2 = func.lower(DrugInteraction.drug2_name)
        with session_scope(self.session_factory, "drug_interactions") as db:
            rows = (
                db.query(DrugInteraction)
                .filter(or_(and_(d1 == a, d2 == b), and_(d1 == b, d2 == a)))
                .all()
            )
            records = [InteractionRecord.from_row(r) for r in rows]
        if not records:
            return None
        return _by_severity(records)[0]

    def interactions_for(self, medication, limit=100):
        name = medication.lower()
        with session_scope(self.session_factory, "drug_interactions") as db:
            rows = (
                db.query(DrugInteraction)
                .filter(
                    or_(
                        func.lower(DrugInteraction.drug1_name) == name,
                        func.lower(DrugInteraction.drug2_name) == name,
                    )
                )
                .all()
            )
            records = [InteractionRecord.from_row(r) for r in rows]
        return _by_severity(records)[:limit]

    def interaction_statistics(self):
        with session_scope(self.session_factory, "drug_interactions") as db:
            counts = dict(
                db.query(DrugInteraction.severity, func.count(DrugInteraction.id))
                .group_by(DrugInteraction.severity)
                .all()
            )
            last_updated = db.query(func.max(DrugInteraction.updated_at)).scalar()
        by_severity = {s.value: int(counts.get(s.value, 0)) for s in InteractionSeverity}
        return InteractionStatistics(
            total_interactions=sum(int(c) for c in counts.values()),
            by_severity=by_severity,
            last_updated=last_updated,
        )

    def find_allergy(self, allergen):
        with session_scope(self.session_factory, "allergies") as db:
            row = (
                db.query(Allergy)
                .filter(func.lower(Allergy.allergen) == allergen.lower())
                .first()
            )
            return AllergyRecord.from_row(row) if row else None

    def find_drug_class(self, medication):
        with session_scope(self.session_factory, "medications") as db:
            drug_class = (
                db.query(Medication.drug_class)
                .filter(func.lower(Medication.name) == medication.lower())
                .filter(Medication.drug_class.isnot(None))
                .limit(1)
                .scalar()
            )
        return drug_class.lower() if drug_class else None

    def find_contraindication(self, medication, condition_code):
        with session_scope(self.session_factory, "contraindications") as db:
            row = (
                db.query(Contraindication)
                .filter(func.lower(Contraindication.medication_name) == medication.lower())
                .filter(func.upper(Contraindication.condition_code) == condition_code.upper())
                .first()
            )
            return ContraindicationRecord.from_row(row) if row else None

    def find_therapeutic_range(self, medication, route=None):
        with session_scope(self.session_factory, "therapeutic_ranges") as db:
            rows = (
                db.query(TherapeuticRange)
                .filter(func.lower(TherapeuticRange.medication_name) == medication.lower())
                .order_by(TherapeuticRange.id)
                .all()
            )
            if route:
                # exact route first, then a route-agnostic range
                wanted = route.lower()
                rows = [r for r in rows if (r.route or "").lower() == wanted] + [
                    r for r in rows if not r.route
                ]
            return TherapeuticRangeRecord.from_row(rows[0]) if rows else None

    def find_guidelines(self, condition_code, limit=20):
        code = condition_code.upper()
        with session_scope(self.session_factory, "clinical_guidelines") as db:
            rows = (
                db.query(ClinicalGuideline)
                .join(GuidelineCondition)
                .filter(func.upper(GuidelineCondition.condition_code) == code)
                .order_by(ClinicalGuideline.last_reviewed.desc(), ClinicalGuideline.id)
                .all()
            )
            unique = list({r.id: r for r in rows}.values())
            return [GuidelineRecord.from_row(r) for r in unique[:limit]]

    def search_guidelines(self, query, limit=50):
        pattern = f"%{query.lower()}%"
        with session_scope(self.session_factory, "clinical_guidelines") as db:
            rows = (
                db.query(ClinicalGuideline)
                .filter(
                    or_(
                        func.lower(ClinicalGuideline.title).like(pattern),
                        func.lower(ClinicalGuideline.condition).like(pattern),
                        func.lower(ClinicalGuideline.summary).like(pattern),
                    )
                )
                .order_by(ClinicalGuideline.last_reviewed.desc(), ClinicalGuideline.id)
                .all()
            )
            matched = {r.id for r in rows}
            # tags are a JSON list, matched whole
            wanted = query.lower()
            for r in db.query(ClinicalGuideline).order_by(ClinicalGuideline.last_reviewed.desc()):
                if r.id not in matched and wanted in [t.lower() for t in (r.tags or [])]:
                    rows.append(r)
            return [GuidelineRecord.from_row(r) for r in rows[:limit]]

    def find_guideline(self, guideline_id):
        with session_scope(self.session_factory, "clinical_guidelines") as db:
            row = db.get(ClinicalGuideline, guideline_id)
            return GuidelineRecord.from_row(row) if row else None

    def guideline_statistics(self, reviewed_since):
        with session_scope(self.session_factory, "clinical_guidelines") as db:
            total = db.query(func.count(ClinicalGuideline.id)).scalar()
            by_category = dict(
                db.query(ClinicalGuideline.category, func.count(ClinicalGuideline.id))
                .filter(ClinicalGuideline.category.isnot(None))
                .group_by(ClinicalGuideline.category)
                .all()
            )
            by_level = dict(
                db.query(ClinicalGuideline.evidence_level, func.count(ClinicalGuideline.id))
                .filter(ClinicalGuideline.evidence_level.isnot(None))
                .group_by(ClinicalGuideline.evidence_level)
                .all()
            )
            current = (
                db.query(func.count(ClinicalGuideline.id))
                .filter(ClinicalGuideline.last_reviewed >= reviewed_since)
                .scalar()
            )
        return GuidelineStatistics(
            total_guidelines=int(total or 0),
            by_category={k: int(v) for k, v in by_category.items()},
            by_evidence_level={k: int(v) for k, v in by_level.items()},
            current_guidelines=int(current or 0),
        )


def _summary(r: SafetyCheck) -> SafetyCheckSummary:
    return SafetyCheckSummary(
        id=r.id,
        patient_id=r.patient_id,
        created_at=r.created_at,
        medications=r.medications or [],
        risk_score=r.risk_score or 0,
        risk_level=r.risk_level or "low",
        blocks_administration=bool(r.blocks_administration),
        findings=r.findings or {},
        recommendations=r.recommendations or [],
        alert_status=r.alert_status,
        acknowledged_by=r.acknowledged_by,
        acknowledged_at=r.acknowledged_at,
        acknowledgment_note=r.acknowledgment_note,
        dismissed_by=r.dismissed_by,
        dismissed_at=r.dismissed_at,
        dismissal_reason=r.dismissal_reason,
    )


class SafetyCheckLog:
    """History of comprehensive safety checks. High-risk checks are kept as active alerts."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def record(self, patient_id, medications, overall_risk, findings, recommendations=None) -> Optional[int]:
        alert = overall_risk.level == "high"
        db = self.session_factory()
        try:
            entry = SafetyCheck(
                patient_id=patient_id,
                medications=medications,
                risk_score=overall_risk.score,
                risk_level=overall_risk.level,
                blocks_administration=overall_risk.blocks_administration,
                findings=findings,
                recommendations=list(recommendations or []),
                alert_status=AlertStatus.ACTIVE.value if alert else None,
            )
            db.add(entry)
            db.commit()
            if alert:
                log.warning(
                    "High-risk medication check recorded (check=%s, patient=%s, score=%s)",
                    entry.id, patient_id, overall_risk.score,
                )
            return entry.id
        except SQLAlchemyError as e:
            db.rollback()
            log.error("Failed to save safety check history: %s", e)
            return None
        finally:
            db.close()

    def recent(self, limit: int = 50, patient_id: Optional[str] = None) -> List[SafetyCheckSummary]:
        with session_scope(self.session_factory, "safety_checks") as db:
            q = db.query(SafetyCheck)
            if patient_id:
                q = q.filter(SafetyCheck.patient_id == patient_id)
            q = q.order_by(SafetyCheck.created_at.desc(), SafetyCheck.id.desc()).limit(limit)
            return [_summary(r) for r in q]

    def alerts(
        self, patient_id: Optional[str] = None, status: Optional[AlertStatus] = None, limit: int = 100
    ) -> List[SafetyCheckSummary]:
        with session_scope(self.session_factory, "safety_checks") as db:
            q = db.query(SafetyCheck).filter(SafetyCheck.alert_status.isnot(None))
            if patient_id:
                q = q.filter(SafetyCheck.patient_id == patient_id)
            if status:
                q = q.filter(SafetyCheck.alert_status == AlertStatus(status).value)
            q = q.order_by(SafetyCheck.created_at.desc(), SafetyCheck.id.desc()).limit(limit)
            return [_summary(r) for r in q]

    def _resolve(self, check_id: int, **changes) -> Optional[SafetyCheckSummary]:
        with session_scope(self.session_factory, "safety_checks") as db:
            entry = db.get(SafetyCheck, check_id)
            if entry is None or entry.alert_status is None:
                return None
            for key, value in changes.items():
                setattr(entry, key, value)
            db.commit()
            db.refresh(entry)
            return _summary(entry)

    def acknowledge(self, check_id: int, user_id: str, note: Optional[str] = None):
        """Mark an alert acknowledged. Returns None when the check has no alert."""
        summary = self._resolve(
            check_id,
            alert_status=AlertStatus.ACKNOWLEDGED.value,
            acknowledged_by=user_id,
            acknowledged_at=_utcnow(),
            acknowledgment_note=note,
        )
        if summary:
            log.info("Alert %s acknowledged by %s", check_id, user_id)
        return summary

    def dismiss(self, check_id: int, user_id: str, reason: str):
        summary = self._resolve(
            check_id,
            alert_status=AlertStatus.DISMISSED.value,
            dismissed_by=user_id,
            dismissed_at=_utcnow(),
            dismissal_reason=reason,
        )
        if summary:
            log.info("Alert %s dismissed by %s: %s", check_id, user_id, reason)
        return summary

    def alert_summary(self) -> AlertSummary:
        with session_scope(self.session_factory, "safety_checks") as db:
            by_status = dict(
                db.query(SafetyCheck.alert_status, func.count(SafetyCheck.id))
                .filter(SafetyCheck.alert_status.isnot(None))
                .group_by(SafetyCheck.alert_status)
                .all()
            )
            by_level = dict(
                db.query(SafetyCheck.risk_level, func.count(SafetyCheck.id))
                .filter(SafetyCheck.alert_status.isnot(None))
                .group_by(SafetyCheck.risk_level)
                .all()
            )
        return AlertSummary(
            total_alerts=sum(int(c) for c in by_status.values()),
            by_status={s.value: int(by_status.get(s.value, 0)) for s in AlertStatus},
            by_risk_level={k: int(v) for k, v in by_level.items()},
        )
