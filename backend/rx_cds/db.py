# backend/rx_cds/db.py
import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


# --- reference data (read-only for the checkers) -----------------------------

class DrugInteraction(Base):
    __tablename__ = "drug_interactions"

    id = Column(Integer, primary_key=True, index=True)
    drug1_name = Column(String, index=True, nullable=False)
    drug2_name = Column(String, index=True, nullable=False)
    severity = Column(String, nullable=False)  # minor | moderate | major | critical
    description = Column(Text)
    mechanism = Column(Text)
    recommendation = Column(Text)
    evidence_level = Column(String)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class Medication(Base):
    __tablename__ = "medications"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, index=True, nullable=False)
    rxnorm_code = Column(String)
    drug_class = Column(String)


class Allergy(Base):
    __tablename__ = "allergies"

    id = Column(Integer, primary_key=True, index=True)
    allergen = Column(String, index=True, nullable=False)
    allergen_class = Column(String)
    severity = Column(String, nullable=False)  # mild | moderate | severe | life-threatening
    reaction = Column(Text)
    cross_reactive_with = Column(JSON)  # list of drug classes


class Contraindication(Base):
    __tablename__ = "contraindications"

    id = Column(Integer, primary_key=True, index=True)
    medication_name = Column(String, index=True, nullable=False)
    condition_code = Column(String, index=True, nullable=False)  # ICD-10
    condition_name = Column(String)
    type = Column(String, nullable=False)  # absolute | relative
    severity = Column(String, nullable=False)
    rationale = Column(Text)
    alternatives = Column(JSON)
    evidence_level = Column(String)


class TherapeuticRange(Base):
    __tablename__ = "therapeutic_ranges"

    id = Column(Integer, primary_key=True, index=True)
    medication_name = Column(String, index=True, nullable=False)
    rxnorm_code = Column(String)
    route = Column(String)
    min_dose = Column(Float, nullable=False)
    max_dose = Column(Float, nullable=False)
    unit = Column(String, nullable=False)
    frequency = Column(String)
    pediatric_dose = Column(JSON)
    geriatric_dose = Column(JSON)
    renal_adjustment = Column(JSON)
    hepatic_adjustment = Column(JSON)
    monitoring_required = Column(JSON)
    warnings = Column(JSON)


class ClinicalGuideline(Base):
    __tablename__ = "clinical_guidelines"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    condition = Column(String, nullable=False)
    category = Column(String, index=True)
    summary = Column(Text)
    evidence_level = Column(String)  # A | B | C | D
    strength_of_recommendation = Column(String)
    first_line_therapy = Column(JSON)
    second_line_therapy = Column(JSON)
    tags = Column(JSON)
    source = Column(String)
    last_reviewed = Column(Date)

    conditions = relationship(
        "GuidelineCondition", cascade="all, delete-orphan", lazy="selectin", order_by="GuidelineCondition.id"
    )

    @property
    def icd_codes(self):
        return [c.condition_code for c in self.conditions]


class GuidelineCondition(Base):
    __tablename__ = "guideline_conditions"

    id = Column(Integer, primary_key=True)
    guideline_id = Column(Integer, ForeignKey("clinical_guidelines.id"), index=True, nullable=False)
    condition_code = Column(String, index=True, nullable=False)  # ICD-10


# --- check history ----------------------------------------------------------

class SafetyCheck(Base):
    __tablename__ = "safety_checks"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String, index=True)
    medications = Column(JSON)  # list of medication dicts as submitted
    risk_score = Column(Integer)
    risk_level = Column(String)
    blocks_administration = Column(Boolean, default=False)
    findings = Column(JSON)  # alert counts and highest severities per checker
    recommendations = Column(JSON)
    created_at = Column(DateTime, default=_utcnow)

    # alert lifecycle, only for high-risk checks: active -> acknowledged | dismissed
    alert_status = Column(String, index=True)
    acknowledged_by = Column(String)
    acknowledged_at = Column(DateTime)
    acknowledgment_note = Column(Text)
    dismissed_by = Column(String)
    dismissed_at = Column(DateTime)
    dismissal_reason = Column(Text)


def make_engine(database_url: str, lookup_timeout: float = 5.0):
    """Create an engine whose queries are bounded by ``lookup_timeout`` seconds."""
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": lookup_timeout}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    elif database_url.startswith("postgresql"):
        kwargs["connect_args"] = {
            "options": f"-c statement_timeout={int(lookup_timeout * 1000)}",
            "connect_timeout": max(1, int(lookup_timeout)),
        }
        kwargs["pool_pre_ping"] = True
    return create_engine(database_url, **kwargs)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(engine):
    Base.metadata.create_all(bind=engine)
