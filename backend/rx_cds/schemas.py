# backend/rx_cds/schemas.py
import datetime
from enum import Enum
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
)
from pydantic.alias_generators import to_camel

from rx_cds.errors import ReferenceDataError

T = TypeVar("T")


class CamelModel(BaseModel):
    """snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Ordered enums
# ---------------------------------------------------------------------------

class InteractionSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"


class AllergySeverity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"
    LIFE_THREATENING = "life-threatening"


class ContraindicationSeverity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"
    CRITICAL = "critical"


class ContraindicationType(str, Enum):
    ABSOLUTE = "absolute"
    RELATIVE = "relative"


class AllergyAlertType(str, Enum):
    DIRECT_MATCH = "direct-match"
    CROSS_REACTIVITY = "cross-reactivity"
    CLASS_WARNING = "class-warning"


class DoseStatus(str, Enum):
    OK = "ok"
    BELOW_RANGE = "below-range"
    ABOVE_RANGE = "above-range"
    SUB_THERAPEUTIC = "sub-therapeutic"
    TOXIC = "toxic"


class HepaticFunction(str, Enum):
    NORMAL = "normal"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


NO_SEVERITY = "none"


def severity_rank(severity: Enum) -> int:
    """Position of a member in its enum's declaration order (0 = least severe)."""
    return list(type(severity)).index(severity)


def severity_weight(severity: Enum) -> int:
    # 1, 2, 4, 8
    return 2 ** severity_rank(severity)


def highest_severity(severities: Iterable[Any], enum_cls) -> str:
    ranked = [enum_cls(s) for s in severities]
    if not ranked:
        return NO_SEVERITY
    return max(ranked, key=severity_rank).value


# ---------------------------------------------------------------------------
# Request side
# ---------------------------------------------------------------------------

class MedicationRef(CamelModel):
    name: str = Field(min_length=1)
    rx_norm_code: Optional[str] = None


class MedicationOrder(MedicationRef):
    dose: str
    frequency: Optional[str] = None
    route: Optional[str] = None


class ConditionRef(CamelModel):
    code: str = Field(min_length=1)  # ICD-10
    name: Optional[str] = None


class PatientContext(CamelModel):
    patient_id: Optional[str] = None
    age: Optional[float] = Field(default=None, ge=0, le=150)  # years
    weight: Optional[float] = Field(default=None, gt=0)  # kg
    renal_function: Optional[float] = Field(default=None, ge=0)  # GFR, mL/min
    hepatic_function: Optional[HepaticFunction] = None
    allergies: List[str] = Field(default_factory=list)
    conditions: List[ConditionRef] = Field(default_factory=list)


class CheckRequest(CamelModel):
    medications: List[MedicationRef]
    patient_context: PatientContext = Field(default_factory=PatientContext)


class DoseCheckRequest(CamelModel):
    medications: List[MedicationOrder]
    patient_context: PatientContext = Field(default_factory=PatientContext)


class SafetyCheckRequest(CamelModel):
    medications: List[MedicationOrder] = Field(min_length=1)
    patient_context: PatientContext = Field(default_factory=PatientContext)


# ---------------------------------------------------------------------------
# Reference data records
# ---------------------------------------------------------------------------

class ReferenceRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    @classmethod
    def from_row(cls, row):
        """Typed deserialization of a store row; missing required columns fail fast."""
        try:
            if isinstance(row, Mapping):
                return cls.model_validate(dict(row))
            return cls.model_validate(row, from_attributes=True)
        except ValidationError as e:
            raise ReferenceDataError(f"Invalid {cls.__name__} row: {e}") from e


class InteractionRecord(ReferenceRecord):
    drug1_name: str
    drug2_name: str
    severity: InteractionSeverity
    description: Optional[str] = None
    mechanism: Optional[str] = None
    recommendation: Optional[str] = None
    evidence_level: Optional[str] = None
    updated_at: Optional[datetime.datetime] = None


class AllergyRecord(ReferenceRecord):
    allergen: str
    allergen_class: Optional[str] = None
    severity: AllergySeverity
    reaction: Optional[str] = None
    cross_reactive_with: List[str] = Field(default_factory=list)

    @field_validator("cross_reactive_with", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return [] if value is None else value


class ContraindicationRecord(ReferenceRecord):
    medication_name: str
    condition_code: str
    condition_name: Optional[str] = None
    type: ContraindicationType
    severity: ContraindicationSeverity
    rationale: str = ""
    alternatives: List[str] = Field(default_factory=list)
    evidence_level: Optional[str] = None

    @field_validator("alternatives", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return [] if value is None else value

    @field_validator("rationale", mode="before")
    @classmethod
    def empty_rationale(cls, value):
        return value or ""


class CamelRecord(ReferenceRecord):
    # JSON columns may carry camelCase keys
    model_config = ConfigDict(
        from_attributes=True, frozen=True, alias_generator=to_camel, populate_by_name=True
    )


class AdjustmentRule(CamelRecord):
    pass


class PediatricRule(AdjustmentRule):
    age_min: Optional[float] = None  # months
    age_max: Optional[float] = None  # months
    min_dose: Optional[float] = None
    max_dose: Optional[float] = None
    calculation_method: Optional[str] = None


class GeriatricRule(AdjustmentRule):
    adjustment: float  # percent reduction of the max dose
    recommendation: Optional[str] = None


class RenalRule(AdjustmentRule):
    gfr_threshold: float
    adjustment: float  # percent reduction of the dose
    recommendation: Optional[str] = None


class HepaticRule(AdjustmentRule):
    recommendation: str
    adjustment: Optional[float] = None


class TherapeuticRangeRecord(ReferenceRecord):
    medication_name: str
    rxnorm_code: Optional[str] = None
    route: Optional[str] = None
    min_dose: float
    max_dose: float
    unit: str
    frequency: Optional[str] = None
    pediatric_dose: Optional[PediatricRule] = None
    geriatric_dose: Optional[GeriatricRule] = None
    renal_adjustment: Optional[RenalRule] = None
    hepatic_adjustment: Optional[HepaticRule] = None
    monitoring_required: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @field_validator("monitoring_required", "warnings", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return [] if value is None else value


class GuidelineRecord(CamelRecord):
    """A clinical practice guideline; served as-is by the guideline routes."""

    id: int
    title: str
    condition: str
    category: Optional[str] = None
    icd_codes: List[str] = Field(default_factory=list)
    summary: str = ""
    evidence_level: Optional[str] = None  # A | B | C | D
    strength_of_recommendation: Optional[str] = None
    first_line_therapy: List[str] = Field(default_factory=list)
    second_line_therapy: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    source: Optional[str] = None
    last_reviewed: Optional[datetime.date] = None

    @field_validator("icd_codes", "first_line_therapy", "second_line_therapy", "tags", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return [] if value is None else value

    @field_validator("summary", mode="before")
    @classmethod
    def empty_summary(cls, value):
        return value or ""


# ---------------------------------------------------------------------------
# Alerts and results
# ---------------------------------------------------------------------------

class InteractionAlert(CamelModel):
    drug1: str
    drug2: str
    severity: InteractionSeverity
    description: Optional[str] = None
    mechanism: Optional[str] = None
    recommendation: Optional[str] = None
    evidence_level: Optional[str] = None

    @computed_field(alias="blocksAdministration")
    @property
    def blocks_administration(self) -> bool:
        return self.severity == InteractionSeverity.CRITICAL


class InteractionResult(CamelModel):
    alerts: List[InteractionAlert] = Field(default_factory=list)

    @computed_field(alias="hasAlerts")
    @property
    def has_alerts(self) -> bool:
        return bool(self.alerts)

    @computed_field(alias="highestSeverity")
    @property
    def highest_severity(self) -> str:
        return highest_severity((a.severity for a in self.alerts), InteractionSeverity)

    @computed_field(alias="requiresAction")
    @property
    def requires_action(self) -> bool:
        return any(
            a.severity in (InteractionSeverity.MAJOR, InteractionSeverity.CRITICAL)
            for a in self.alerts
        )

    @computed_field(alias="blocksAdministration")
    @property
    def blocks_administration(self) -> bool:
        return any(a.blocks_administration for a in self.alerts)


class InteractionStatistics(CamelModel):
    total_interactions: int
    by_severity: Dict[str, int]
    last_updated: Optional[datetime.datetime] = None


class AllergyAlert(CamelModel):
    medication: str
    allergen: str
    alert_type: AllergyAlertType
    severity: AllergySeverity
    cross_reactivity_risk: Optional[int] = None  # percent
    description: str
    recommendation: str

    @computed_field(alias="blocksAdministration")
    @property
    def blocks_administration(self) -> bool:
        return self.severity in (AllergySeverity.SEVERE, AllergySeverity.LIFE_THREATENING)


class AllergyCheckResult(CamelModel):
    alerts: List[AllergyAlert] = Field(default_factory=list)

    @computed_field(alias="hasAlerts")
    @property
    def has_alerts(self) -> bool:
        return bool(self.alerts)

    @computed_field(alias="highestSeverity")
    @property
    def highest_severity(self) -> str:
        return highest_severity((a.severity for a in self.alerts), AllergySeverity)

    @computed_field(alias="blocksAdministration")
    @property
    def blocks_administration(self) -> bool:
        return any(a.blocks_administration for a in self.alerts)


class ContraindicationAlert(CamelModel):
    medication: str
    condition_code: str
    condition_name: Optional[str] = None
    type: ContraindicationType
    severity: ContraindicationSeverity
    rationale: str = ""
    description: str
    recommendation: str
    alternatives: List[str] = Field(default_factory=list)
    evidence_level: Optional[str] = None

    @computed_field(alias="blocksAdministration")
    @property
    def blocks_administration(self) -> bool:
        if self.type == ContraindicationType.ABSOLUTE:
            return True
        return self.severity in (ContraindicationSeverity.SEVERE, ContraindicationSeverity.CRITICAL)


class ContraindicationResult(CamelModel):
    alerts: List[ContraindicationAlert] = Field(default_factory=list)

    @computed_field(alias="hasAlerts")
    @property
    def has_alerts(self) -> bool:
        return bool(self.alerts)

    @computed_field(alias="absoluteContraindications")
    @property
    def absolute_contraindications(self) -> List[ContraindicationAlert]:
        return [a for a in self.alerts if a.type == ContraindicationType.ABSOLUTE]

    @computed_field(alias="relativeContraindications")
    @property
    def relative_contraindications(self) -> List[ContraindicationAlert]:
        return [a for a in self.alerts if a.type == ContraindicationType.RELATIVE]

    @computed_field(alias="highestSeverity")
    @property
    def highest_severity(self) -> str:
        return highest_severity((a.severity for a in self.alerts), ContraindicationSeverity)

    @computed_field(alias="blocksAdministration")
    @property
    def blocks_administration(self) -> bool:
        return any(a.blocks_administration for a in self.alerts)


class DoseRange(CamelModel):
    min: float
    max: float
    unit: str


class AdjustedDose(CamelModel):
    dose: float
    unit: str
    reason: str


class DoseValidation(CamelModel):
    medication: str
    prescribed_dose: float = 0
    prescribed_unit: str = ""
    therapeutic_range: DoseRange
    status: DoseStatus
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    adjustment_needed: bool = False
    adjusted_dose: Optional[AdjustedDose] = None
    doses_per_day: Optional[float] = None
    daily_dose: Optional[float] = None

    @computed_field(alias="isValid")
    @property
    def is_valid(self) -> bool:
        return self.status != DoseStatus.TOXIC


class DoseValidationResult(CamelModel):
    validations: List[DoseValidation] = Field(default_factory=list)

    @computed_field(alias="hasErrors")
    @property
    def has_errors(self) -> bool:
        return any(v.status in (DoseStatus.ABOVE_RANGE, DoseStatus.TOXIC) for v in self.validations)

    @computed_field(alias="hasWarnings")
    @property
    def has_warnings(self) -> bool:
        return any(v.warnings for v in self.validations)


class GuidelineRecommendation(CamelModel):
    guideline_id: int
    guideline: str
    condition: str
    recommendation: str
    evidence_level: Optional[str] = None
    strength: Optional[str] = None
    score: int
    applicability: str  # high | medium | low
    reasoning: str


class GuidelineStatistics(CamelModel):
    total_guidelines: int
    by_category: Dict[str, int]
    by_evidence_level: Dict[str, int]
    current_guidelines: int


class OverallRisk(CamelModel):
    score: int
    level: str  # low | medium | high
    factors: Dict[str, int]
    blocks_administration: bool


class SafetyCheckResult(CamelModel):
    interactions: InteractionResult
    allergy_alerts: AllergyCheckResult
    contraindications: ContraindicationResult
    dose_validation: DoseValidationResult
    guidelines: List[GuidelineRecommendation] = Field(default_factory=list)
    overall_risk: OverallRisk
    check_id: Optional[int] = None


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    DISMISSED = "dismissed"


class SafetyCheckSummary(CamelModel):
    id: int
    patient_id: Optional[str] = None
    created_at: datetime.datetime
    medications: List[Dict[str, Any]] = Field(default_factory=list)
    risk_score: int
    risk_level: str
    blocks_administration: bool
    findings: Dict[str, Any] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)
    # set only for high-risk checks
    alert_status: Optional[AlertStatus] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime.datetime] = None
    acknowledgment_note: Optional[str] = None
    dismissed_by: Optional[str] = None
    dismissed_at: Optional[datetime.datetime] = None
    dismissal_reason: Optional[str] = None


class AcknowledgeRequest(CamelModel):
    user_id: str = Field(min_length=1)
    note: Optional[str] = None


class DismissRequest(CamelModel):
    user_id: str = Field(min_length=1)
    reason: str = Field(min_length=1)


class AlertSummary(CamelModel):
    total_alerts: int
    by_status: Dict[str, int]
    by_risk_level: Dict[str, int]


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

class ApiResponse(CamelModel, Generic[T]):
    success: bool = True
    data: T


class ErrorBody(CamelModel):
    code: str
    message: str


class ErrorResponse(CamelModel):
    success: bool = False
    error: ErrorBody
