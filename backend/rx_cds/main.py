# backend/rx_cds/main.py
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rx_cds.config import Settings
from rx_cds.db import init_db, make_engine, make_session_factory
from rx_cds.errors import CDSError, LookupFailed, NotFound
from rx_cds.repository import ReferenceStore, SafetyCheckLog, SqlReferenceStore
from rx_cds.schemas import (
    AcknowledgeRequest,
    AlertStatus,
    AlertSummary,
    AllergyCheckResult,
    ApiResponse,
    CheckRequest,
    ContraindicationResult,
    DismissRequest,
    DoseCheckRequest,
    DoseValidationResult,
    ErrorBody,
    ErrorResponse,
    GuidelineRecommendation,
    GuidelineRecord,
    GuidelineStatistics,
    InteractionAlert,
    InteractionResult,
    InteractionStatistics,
    SafetyCheckRequest,
    SafetyCheckResult,
    SafetyCheckSummary,
)
from rx_cds.seed import seed_reference_data
from rx_cds.services.allergies import AllergyChecker
from rx_cds.services.contraindications import ContraindicationChecker
from rx_cds.services.dose_validation import DoseValidator
from rx_cds.services.drug_class import default_classifier
from rx_cds.services.guidelines import GuidelineService
from rx_cds.services.interactions import InteractionChecker
from rx_cds.services.safety import SafetyCheckService, call_with_deadline

log = logging.getLogger("uvicorn.error")

MAX_LIMIT = 500


@dataclass
class CDSServices:
    store: ReferenceStore
    interactions: InteractionChecker
    allergies: AllergyChecker
    contraindications: ContraindicationChecker
    doses: DoseValidator
    guidelines: GuidelineService
    safety: SafetyCheckService
    history: SafetyCheckLog
    timeout: float = 15.0

    def call(self, what, fn, *args):
        """Run one checker under the same deadline as the combined check."""
        return call_with_deadline(fn, *args, timeout=self.timeout, what=what)


def get_services(request: Request) -> CDSServices:
    return request.app.state.services


router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok", "service": "rx-cds"}


@router.get("/health/ready")
def ready(services: CDSServices = Depends(get_services)):
    try:
        services.store.interaction_statistics()
    except LookupFailed as e:
        return JSONResponse(status_code=503, content={"status": "not ready", "error": e.message})
    return {"status": "ready"}


@router.post("/api/v1/drug-interactions/check", response_model=ApiResponse[InteractionResult])
def route_check_interactions(payload: CheckRequest, services: CDSServices = Depends(get_services)):
    result = services.call("Interaction check", services.interactions.check_interactions, payload.medications)
    return ApiResponse(data=result)


@router.get("/api/v1/drug-interactions/statistics", response_model=ApiResponse[InteractionStatistics])
def route_interaction_statistics(services: CDSServices = Depends(get_services)):
    return ApiResponse(data=services.call("Interaction statistics", services.interactions.statistics))


@router.get("/api/v1/drug-interactions/{medication}", response_model=ApiResponse[List[InteractionAlert]])
def route_interactions_for(
    medication: str,
    limit: int = Query(100, ge=1, le=MAX_LIMIT),
    services: CDSServices = Depends(get_services),
):
    records = services.call(
        "Interaction listing", services.interactions.interactions_for_medication, medication, limit
    )
    return ApiResponse(
        data=[
            InteractionAlert(
                drug1=r.drug1_name,
                drug2=r.drug2_name,
                severity=r.severity,
                description=r.description,
                mechanism=r.mechanism,
                recommendation=r.recommendation,
                evidence_level=r.evidence_level,
            )
            for r in records
        ]
    )


@router.post("/api/v1/allergy-alerts/check", response_model=ApiResponse[AllergyCheckResult])
def route_check_allergies(payload: CheckRequest, services: CDSServices = Depends(get_services)):
    result = services.call(
        "Allergy check",
        services.allergies.check_allergies, payload.medications, payload.patient_context.allergies,
    )
    return ApiResponse(data=result)


@router.post("/api/v1/contraindications/check", response_model=ApiResponse[ContraindicationResult])
def route_check_contraindications(payload: CheckRequest, services: CDSServices = Depends(get_services)):
    result = services.call(
        "Contraindication check",
        services.contraindications.check_contraindications,
        payload.medications, payload.patient_context.conditions,
    )
    return ApiResponse(data=result)


@router.post("/api/v1/dose-validation/validate", response_model=ApiResponse[DoseValidationResult])
def route_validate_doses(payload: DoseCheckRequest, services: CDSServices = Depends(get_services)):
    result = services.call(
        "Dose validation", services.doses.validate_doses, payload.medications, payload.patient_context
    )
    return ApiResponse(data=result)


@router.post("/api/v1/clinical-guidelines/recommend", response_model=ApiResponse[List[GuidelineRecommendation]])
def route_recommend_guidelines(payload: CheckRequest, services: CDSServices = Depends(get_services)):
    result = services.call(
        "Guideline lookup",
        services.guidelines.get_guidelines, payload.medications, payload.patient_context.conditions,
    )
    return ApiResponse(data=result)


@router.get("/api/v1/clinical-guidelines/search", response_model=ApiResponse[List[GuidelineRecord]])
def route_search_guidelines(
    q: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
    services: CDSServices = Depends(get_services),
):
    return ApiResponse(data=services.call("Guideline search", services.guidelines.search, q, limit))


@router.get("/api/v1/clinical-guidelines/statistics", response_model=ApiResponse[GuidelineStatistics])
def route_guideline_statistics(services: CDSServices = Depends(get_services)):
    return ApiResponse(data=services.call("Guideline statistics", services.guidelines.statistics))


@router.get("/api/v1/clinical-guidelines/{guideline_id}", response_model=ApiResponse[GuidelineRecord])
def route_get_guideline(guideline_id: int, services: CDSServices = Depends(get_services)):
    guideline = services.call("Guideline lookup", services.guidelines.get, guideline_id)
    if guideline is None:
        raise NotFound(f"Guideline {guideline_id} not found")
    return ApiResponse(data=guideline)


@router.post("/api/v1/check-medication", response_model=ApiResponse[SafetyCheckResult])
def route_check_medication(payload: SafetyCheckRequest, services: CDSServices = Depends(get_services)):
    result = services.safety.check_medication(payload.medications, payload.patient_context)
    return ApiResponse(data=result)


@router.get("/api/v1/history", response_model=ApiResponse[List[SafetyCheckSummary]])
def list_history(limit: int = Query(50, ge=1, le=MAX_LIMIT), services: CDSServices = Depends(get_services)):
    """List recent safety checks across all patients"""
    return ApiResponse(data=services.history.recent(limit=limit))


@router.get("/api/v1/history/{patient_id}", response_model=ApiResponse[List[SafetyCheckSummary]])
def get_patient_history(
    patient_id: str,
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
    services: CDSServices = Depends(get_services),
):
    """
    Returns recent safety checks recorded for a given patient id.
    """
    return ApiResponse(data=services.history.recent(limit=limit, patient_id=patient_id))


@router.get("/api/v1/alerts", response_model=ApiResponse[List[SafetyCheckSummary]])
def list_alerts(
    patient_id: Optional[str] = Query(None, alias="patientId"),
    status: Optional[AlertStatus] = None,
    limit: int = Query(100, ge=1, le=MAX_LIMIT),
    services: CDSServices = Depends(get_services),
):
    """High-risk checks, newest first"""
    return ApiResponse(data=services.history.alerts(patient_id=patient_id, status=status, limit=limit))


@router.get("/api/v1/alerts/summary", response_model=ApiResponse[AlertSummary])
def alert_summary(services: CDSServices = Depends(get_services)):
    return ApiResponse(data=services.history.alert_summary())


@router.post("/api/v1/alerts/{check_id}/acknowledge", response_model=ApiResponse[SafetyCheckSummary])
def acknowledge_alert(check_id: int, payload: AcknowledgeRequest, services: CDSServices = Depends(get_services)):
    entry = services.history.acknowledge(check_id, payload.user_id, payload.note)
    if entry is None:
        raise NotFound(f"No alert for safety check {check_id}")
    return ApiResponse(data=entry)


@router.post("/api/v1/alerts/{check_id}/dismiss", response_model=ApiResponse[SafetyCheckSummary])
def dismiss_alert(check_id: int, payload: DismissRequest, services: CDSServices = Depends(get_services)):
    entry = services.history.dismiss(check_id, payload.user_id, payload.reason)
    if entry is None:
        raise NotFound(f"No alert for safety check {check_id}")
    return ApiResponse(data=entry)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


async def cds_error_handler(request: Request, exc: CDSError):
    log.error("CDS check failed on %s [%s]: %s", request.url.path, exc.code, exc.message)
    return _error(exc.status_code, exc.code, exc.message)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return _error(400, "VALIDATION_ERROR", details or "Invalid request")


async def unexpected_error_handler(request: Request, exc: Exception):
    log.exception("Unexpected error in %s", request.url.path)
    return _error(500, "INTERNAL_ERROR", "Failed to complete medication safety check")


def create_app(settings: Settings = None, store: ReferenceStore = None, classifier=None) -> FastAPI:
    """
    Build the API. ``store`` and ``classifier`` replace the SQL-backed
    defaults (tests pass in-memory fakes).
    """
    settings = settings or Settings.from_env()

    engine = make_engine(settings.database_url, settings.lookup_timeout)
    init_db(engine)
    session_factory = make_session_factory(engine)
    if settings.seed_reference_data:
        seed_reference_data(session_factory)

    store = store or SqlReferenceStore(session_factory)
    history = SafetyCheckLog(session_factory)
    interactions = InteractionChecker(store)
    allergies = AllergyChecker(store, classifier or default_classifier(store, settings))
    contraindications = ContraindicationChecker(store)
    doses = DoseValidator(store)
    guidelines = GuidelineService(store)
    safety = SafetyCheckService(
        interactions, allergies, contraindications, doses,
        history=history, timeout=settings.check_timeout, guidelines=guidelines,
    )

    app = FastAPI(title="Rx CDS API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.services = CDSServices(
        store=store,
        interactions=interactions,
        allergies=allergies,
        contraindications=contraindications,
        doses=doses,
        guidelines=guidelines,
        safety=safety,
        history=history,
        timeout=settings.check_timeout,
    )
    app.add_exception_handler(CDSError, cds_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(router)
    log.info("Rx CDS API ready (reference store: %s)", type(store).__name__)
    return app


def run():
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(
        "rx_cds.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
