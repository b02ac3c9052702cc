import datetime

import pytest
from fastapi.testclient import TestClient

from rx_cds.config import Settings
from rx_cds.db import init_db, make_engine, make_session_factory
from rx_cds.errors import LookupFailed
from rx_cds.main import create_app
from rx_cds.repository import ReferenceStore
from rx_cds.schemas import (
    AllergyRecord,
    ContraindicationRecord,
    GuidelineRecord,
    GuidelineStatistics,
    InteractionRecord,
    InteractionSeverity,
    InteractionStatistics,
    TherapeuticRangeRecord,
    severity_rank,
)
from rx_cds.seed import load_seed, seed_reference_data


class FakeReferenceStore(ReferenceStore):
    """Dict-backed store with the same matching rules as the SQL store."""

    def __init__(
        self, interactions=(), medications=(), allergies=(), contraindications=(), ranges=(), guidelines=()
    ):
        self.interactions = [InteractionRecord.from_row(r) for r in interactions]
        self.classes = {m["name"].lower(): m["drug_class"] for m in medications if m.get("drug_class")}
        self.allergies = [AllergyRecord.from_row(r) for r in allergies]
        self.contraindications = [ContraindicationRecord.from_row(r) for r in contraindications]
        self.ranges = [TherapeuticRangeRecord.from_row(r) for r in ranges]
        self.guidelines = [
            GuidelineRecord.from_row({"id": i, **r}) for i, r in enumerate(guidelines, start=1)
        ]
        self.calls = []

    @classmethod
    def from_seed(cls):
        data = load_seed()
        return cls(
            interactions=data["drug_interactions"],
            medications=data["medications"],
            allergies=data["allergies"],
            contraindications=data["contraindications"],
            ranges=data["therapeutic_ranges"],
            guidelines=data["clinical_guidelines"],
        )

    def find_interaction(self, drug_a, drug_b):
        self.calls.append(("find_interaction", drug_a, drug_b))
        pair = {drug_a.lower(), drug_b.lower()}
        matches = [
            r for r in self.interactions if {r.drug1_name.lower(), r.drug2_name.lower()} == pair
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: severity_rank(r.severity))

    def interactions_for(self, medication, limit=100):
        name = medication.lower()
        matches = [r for r in self.interactions if name in (r.drug1_name.lower(), r.drug2_name.lower())]
        return sorted(matches, key=lambda r: severity_rank(r.severity), reverse=True)[:limit]

    def interaction_statistics(self):
        by_severity = {s.value: 0 for s in InteractionSeverity}
        for r in self.interactions:
            by_severity[r.severity.value] += 1
        return InteractionStatistics(total_interactions=len(self.interactions), by_severity=by_severity)

    def find_allergy(self, allergen):
        self.calls.append(("find_allergy", allergen))
        for r in self.allergies:
            if r.allergen.lower() == allergen.lower():
                return r
        return None

    def find_drug_class(self, medication):
        self.calls.append(("find_drug_class", medication))
        return self.classes.get(medication.lower())

    def find_contraindication(self, medication, condition_code):
        self.calls.append(("find_contraindication", medication, condition_code))
        for r in self.contraindications:
            if (
                r.medication_name.lower() == medication.lower()
                and r.condition_code.upper() == condition_code.upper()
            ):
                return r
        return None

    def find_therapeutic_range(self, medication, route=None):
        self.calls.append(("find_therapeutic_range", medication, route))
        rows = [r for r in self.ranges if r.medication_name.lower() == medication.lower()]
        if route:
            rows = [r for r in rows if (r.route or "").lower() == route.lower()] + [
                r for r in rows if not r.route
            ]
        return rows[0] if rows else None

    def find_guidelines(self, condition_code, limit=20):
        self.calls.append(("find_guidelines", condition_code))
        code = condition_code.upper()
        rows = [g for g in self.guidelines if code in (c.upper() for c in g.icd_codes)]
        rows.sort(key=lambda g: g.last_reviewed or datetime.date.min, reverse=True)
        return rows[:limit]

    def search_guidelines(self, query, limit=50):
        q = query.lower()
        rows = [
            g for g in self.guidelines
            if q in g.title.lower() or q in g.condition.lower() or q in g.summary.lower()
            or q in [t.lower() for t in g.tags]
        ]
        return rows[:limit]

    def find_guideline(self, guideline_id):
        return next((g for g in self.guidelines if g.id == guideline_id), None)

    def guideline_statistics(self, reviewed_since):
        by_category, by_level = {}, {}
        for g in self.guidelines:
            if g.category:
                by_category[g.category] = by_category.get(g.category, 0) + 1
            if g.evidence_level:
                by_level[g.evidence_level] = by_level.get(g.evidence_level, 0) + 1
        return GuidelineStatistics(
            total_guidelines=len(self.guidelines),
            by_category=by_category,
            by_evidence_level=by_level,
            current_guidelines=sum(
                1 for g in self.guidelines if g.last_reviewed and g.last_reviewed >= reviewed_since
            ),
        )


class FailingReferenceStore(ReferenceStore):
    """Every lookup fails the way an unreachable database does."""

    def _fail(self, *args, **kwargs):
        raise LookupFailed("Reference lookup failed: store unavailable")

    find_interaction = _fail
    interactions_for = _fail
    interaction_statistics = _fail
    find_allergy = _fail
    find_drug_class = _fail
    find_contraindication = _fail
    find_therapeutic_range = _fail
    find_guidelines = _fail
    search_guidelines = _fail
    find_guideline = _fail
    guideline_statistics = _fail


@pytest.fixture
def fake_store():
    return FakeReferenceStore.from_seed()


@pytest.fixture
def empty_store():
    return FakeReferenceStore()


@pytest.fixture
def failing_store():
    return FailingReferenceStore()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    factory = make_session_factory(engine)
    seed_reference_data(factory)
    yield factory
    engine.dispose()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'cds.db'}",
        seed_reference_data=True,
    )


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c
    app.state.engine.dispose()


@pytest.fixture
def make_store():
    return FakeReferenceStore
