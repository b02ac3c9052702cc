import datetime

import pytest

from rx_cds.db import DrugInteraction, TherapeuticRange, make_engine, make_session_factory
from rx_cds.errors import LookupFailed, ReferenceDataError
from rx_cds.repository import SafetyCheckLog, SqlReferenceStore
from rx_cds.schemas import (
    AlertStatus,
    AllergySeverity,
    ContraindicationType,
    InteractionSeverity,
    OverallRisk,
)
from rx_cds.seed import seed_reference_data


@pytest.fixture
def store(session_factory):
    return SqlReferenceStore(session_factory)


def add_rows(session_factory, *rows):
    db = session_factory()
    db.add_all(rows)
    db.commit()
    db.close()


def test_find_interaction_is_order_and_case_insensitive(store):
    rec = store.find_interaction("aspirin", "WARFARIN")
    assert rec.severity == InteractionSeverity.MAJOR
    assert (rec.drug1_name, rec.drug2_name) == ("Warfarin", "Aspirin")
    assert store.find_interaction("Metformin", "Aspirin") is None


def test_find_interaction_prefers_most_severe(store, session_factory):
    add_rows(
        session_factory,
        DrugInteraction(drug1_name="Aspirin", drug2_name="Warfarin", severity="critical"),
    )
    assert store.find_interaction("Warfarin", "Aspirin").severity == InteractionSeverity.CRITICAL


def test_interactions_for(store):
    records = store.interactions_for("warfarin")
    assert len(records) == 3
    assert len(store.interactions_for("Warfarin", limit=1)) == 1
    assert store.interactions_for("Nothing") == []


def test_interaction_statistics(store):
    stats = store.interaction_statistics()
    assert stats.total_interactions == 8
    assert stats.by_severity == {"minor": 1, "moderate": 1, "major": 4, "critical": 2}
    assert stats.last_updated is not None


def test_find_allergy(store):
    rec = store.find_allergy("PENICILLIN")
    assert rec.severity == AllergySeverity.SEVERE
    assert rec.cross_reactive_with == ["cephalosporin", "carbapenem"]
    assert store.find_allergy("Latex") is None


def test_find_drug_class(store):
    assert store.find_drug_class("amoxicillin") == "penicillin"
    assert store.find_drug_class("Mysterydrug") is None


def test_find_contraindication(store):
    rec = store.find_contraindication("metformin", "n18.5")
    assert rec.type == ContraindicationType.ABSOLUTE
    assert rec.alternatives == ["Insulin", "Linagliptin"]
    assert store.find_contraindication("Metformin", "I10") is None


def test_therapeutic_range_rules_are_typed(store):
    rec = store.find_therapeutic_range("Metformin")
    assert rec.renal_adjustment.gfr_threshold == 30
    assert rec.pediatric_dose is None
    assert rec.monitoring_required == ["Renal function"]


def test_therapeutic_range_route_preference(store, session_factory):
    add_rows(
        session_factory,
        TherapeuticRange(medication_name="Testdrug", route=None, min_dose=1, max_dose=2, unit="mg"),
        TherapeuticRange(medication_name="Testdrug", route="IV", min_dose=10, max_dose=20, unit="mg"),
    )
    assert store.find_therapeutic_range("testdrug", "iv").min_dose == 10
    assert store.find_therapeutic_range("testdrug", "oral").min_dose == 1
    assert store.find_therapeutic_range("testdrug").min_dose == 1
    assert store.find_therapeutic_range("Vancomycin", "oral") is None


def test_missing_tables_raise_lookup_failed():
    engine = make_engine("sqlite://")
    store = SqlReferenceStore(make_session_factory(engine))
    with pytest.raises(LookupFailed):
        store.find_allergy("Penicillin")
    with pytest.raises(LookupFailed):
        store.find_interaction("Warfarin", "Aspirin")


def test_invalid_reference_row(store, session_factory):
    add_rows(
        session_factory,
        DrugInteraction(drug1_name="Foo", drug2_name="Bar", severity="catastrophic"),
    )
    with pytest.raises(ReferenceDataError):
        store.find_interaction("Foo", "Bar")


def test_seeding_is_idempotent(session_factory):
    counts = seed_reference_data(session_factory)
    assert set(counts.values()) == {0}


def test_safety_check_log(session_factory):
    log = SafetyCheckLog(session_factory)
    risk = OverallRisk(score=6, level="medium", factors={"interactions": 3}, blocks_administration=False)

    first = log.record("p-1", [{"name": "Warfarin", "dose": "5mg"}], risk, {"doses": {"has_errors": False}})
    second = log.record("p-2", [{"name": "Aspirin", "dose": "100mg"}], risk, {})
    assert first and second

    history = log.recent(patient_id="p-1")
    assert [h.id for h in history] == [first]
    assert history[0].risk_level == "medium"
    assert history[0].medications[0]["name"] == "Warfarin"

    assert len(log.recent()) == 2
    assert len(log.recent(limit=1)) == 1


def test_safety_check_log_swallows_write_failure():
    engine = make_engine("sqlite://")
    log = SafetyCheckLog(make_session_factory(engine))
    risk = OverallRisk(score=0, level="low", factors={}, blocks_administration=False)
    assert log.record("p-1", [], risk, {}) is None


def test_find_guidelines_by_condition_code(store):
    records = store.find_guidelines("e11.9")
    assert [g.title for g in records] == [
        "Standards of Care in Diabetes",
        "Management of Type 2 Diabetes (superseded)",
    ]
    assert records[0].icd_codes == ["E11.9", "E11.65"]
    assert records[0].first_line_therapy == ["Metformin"]
    assert records[0].last_reviewed == datetime.date(2025, 1, 1)
    assert len(store.find_guidelines("E11.9", limit=1)) == 1
    assert store.find_guidelines("Z99.9") == []


def test_search_guidelines(store):
    assert [g.id for g in store.search_guidelines("CKD")] == [1, 5]
    assert [g.id for g in store.search_guidelines("anticoagulation")] == [3]
    assert store.search_guidelines("nothing like this") == []


def test_find_guideline_and_statistics(store):
    assert store.find_guideline(4).condition == "Asthma"
    assert store.find_guideline(99) is None

    stats = store.guideline_statistics(datetime.date(2021, 10, 18))
    assert stats.total_guidelines == 6
    assert stats.current_guidelines == 5
    assert stats.by_category == {"cardiology": 2, "endocrinology": 2, "nephrology": 1, "pulmonology": 1}
    assert stats.by_evidence_level == {"A": 2, "B": 3, "C": 1}


def risk(level, score):
    return OverallRisk(score=score, level=level, factors={}, blocks_administration=level == "high")


def test_high_risk_checks_become_active_alerts(session_factory):
    log = SafetyCheckLog(session_factory)
    high = log.record("p-1", [], risk("high", 12), {}, recommendations=["Avoid combination"])
    medium = log.record("p-1", [], risk("medium", 6), {})

    [alert] = log.alerts()
    assert alert.id == high
    assert alert.alert_status == AlertStatus.ACTIVE
    assert alert.recommendations == ["Avoid combination"]
    assert log.recent(patient_id="p-1")[0].alert_status is None
    assert log.acknowledge(medium, "nurse-1") is None


def test_acknowledge_and_dismiss_alerts(session_factory):
    log = SafetyCheckLog(session_factory)
    first = log.record("p-1", [], risk("high", 10), {})
    second = log.record("p-2", [], risk("high", 14), {})

    acked = log.acknowledge(first, "dr-1", "Discussed with pharmacy")
    assert acked.alert_status == AlertStatus.ACKNOWLEDGED
    assert acked.acknowledged_by == "dr-1"
    assert acked.acknowledgment_note == "Discussed with pharmacy"
    assert acked.acknowledged_at is not None

    dismissed = log.dismiss(second, "dr-2", "Duplicate order")
    assert dismissed.alert_status == AlertStatus.DISMISSED
    assert dismissed.dismissal_reason == "Duplicate order"

    assert log.acknowledge(999, "dr-1") is None
    assert [a.id for a in log.alerts(status="acknowledged")] == [first]
    assert [a.id for a in log.alerts(patient_id="p-2")] == [second]

    summary = log.alert_summary()
    assert summary.total_alerts == 2
    assert summary.by_status == {"active": 0, "acknowledged": 1, "dismissed": 1}
    assert summary.by_risk_level == {"high": 2}
