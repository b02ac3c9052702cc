import pytest
import requests

from rx_cds.config import Settings
from rx_cds.errors import LookupFailed
from rx_cds.services.drug_class import (
    ChainedClassifier,
    LookupTableClassifier,
    RxClassClassifier,
    SuffixHeuristicClassifier,
    default_classifier,
)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, params, timeout))
        if self.error:
            raise self.error
        return self.response


def rxclass_payload(*class_names):
    return {
        "rxclassDrugInfoList": {
            "rxclassDrugInfo": [{"rxclassMinConceptItem": {"className": n}} for n in class_names]
        }
    }


def test_store_class_takes_precedence_over_table(make_store):
    store = make_store(medications=[{"name": "Keflex", "drug_class": "beta-lactam"}])
    assert LookupTableClassifier(store).classify("keflex") == "beta-lactam"
    assert LookupTableClassifier().classify("  KEFLEX ") == "cephalosporin"


def test_table_miss_is_unknown():
    assert LookupTableClassifier().classify("Mysterydrug") is None
    assert LookupTableClassifier().classify("") is None


@pytest.mark.parametrize(
    "name, drug_class",
    [
        ("Nafcillin", "penicillin"),
        ("Cefuroxime", "cephalosporin"),
        ("Doripenem", "carbapenem"),
        ("Metoprolol", "beta-blocker"),
        ("Levofloxacin", "fluoroquinolone"),
        ("Ketoprofen", "nsaid"),
        ("Pantoprazole", "proton-pump-inhibitor"),
    ],
)
def test_suffix_heuristic(name, drug_class):
    assert SuffixHeuristicClassifier().classify(name) == drug_class


def test_suffix_heuristic_unknown():
    assert SuffixHeuristicClassifier().classify("Warfarin") is None


def test_chain_returns_first_answer():
    chain = ChainedClassifier(LookupTableClassifier(table={}), SuffixHeuristicClassifier())
    assert chain.classify("Ampicillin") == "penicillin"
    assert ChainedClassifier(LookupTableClassifier(table={})).classify("Ampicillin") is None


def test_rxclass_maps_atc_class():
    session = FakeSession(FakeResponse(rxclass_payload("BETA-LACTAM ANTIBACTERIALS, PENICILLINS")))
    classifier = RxClassClassifier("https://rxnav.example/REST/", timeout=2.0, session=session)

    assert classifier.classify("Amoxicillin") == "penicillin"
    url, params, timeout = session.requests[0]
    assert url == "https://rxnav.example/REST/rxclass/class/byDrugName.json"
    assert params == {"drugName": "amoxicillin", "relaSource": "ATC"}
    assert timeout == 2.0


def test_rxclass_no_known_class():
    session = FakeSession(FakeResponse({}))
    assert RxClassClassifier(session=session).classify("Warfarin") is None


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(error=requests.ConnectionError("down")),
        FakeSession(FakeResponse({}, status_code=503)),
        FakeSession(FakeResponse(ValueError("not json"))),
    ],
)
def test_rxclass_failure_is_a_lookup_failure(session):
    with pytest.raises(LookupFailed):
        RxClassClassifier(session=session).classify("Amoxicillin")


def test_default_classifier_chain():
    chain = default_classifier()
    assert [type(c) for c in chain.classifiers] == [LookupTableClassifier, SuffixHeuristicClassifier]

    chain = default_classifier(settings=Settings(rxclass_enabled=True))
    assert [type(c) for c in chain.classifiers] == [
        LookupTableClassifier,
        RxClassClassifier,
        SuffixHeuristicClassifier,
    ]
