# backend/rx_cds/services/drug_class.py
"""
Drug class resolution for the allergy checker.

Classifiers are tried in order by ChainedClassifier: the explicit lookup
table first, then (optionally) RxNav RxClass, then the name heuristic. The
heuristic is a best-effort fallback: its suffix list is short and has not
been validated against a drug taxonomy, so it can both miss and misfire.
"""
import abc
import logging
from typing import Dict, Optional

import requests

from rx_cds.errors import LookupFailed
from rx_cds.services.normalize import normalize_drug_name

log = logging.getLogger("drug_class")

RXNAV_BASE = "https://rxnav.nlm.nih.gov/REST"

# Explicit name -> class table. Class names are the keys used by
# CROSS_REACTIVITY_PATTERNS in services/allergies.py.
STATIC_DRUG_CLASSES: Dict[str, str] = {
    # allergen class names as patients report them
    "penicillin": "penicillin",
    "penicillins": "penicillin",
    "cephalosporin": "cephalosporin",
    "cephalosporins": "cephalosporin",
    "carbapenem": "carbapenem",
    "carbapenems": "carbapenem",
    "sulfa": "sulfonamide",
    "sulfa drugs": "sulfonamide",
    "sulfonamide": "sulfonamide",
    "sulfonamides": "sulfonamide",
    "nsaid": "nsaid",
    "nsaids": "nsaid",
    "statin": "statin",
    "statins": "statin",
    "ace inhibitor": "ace-inhibitor",
    "ace inhibitors": "ace-inhibitor",
    # medications
    "amoxicillin": "penicillin",
    "ampicillin": "penicillin",
    "piperacillin-tazobactam": "penicillin",
    "augmentin": "penicillin",
    "cefazolin": "cephalosporin",
    "cephalexin": "cephalosporin",
    "ceftriaxone": "cephalosporin",
    "keflex": "cephalosporin",
    "meropenem": "carbapenem",
    "imipenem": "carbapenem",
    "ertapenem": "carbapenem",
    "sulfamethoxazole-trimethoprim": "sulfonamide",
    "bactrim": "sulfonamide",
    "glipizide": "sulfonylurea",
    "glyburide": "sulfonylurea",
    "glimepiride": "sulfonylurea",
    "hydrochlorothiazide": "thiazide",
    "chlorthalidone": "thiazide",
    "furosemide": "loop-diuretic",
    "bumetanide": "loop-diuretic",
    "torsemide": "loop-diuretic",
    "aspirin": "nsaid",
    "ibuprofen": "nsaid",
    "naproxen": "nsaid",
    "diclofenac": "nsaid",
    "ketorolac": "nsaid",
    "celecoxib": "nsaid",
    "advil": "nsaid",
    "motrin": "nsaid",
    "lisinopril": "ace-inhibitor",
    "enalapril": "ace-inhibitor",
    "losartan": "arb",
    "valsartan": "arb",
    "atorvastatin": "statin",
    "simvastatin": "statin",
    "rosuvastatin": "statin",
}

# (match, fragment, class) in priority order; match is "suffix", "prefix" or "contains"
SUFFIX_RULES = [
    ("contains", "cillin", "penicillin"),
    ("suffix", "penem", "carbapenem"),
    ("prefix", "cef", "cephalosporin"),
    ("prefix", "ceph", "cephalosporin"),
    ("contains", "sulfa", "sulfonamide"),
    ("suffix", "thiazide", "thiazide"),
    ("suffix", "pril", "ace-inhibitor"),
    ("suffix", "sartan", "arb"),
    ("suffix", "statin", "statin"),
    ("suffix", "floxacin", "fluoroquinolone"),
    ("suffix", "cycline", "tetracycline"),
    ("suffix", "thromycin", "macrolide"),
    ("suffix", "olol", "beta-blocker"),
    ("suffix", "prazole", "proton-pump-inhibitor"),
    ("suffix", "profen", "nsaid"),
    ("contains", "aspirin", "nsaid"),
    ("contains", "ibuprofen", "nsaid"),
]

# RxClass ATC / class-name keywords -> our class names
RXCLASS_KEYWORDS = [
    ("penicillin", "penicillin"),
    ("cephalosporin", "cephalosporin"),
    ("carbapenem", "carbapenem"),
    ("sulfonylurea", "sulfonylurea"),
    ("sulfonamide", "sulfonamide"),
    ("thiazide", "thiazide"),
    ("high-ceiling diuretic", "loop-diuretic"),
    ("ace inhibitor", "ace-inhibitor"),
    ("angiotensin ii receptor blocker", "arb"),
    ("hmg coa reductase", "statin"),
    ("fluoroquinolone", "fluoroquinolone"),
    ("tetracycline", "tetracycline"),
    ("macrolide", "macrolide"),
    ("beta blocking", "beta-blocker"),
    ("proton pump", "proton-pump-inhibitor"),
    ("non-steroids", "nsaid"),
    ("salicylic acid", "nsaid"),
]


class DrugClassifier(abc.ABC):
    @abc.abstractmethod
    def classify(self, name: str) -> Optional[str]:
        """Drug class for a medication or allergen name, None when unknown."""


class LookupTableClassifier(DrugClassifier):
    """Store-backed ``medications.drug_class`` first, then a static table."""

    def __init__(self, store=None, table: Dict[str, str] = None):
        self.store = store
        self.table = STATIC_DRUG_CLASSES if table is None else table

    def classify(self, name):
        key = normalize_drug_name(name)
        if not key:
            return None
        if self.store is not None:
            drug_class = self.store.find_drug_class(key)
            if drug_class:
                return drug_class
        return self.table.get(key)


class SuffixHeuristicClassifier(DrugClassifier):
    def __init__(self, rules=None):
        self.rules = SUFFIX_RULES if rules is None else rules

    def classify(self, name):
        key = normalize_drug_name(name)
        if not key:
            return None
        for match, fragment, drug_class in self.rules:
            if match == "suffix" and key.endswith(fragment):
                return drug_class
            if match == "prefix" and key.startswith(fragment):
                return drug_class
            if match == "contains" and fragment in key:
                return drug_class
        return None


class RxClassClassifier(DrugClassifier):
    """
    Drug class from the public RxNav RxClass API (ATC classification).
    A network failure is a lookup failure, not an unknown class.
    """

    def __init__(self, base_url: str = RXNAV_BASE, timeout: float = 5.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests

    def classify(self, name):
        key = normalize_drug_name(name)
        if not key:
            return None
        try:
            r = self.http.get(
                f"{self.base_url}/rxclass/class/byDrugName.json",
                params={"drugName": key, "relaSource": "ATC"},
                timeout=self.timeout,
            )
            r.raise_for_status()
            j = r.json()
        except (requests.RequestException, ValueError) as e:
            log.error("RxClass lookup failed for %s: %s", key, e)
            raise LookupFailed(f"RxClass lookup failed for {key}") from e

        infos = (j.get("rxclassDrugInfoList") or {}).get("rxclassDrugInfo", [])
        for info in infos:
            class_name = (info.get("rxclassMinConceptItem") or {}).get("className", "")
            lowered = class_name.lower()
            for keyword, drug_class in RXCLASS_KEYWORDS:
                if keyword in lowered:
                    return drug_class
        return None


class ChainedClassifier(DrugClassifier):
    def __init__(self, *classifiers: DrugClassifier):
        self.classifiers = classifiers

    def classify(self, name):
        for classifier in self.classifiers:
            drug_class = classifier.classify(name)
            if drug_class:
                return drug_class
        return None


def default_classifier(store=None, settings=None) -> DrugClassifier:
    chain = [LookupTableClassifier(store)]
    if settings is not None and settings.rxclass_enabled:
        chain.append(RxClassClassifier(settings.rxnav_base, settings.lookup_timeout))
    chain.append(SuffixHeuristicClassifier())
    return ChainedClassifier(*chain)
