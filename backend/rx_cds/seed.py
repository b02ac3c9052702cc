# backend/rx_cds/seed.py
import datetime
import json
import logging
import os

from rx_cds.db import (
    Allergy,
    ClinicalGuideline,
    Contraindication,
    DrugInteraction,
    GuidelineCondition,
    Medication,
    TherapeuticRange,
)

log = logging.getLogger("seed")

HERE = os.path.dirname(__file__)
SEED_PATH = os.path.join(HERE, "data", "reference_seed.json")


def _guideline(row: dict) -> ClinicalGuideline:
    row = dict(row)
    codes = row.pop("icd_codes", [])
    if row.get("last_reviewed"):
        row["last_reviewed"] = datetime.date.fromisoformat(row["last_reviewed"])
    guideline = ClinicalGuideline(**row)
    guideline.conditions = [GuidelineCondition(condition_code=c) for c in codes]
    return guideline


TABLES = [
    ("drug_interactions", DrugInteraction, None),
    ("medications", Medication, None),
    ("allergies", Allergy, None),
    ("contraindications", Contraindication, None),
    ("therapeutic_ranges", TherapeuticRange, None),
    ("clinical_guidelines", ClinicalGuideline, _guideline),
]


def load_seed(path: str = SEED_PATH) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def seed_reference_data(session_factory, path: str = SEED_PATH) -> dict:
    """Load bundled reference data into empty tables. Tables that already hold rows are left alone."""
    data = load_seed(path)
    counts = {}
    db = session_factory()
    try:
        for key, model, build in TABLES:
            if db.query(model).first() is not None:
                counts[key] = 0
                continue
            build = build or (lambda row, model=model: model(**row))
            rows = [build(row) for row in data.get(key, [])]
            db.add_all(rows)
            counts[key] = len(rows)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    log.info("Seeded reference data: %s", counts)
    return counts
