# backend/rx_cds/services/normalize.py
from rx_cds.errors import UnitConversionError

# Factors relative to the smallest unit of each dimension. Integers keep
# g -> mg -> g (and mg -> mcg -> mg) exact.
UNIT_FACTORS = {
    "mass": {"mcg": 1, "mg": 1000, "g": 1000000},
    "volume": {"ml": 1, "l": 1000},
}

UNIT_ALIASES = {
    "µg": "mcg",
    "ug": "mcg",
    "microgram": "mcg",
    "micrograms": "mcg",
    "milligram": "mg",
    "milligrams": "mg",
    "gram": "g",
    "grams": "g",
    "gm": "g",
    "millilitre": "ml",
    "milliliter": "ml",
    "litre": "l",
    "liter": "l",
    "unit": "units",
    "iu": "units",
    "u": "units",
    "meq": "meq",
}

# Units that only convert to themselves
COUNT_UNITS = ("units", "meq")


def normalize_unit(unit):
    """Canonical lower-case unit token, or None when the unit is not recognised."""
    if not unit:
        return None
    u = unit.strip().lower()
    u = UNIT_ALIASES.get(u, u)
    if u in COUNT_UNITS:
        return u
    for table in UNIT_FACTORS.values():
        if u in table:
            return u
    return None


def _dimension(unit):
    for name, table in UNIT_FACTORS.items():
        if unit in table:
            return name
    return None


def convert_unit(value: float, from_unit: str, to_unit: str) -> float:
    """
    Convert a dose between units of the same dimension.
    Raises UnitConversionError for unknown units or across dimensions (mg -> ml).
    """
    src, dst = normalize_unit(from_unit), normalize_unit(to_unit)
    if src is not None and src == dst:
        return value
    src_dim, dst_dim = _dimension(src), _dimension(dst)
    if src_dim is None or src_dim != dst_dim:
        raise UnitConversionError(f"Cannot convert {from_unit} to {to_unit}")
    table = UNIT_FACTORS[src_dim]
    return value * table[src] / table[dst]


def normalize_drug_name(name):
    if not name:
        return ""
    return " ".join(name.strip().lower().split())
