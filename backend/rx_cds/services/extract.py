# backend/rx_cds/services/extract.py
import re
from typing import Optional, Tuple

from rx_cds.errors import InvalidDoseFormat
from rx_cds.services.normalize import normalize_unit

# "500mg", "2.5 g", "100 mcg", "0.5mL", "15mg/day"
DOSE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?|\.\d+)\s*([a-zA-Zµ]+)(?:\s*/\s*(?:day|d))?\s*$")

# Common medical abbreviations for dosage frequency
FREQ_ABBREV_MAP = {
    "od": 1,   # once daily
    "qd": 1,
    "daily": 1,
    "once daily": 1,
    "bd": 2,   # twice daily
    "bid": 2,
    "twice daily": 2,
    "tds": 3,  # three times daily
    "tid": 3,
    "three times daily": 3,
    "qid": 4,  # four times daily
    "four times daily": 4,
    "hs": 1,   # at bedtime
    "qhs": 1,
    "prn": None,  # as needed, no fixed frequency
    "stat": None,
}

INTERVAL_PATTERN = re.compile(r"^q\s*(\d+)\s*h(?:rs?|ours?)?$")  # q6h, q 8 hours
TIMES_PATTERN = re.compile(r"^(\d+)\s*(?:x|times)(?:\s*(?:daily|a day|per day|/day))?$")  # 3x, 3 times daily


def parse_dose(dose: str) -> Tuple[float, str]:
    """
    Split a dose string into (value, canonical unit).
    Raises InvalidDoseFormat when the string does not match <number><unit>.
    """
    if dose is None:
        raise InvalidDoseFormat("Dose is missing")
    match = DOSE_PATTERN.match(dose)
    if not match:
        raise InvalidDoseFormat(f"Cannot parse dose '{dose}'")
    unit = normalize_unit(match.group(2))
    if unit is None:
        raise InvalidDoseFormat(f"Unknown dose unit '{match.group(2)}'")
    return float(match.group(1)), unit


def parse_frequency(frequency: str) -> Optional[float]:
    """Doses per day for a frequency string, None when not a fixed schedule."""
    if not frequency:
        return None
    freq = " ".join(frequency.strip().lower().replace(".", "").split())
    if freq in FREQ_ABBREV_MAP:
        return FREQ_ABBREV_MAP[freq]
    match = INTERVAL_PATTERN.match(freq)
    if match:
        hours = int(match.group(1))
        return 24 / hours if hours else None
    match = TIMES_PATTERN.match(freq)
    if match:
        return int(match.group(1))
    return None
