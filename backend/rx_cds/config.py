# backend/rx_cds/config.py
import os
from dataclasses import dataclass


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "sqlite:///./cds_reference.db"
    lookup_timeout: float = 5.0   # seconds, per reference query
    check_timeout: float = 15.0   # seconds, whole comprehensive check
    seed_reference_data: bool = False
    rxclass_enabled: bool = False
    rxnav_base: str = "https://rxnav.nlm.nih.gov/REST"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from CDS_* environment variables (set in .env or the container)."""
        return cls(
            database_url=os.getenv("CDS_DATABASE_URL", cls.database_url),
            lookup_timeout=float(os.getenv("CDS_LOOKUP_TIMEOUT", cls.lookup_timeout)),
            check_timeout=float(os.getenv("CDS_CHECK_TIMEOUT", cls.check_timeout)),
            seed_reference_data=_flag("CDS_SEED_REFERENCE_DATA"),
            rxclass_enabled=_flag("CDS_RXCLASS_ENABLED"),
            rxnav_base=os.getenv("RXNAV_BASE", cls.rxnav_base),
            log_level=os.getenv("CDS_LOG_LEVEL", cls.log_level).upper(),
        )
