"""
Configuration for the pharmacy inventory core.

Environment settings (data location, log level) are read once from the process
environment and an optional ``.env`` file. Decision parameters used by the
forecasting and risk engine are never read from the environment; callers pass
them explicitly through an :class:`InventoryPolicy`.
"""

import logging
import os
from dataclasses import dataclass, asdict
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv()

# Environment settings
DATA_PATH = os.getenv("PHARMACY_DATA_PATH", os.path.join(os.getcwd(), "data"))
LOG_LEVEL = os.getenv("PHARMACY_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Policy defaults
DEFAULT_LEAD_TIME_DAYS = 7
DEFAULT_TARGET_DAYS_OF_SUPPLY = 30
DEFAULT_SERVICE_LEVEL = 0.95
DEFAULT_PACK_SIZE = 50
DEFAULT_FUZZY_THRESHOLD = 0.6

SUPPORTED_SERVICE_LEVELS = (0.90, 0.95, 0.98, 0.99)
MIN_LEAD_TIME_DAYS = 1
MAX_LEAD_TIME_DAYS = 30


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging for entry points (servers, scripts)."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
        ]
    )


@dataclass(frozen=True)
class InventoryPolicy:
    """Caller-supplied parameters for forecasting and ordering decisions."""
    lead_time_days: int = DEFAULT_LEAD_TIME_DAYS
    target_days_of_supply: int = DEFAULT_TARGET_DAYS_OF_SUPPLY
    service_level: float = DEFAULT_SERVICE_LEVEL
    pack_size: int = DEFAULT_PACK_SIZE
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD

    def __post_init__(self):
        if not MIN_LEAD_TIME_DAYS <= self.lead_time_days <= MAX_LEAD_TIME_DAYS:
            raise ValueError(
                f"lead_time_days must be between {MIN_LEAD_TIME_DAYS} and "
                f"{MAX_LEAD_TIME_DAYS}, got {self.lead_time_days}"
            )
        if self.target_days_of_supply < 1:
            raise ValueError(f"target_days_of_supply must be positive, got {self.target_days_of_supply}")
        if round(self.service_level, 2) not in SUPPORTED_SERVICE_LEVELS:
            raise ValueError(
                f"service_level must be one of {SUPPORTED_SERVICE_LEVELS}, got {self.service_level}"
            )
        if self.pack_size < 1:
            raise ValueError(f"pack_size must be positive, got {self.pack_size}")
        if not 0.0 <= self.fuzzy_threshold <= 1.0:
            raise ValueError(f"fuzzy_threshold must be between 0 and 1, got {self.fuzzy_threshold}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)
