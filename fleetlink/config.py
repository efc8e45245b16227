import os
import logging
from dataclasses import dataclass, asdict, replace
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fleetlink.db")

# Identity resolution confidences (0.0 - 1.0)
CONF_DIRECT = float(os.getenv("CONF_DIRECT", "1.0"))
CONF_NAME_MAPPING = float(os.getenv("CONF_NAME_MAPPING", "0.9"))
CONF_WINDOW_30MIN = float(os.getenv("CONF_WINDOW_30MIN", "0.85"))
CONF_WINDOW_1HOUR = float(os.getenv("CONF_WINDOW_1HOUR", "0.75"))
CONF_WINDOW_SAME_DAY = float(os.getenv("CONF_WINDOW_SAME_DAY", "0.50"))
CONF_ACTIVE_TRIP = float(os.getenv("CONF_ACTIVE_TRIP", "0.80"))
CONF_NAME_MATCH = float(os.getenv("CONF_NAME_MATCH", "1.0"))
NAME_MATCH_SAME_FLEET = os.getenv("NAME_MATCH_SAME_FLEET", "true").lower() == "true"

# Trip-delivery correlation weights (normalized by their sum)
WEIGHT_TEXT = float(os.getenv("WEIGHT_TEXT", "0.45"))
WEIGHT_GEO = float(os.getenv("WEIGHT_GEO", "0.40"))
WEIGHT_TEMPORAL = float(os.getenv("WEIGHT_TEMPORAL", "0.15"))
GEO_EDGE_SCORE = float(os.getenv("GEO_EDGE_SCORE", "50"))
ALGORITHM_VERSION = os.getenv("ALGORITHM_VERSION", "hybrid_v2.0")

# Candidate search bounds
DATE_WINDOW_DAYS = int(os.getenv("DATE_WINDOW_DAYS", "3"))
MAX_DISTANCE_KM = float(os.getenv("MAX_DISTANCE_KM", "150"))
TERMINAL_NAME_THRESHOLD = float(os.getenv("TERMINAL_NAME_THRESHOLD", "0.3"))

# Batch run defaults
MIN_CONFIDENCE = float(os.getenv("MIN_CONFIDENCE", "60"))
MAX_TRIPS = int(os.getenv("MAX_TRIPS", "1000"))
HIGH_CONFIDENCE_THRESHOLD = float(os.getenv("HIGH_CONFIDENCE_THRESHOLD", "80"))

# Driver safety aggregation
METRICS_LOOKBACK_DAYS = int(os.getenv("METRICS_LOOKBACK_DAYS", "90"))

# API configuration
API_DEFAULT_LIMIT = int(os.getenv("API_DEFAULT_LIMIT", "100"))
API_MAX_LIMIT = int(os.getenv("API_MAX_LIMIT", "1000"))

# Data paths
DATA_DIR = os.getenv("DATA_DIR", "data")
TERMINALS_CSV = os.path.join(DATA_DIR, "terminals.csv")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "")

# Development configuration
DEBUG = os.getenv("DEBUG", "false").lower() == "true"


@dataclass(frozen=True)
class IdentitySettings:
    """Confidence assigned by each attribution strategy."""
    direct: float = CONF_DIRECT
    name_mapping: float = CONF_NAME_MAPPING
    window_30min: float = CONF_WINDOW_30MIN
    window_1hour: float = CONF_WINDOW_1HOUR
    window_same_day: float = CONF_WINDOW_SAME_DAY
    active_trip: float = CONF_ACTIVE_TRIP
    name_match: float = CONF_NAME_MATCH
    name_match_same_fleet: bool = NAME_MATCH_SAME_FLEET


@dataclass(frozen=True)
class CorrelationSettings:
    """Versioned scoring configuration handed to the correlation engine.

    Every correlation row records ``algorithm_version`` so a change to any of
    these values should come with a new version string.
    """
    algorithm_version: str = ALGORITHM_VERSION
    text_weight: float = WEIGHT_TEXT
    geo_weight: float = WEIGHT_GEO
    temporal_weight: float = WEIGHT_TEMPORAL
    geo_edge_score: float = GEO_EDGE_SCORE
    date_window_days: int = DATE_WINDOW_DAYS
    max_distance_km: float = MAX_DISTANCE_KM
    terminal_name_threshold: float = TERMINAL_NAME_THRESHOLD

    def __post_init__(self):
        weights = (self.text_weight, self.geo_weight, self.temporal_weight)
        if any(w < 0 for w in weights):
            raise ValueError("correlation weights must be non-negative")
        if sum(weights) <= 0:
            raise ValueError("at least one correlation weight must be positive")

    @property
    def total_weight(self) -> float:
        return self.text_weight + self.geo_weight + self.temporal_weight

    def as_dict(self) -> dict:
        return asdict(self)


class Config:
    """Configuration class with runtime overrides."""

    def __init__(self):
        self.database_url = DATABASE_URL

        self.identity = IdentitySettings()
        self.correlation = CorrelationSettings()

        # Batch settings
        self.min_confidence = MIN_CONFIDENCE
        self.max_trips = MAX_TRIPS
        self.high_confidence_threshold = HIGH_CONFIDENCE_THRESHOLD
        self.metrics_lookback_days = METRICS_LOOKBACK_DAYS

        # API settings
        self.api_default_limit = API_DEFAULT_LIMIT
        self.api_max_limit = API_MAX_LIMIT

        # Data paths
        self.data_dir = DATA_DIR
        self.terminals_csv = TERMINALS_CSV

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        # Development
        self.debug = DEBUG

    def update_correlation_weights(self,
                                   text_weight: Optional[float] = None,
                                   geo_weight: Optional[float] = None,
                                   temporal_weight: Optional[float] = None,
                                   algorithm_version: Optional[str] = None):
        """Update scoring weights at runtime.

        Changed weights must come with a new ``algorithm_version``.
        """
        changes = {}
        if text_weight is not None:
            changes["text_weight"] = text_weight
        if geo_weight is not None:
            changes["geo_weight"] = geo_weight
        if temporal_weight is not None:
            changes["temporal_weight"] = temporal_weight
        if algorithm_version is not None:
            changes["algorithm_version"] = algorithm_version
        if not changes:
            return
        updated = replace(self.correlation, **changes)
        weights_changed = (
            (updated.text_weight, updated.geo_weight, updated.temporal_weight)
            != (self.correlation.text_weight, self.correlation.geo_weight, self.correlation.temporal_weight)
        )
        if weights_changed and updated.algorithm_version == self.correlation.algorithm_version:
            raise ValueError("changed weights need a new algorithm_version")
        self.correlation = updated

    def get_correlation_settings(self) -> CorrelationSettings:
        return self.correlation

    def get_identity_settings(self) -> IdentitySettings:
        return self.identity

    def get_scoring_config(self) -> dict:
        """Get scoring configuration as dictionary."""
        return {
            "correlation": self.correlation.as_dict(),
            "identity": asdict(self.identity),
            "min_confidence": self.min_confidence,
            "high_confidence_threshold": self.high_confidence_threshold,
        }

# Global configuration instance
config = Config()

def setup_logging():
    """Setup logging configuration."""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format=config.log_format,
        handlers=handlers
    )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger(__name__)

# Initialize logger
logger = setup_logging()
