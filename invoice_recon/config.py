"""
Configuration for the invoice reconciliation engine.
"""

# Load environment variables FIRST
from dotenv import load_dotenv
load_dotenv()

import os
from typing import Optional


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    """Base configuration."""

    # Candidate scoring weights (must sum to 1.0)
    DESCRIPTION_WEIGHT: float = _env_float("MATCH_DESCRIPTION_WEIGHT", 0.45)
    SERVICE_TYPE_WEIGHT: float = _env_float("MATCH_SERVICE_TYPE_WEIGHT", 0.15)
    AMOUNT_WEIGHT: float = _env_float("MATCH_AMOUNT_WEIGHT", 0.25)
    QUANTITY_WEIGHT: float = _env_float("MATCH_QUANTITY_WEIGHT", 0.15)

    # Match thresholds (0-1)
    CANDIDATE_FLOOR: float = _env_float("CANDIDATE_FLOOR", 0.35)
    MATCHED_THRESHOLD: float = _env_float("MATCHED_THRESHOLD", 0.85)
    PARTIAL_THRESHOLD: float = _env_float("PARTIAL_THRESHOLD", 0.50)
    SCORE_PRECISION: int = 4

    # Confidence aggregation (final confidence is 0-100)
    OCR_CONFIDENCE_WEIGHT: float = 0.5
    MATCH_CONFIDENCE_WEIGHT: float = 0.5
    AUTO_REVIEW_CONFIDENCE: float = _env_float("AUTO_REVIEW_CONFIDENCE", 70.0)

    # Currency handling
    CURRENCY: str = os.getenv("CURRENCY", "USD")
    MINOR_UNIT_DIGITS: int = 2
    AMOUNT_TOLERANCE_MINOR: int = _env_int("AMOUNT_TOLERANCE_MINOR", 1)  # one cent
    PRICE_TOLERANCE_PERCENT: float = _env_float("PRICE_TOLERANCE_PERCENT", 2.0)

    # Normalization
    SERVICE_TYPE_MATCH_CUTOFF: float = _env_float("SERVICE_TYPE_MATCH_CUTOFF", 90.0)

    # PO selection
    PO_DATE_WINDOW_DAYS: int = _env_int("PO_DATE_WINDOW_DAYS", 45)
    ACTIVE_PO_STATUSES: tuple = ("draft", "sent", "approved")

    # Upstream calls (PO store, persistence)
    UPSTREAM_TIMEOUT_SECONDS: float = _env_float("UPSTREAM_TIMEOUT_SECONDS", 10.0)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE", None)

    # Data Paths
    DATA_PATH: str = os.getenv(
        "RECON_DATA_PATH",
        os.path.join(os.path.dirname(__file__), "data", "reconciliation.json"),
    )

    @classmethod
    def validate(cls) -> None:
        """Validate configuration."""
        weights = (
            cls.DESCRIPTION_WEIGHT
            + cls.SERVICE_TYPE_WEIGHT
            + cls.AMOUNT_WEIGHT
            + cls.QUANTITY_WEIGHT
        )
        if abs(weights - 1.0) > 1e-6:
            raise ValueError(f"Matching weights must sum to 1.0, got {weights:.4f}")

        if not 0.0 <= cls.CANDIDATE_FLOOR <= cls.PARTIAL_THRESHOLD <= cls.MATCHED_THRESHOLD <= 1.0:
            raise ValueError(
                "Thresholds must satisfy 0 <= CANDIDATE_FLOOR <= PARTIAL_THRESHOLD "
                "<= MATCHED_THRESHOLD <= 1"
            )

        if abs(cls.OCR_CONFIDENCE_WEIGHT + cls.MATCH_CONFIDENCE_WEIGHT - 1.0) > 1e-6:
            raise ValueError("Confidence weights must sum to 1.0")

        if not 0.0 <= cls.AUTO_REVIEW_CONFIDENCE <= 100.0:
            raise ValueError(f"Invalid AUTO_REVIEW_CONFIDENCE: {cls.AUTO_REVIEW_CONFIDENCE}")

        if cls.AMOUNT_TOLERANCE_MINOR < 0:
            raise ValueError("AMOUNT_TOLERANCE_MINOR must be non-negative")

        if cls.UPSTREAM_TIMEOUT_SECONDS <= 0:
            raise ValueError("UPSTREAM_TIMEOUT_SECONDS must be positive")


class DevelopmentConfig(Config):
    """Development configuration."""
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration."""
    LOG_LEVEL = "INFO"
    UPSTREAM_TIMEOUT_SECONDS = 5.0


class TestConfig(Config):
    """Test configuration."""
    LOG_LEVEL = "DEBUG"
    LOG_FILE = None
    UPSTREAM_TIMEOUT_SECONDS = 1.0


def get_config(env: str = None) -> Config:
    """Get configuration based on environment."""
    if env is None:
        env = os.getenv("ENV", "development").lower()

    if env == "production":
        config = ProductionConfig()
    elif env == "test":
        config = TestConfig()
    else:
        config = DevelopmentConfig()

    # Validate configuration on creation
    config.validate()
    return config
