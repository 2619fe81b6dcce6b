"""
Reconciliation thresholds and logging setup.
Business constants live here as named fields so they can be overridden
per deployment through RECON_* environment variables or a .env file.
"""
import os
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ROOT_DIR = Path(__file__).parent
ENV_PREFIX = 'RECON_'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


class Thresholds(BaseModel):
    """Tunable business thresholds used by matching and classification."""

    # Classification
    status_tolerance: float = Field(default=50.0, ge=0, description="Band around zero discrepancy counted as FULLY_PAID")
    high_discrepancy_threshold: float = Field(default=1000.0, ge=0, description="|discrepancy| above this is 'high'")

    # Fuzzy name tier
    name_similarity_cutoff: float = Field(default=0.70, ge=0, le=1)
    fuzzy_confidence_cutoff: float = Field(default=0.5, ge=0, le=1)
    fuzzy_name_weight: float = Field(default=0.6, ge=0, le=1)
    fuzzy_tax_id_weight: float = Field(default=0.4, ge=0, le=1)
    tax_id_prefix_length: int = Field(default=6, ge=1)
    tax_id_prefix_score: float = Field(default=0.6, ge=0, le=1)
    symmetric_name_similarity: bool = True

    # Email tier
    email_confidence_same_tax_id: float = Field(default=1.0, ge=0, le=1)
    email_confidence_no_tax_id: float = Field(default=0.8, ge=0, le=1)
    email_confidence_conflicting_tax_id: float = Field(default=0.7, ge=0, le=1)

    # Recurring compliance and churn
    billing_period_days: int = Field(default=30, ge=1)
    churn_high_missing_payments: int = Field(default=2, ge=0)
    churn_medium_discrepancy_pct: float = Field(default=50.0)
    recurring_ltv_multiplier: int = Field(default=12, ge=0)


DEFAULT_THRESHOLDS = Thresholds()


def load_thresholds(env_file: Optional[Path] = None) -> Thresholds:
    """Build Thresholds from defaults overridden by RECON_<FIELD> env vars.

    Values from the .env file never override variables already set in the
    process environment. Invalid values raise pydantic.ValidationError.
    """
    load_dotenv(env_file or ROOT_DIR / '.env')
    overrides = {}
    for name in Thresholds.model_fields:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None and raw.strip() != '':
            overrides[name] = raw.strip()
    if overrides:
        logger.info(f"Threshold overrides from environment: {sorted(overrides)}")
    return Thresholds(**overrides)


def configure_logging(level: Optional[str] = None):
    level_name = (level or os.environ.get('LOG_LEVEL') or 'INFO').upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
