"""
Census Forecast Agent

A microservice that reconciles periodic hospital census uploads into a
persistent patient record and derives nurse staffing and census forecasts.

This agent provides:
- Census ingestion with inferred admissions, transfers and discharges
- ICU/floor unit classification and canonical unit names
- AM/PM nurse staffing with one-to-one device detection
- 5 or 7 day census forecasts, optionally merged with procedure admissions
- Time-boxed retention of patient data
- REST API for all of the above

Components:
-----------
- config: Environment-based configuration
- database: SQLAlchemy models and the CensusDatabase handle
- units: Unit classification and canonicalization
- signals: Initials and one-to-one device detection
- ingestion: CensusIngestor (ingestion, reconciliation, write-back)
- queries: Read-side census views
- staffing: StaffingCalculator
- forecast: CensusForecaster
- retention: RetentionSweeper and the daily sweep loop
- api: FastAPI application

Usage:
------
    # As API server
    python -m uvicorn agents.census_forecast.api:app --host 0.0.0.0 --port 8005

Author: Hospital AI Platform Team
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Platform Team"

from .config import settings
from .database import CensusDatabase, RecordNotFoundError
from .forecast import CensusForecaster
from .ingestion import CensusIngestor
from .queries import CensusQueries
from .retention import RetentionSweeper
from .staffing import StaffingCalculator

__all__ = [
    "settings",
    "CensusDatabase",
    "RecordNotFoundError",
    "CensusIngestor",
    "CensusQueries",
    "StaffingCalculator",
    "CensusForecaster",
    "RetentionSweeper",
    "__version__",
]
