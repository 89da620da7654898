"""Shared fixtures: an in-memory census store per test."""

import pytest

from agents.census_forecast.database import CensusDatabase
from agents.census_forecast.ingestion import CensusIngestor
from agents.census_forecast.tests.factories import HOSPITAL, NOW, UPLOAD_DATE


@pytest.fixture
def database():
    """Fresh in-memory SQLite database with all tables created."""
    db = CensusDatabase("sqlite://")
    db.create_all()
    yield db
    db.close()


@pytest.fixture
def ingestor(database):
    return CensusIngestor(database, ttl_days=3)


@pytest.fixture
def load_census(ingestor):
    """Create an import, ingest rows and reconcile, like an upload does."""

    def _load(rows, upload_date=UPLOAD_DATE, now=NOW, hospital_id=HOSPITAL, reconcile=True):
        import_id = ingestor.create_import(hospital_id, "census.xlsx", upload_date, now=now)
        result = ingestor.ingest_rows(import_id, rows, now=now)
        if reconcile:
            ingestor.reconcile_discharges(import_id, [r["mrn"] for r in rows], now=now)
        return import_id, result

    return _load
