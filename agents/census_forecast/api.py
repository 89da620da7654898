"""
Census Forecast Agent - FastAPI Application

This module provides the REST API for the census forecast service.
It exposes endpoints for census uploads, AI prediction write-back, staffing
and census forecasts, retention, and health checks.

================================================================================
API DESIGN
================================================================================

1. UPLOAD WORKFLOW:
   - POST /imports registers the file and returns an import id
   - POST /imports/{id}/rows ingests rows (may be called in batches)
   - POST /imports/{id}/reconcile discharges MRNs absent from the file
   - Rows are validated one by one; a bad row is reported, not fatal

2. READ DERIVATIONS:
   - Census, staffing and forecasts are computed from the stored census
     on every request; nothing is cached between calls
   - A hospital without any import gets empty results, not errors

3. OPERATIONS:
   - /health for Kubernetes probes, including database connectivity
   - The retention sweep runs daily in-process and can be triggered
     manually through /retention/sweep

================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .database import CensusDatabase, ImportStatus, RecordNotFoundError, utcnow
from .forecast import CensusForecaster
from .ingestion import CensusIngestor
from .queries import CensusQueries
from .retention import RetentionSweeper, run_retention_loop
from .schemas import PredictionPatch, ProcedureAdmission
from .signals import OneToOneSource
from .staffing import StaffingCalculator
from .units import UnitType

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

class CreateImportRequest(BaseModel):
    """Request schema for registering a census upload."""

    hospital_id: str = Field(min_length=1)
    file_name: str = Field(min_length=1)
    upload_date: date = Field(description="Census date of the uploaded file")

    class Config:
        json_schema_extra = {
            "example": {
                "hospital_id": "general-hospital",
                "file_name": "census_2024-01-15_0700.xlsx",
                "upload_date": "2024-01-15",
            }
        }


class CreateImportResponse(BaseModel):
    import_id: int


class IngestRowsRequest(BaseModel):
    """
    Census rows of one import.

    Rows are kept as plain objects here and validated individually during
    ingestion, so one malformed row does not reject the whole batch.
    """

    rows: List[Dict[str, Any]]

    class Config:
        json_schema_extra = {
            "example": {
                "rows": [
                    {
                        "mrn": "100234",
                        "patient_name": "Johnson, Bob (60 y.o. M)",
                        "unit_name": "CCU",
                        "admission_date": "2024-01-12",
                        "census_date": "2024-01-15",
                        "general_comments": "On ECMO since 1/13",
                    }
                ]
            }
        }


class IngestRowsResponse(BaseModel):
    created: int
    updated: int
    errors: List[str]


class ReconcileRequest(BaseModel):
    current_mrns: List[str] = Field(description="Every MRN present in the import")


class ReconcileResponse(BaseModel):
    discharged_count: int


class ImportStatusUpdate(BaseModel):
    status: ImportStatus
    patients_processed: Optional[int] = Field(default=None, ge=0)
    predictions_generated: Optional[int] = Field(default=None, ge=0)
    errors: Optional[List[str]] = None


class RecordPredictionsRequest(BaseModel):
    predictions_generated: int = Field(ge=0)


class UnitMappingUpdate(BaseModel):
    raw_unit_name: str = Field(min_length=1)
    unit_type: UnitType
    is_icu: Optional[bool] = Field(
        default=None,
        description="Defaults to unit_type == icu",
    )
    unit_id: Optional[str] = None


class CombinedForecastRequest(BaseModel):
    """Procedure admissions feed merged into the census forecast."""

    admissions: List[ProcedureAdmission] = Field(default_factory=list)


class ImportResponse(BaseModel):
    id: int
    hospital_id: str
    file_name: str
    upload_date: date
    patients_processed: int
    predictions_generated: int
    status: ImportStatus
    errors: Optional[List[str]] = None
    created_at: datetime
    is_active: bool

    class Config:
        from_attributes = True


class PatientResponse(BaseModel):
    id: int
    hospital_id: str
    import_id: int
    mrn: str
    initials: str
    current_unit_name: str
    unit_type: UnitType
    admission_date: Optional[date] = None
    census_date: Optional[date] = None
    los_days: Optional[int] = None
    service: Optional[str] = None
    attending_doctor: Optional[str] = None
    sex: Optional[str] = None
    age: Optional[int] = None
    language: Optional[str] = None
    general_comments: Optional[str] = None
    requires_one_to_one: bool
    one_to_one_devices: List[str] = Field(default_factory=list)
    one_to_one_source: Optional[OneToOneSource] = None
    primary_diagnosis: Optional[str] = None
    clinical_status: Optional[str] = None
    disposition_considerations: Optional[str] = None
    pending_procedures: Optional[str] = None
    los_reasoning: Optional[str] = None
    trajectory: Optional[str] = None
    projected_discharge_days: Optional[int] = None
    projected_downgrade_days: Optional[int] = None
    predicted_downgrade_date: Optional[date] = None
    predicted_downgrade_unit: Optional[str] = None
    is_active: bool
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TransferEventResponse(BaseModel):
    id: int
    patient_id: int
    mrn: str
    from_unit_name: Optional[str] = None
    to_unit_name: str
    event_date: Optional[date] = None
    clinical_summary: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UnitMappingResponse(BaseModel):
    hospital_id: str
    raw_unit_name: str
    unit_type: UnitType
    is_icu: bool
    unit_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class HealthResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Application state management.

    Holds the database handle and the components built on it. Components
    are created lazily from settings; tests call configure() to bind an
    in-memory database instead.
    """

    def __init__(self):
        self._database: Optional[CensusDatabase] = None
        self._ingestor: Optional[CensusIngestor] = None
        self._queries: Optional[CensusQueries] = None
        self._staffing: Optional[StaffingCalculator] = None
        self._forecaster: Optional[CensusForecaster] = None
        self._sweeper: Optional[RetentionSweeper] = None
        self.retention_task: Optional[asyncio.Task] = None
        self.retention_stop: Optional[asyncio.Event] = None

    def configure(self, database: CensusDatabase) -> None:
        """Bind every component to `database`."""
        self._database = database
        self._ingestor = CensusIngestor(database)
        self._queries = CensusQueries(database)
        self._staffing = StaffingCalculator(database)
        self._forecaster = CensusForecaster(database)
        self._sweeper = RetentionSweeper(database)

    def _ensure_configured(self) -> None:
        if self._database is None:
            self.configure(CensusDatabase(settings.database_url))

    @property
    def database(self) -> CensusDatabase:
        self._ensure_configured()
        return self._database

    @property
    def ingestor(self) -> CensusIngestor:
        self._ensure_configured()
        return self._ingestor

    @property
    def queries(self) -> CensusQueries:
        self._ensure_configured()
        return self._queries

    @property
    def staffing(self) -> StaffingCalculator:
        self._ensure_configured()
        return self._staffing

    @property
    def forecaster(self) -> CensusForecaster:
        self._ensure_configured()
        return self._forecaster

    @property
    def sweeper(self) -> RetentionSweeper:
        self._ensure_configured()
        return self._sweeper


# Global application state
app_state = AppState()


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Creates missing tables on startup and runs the daily retention sweep
    until shutdown.
    """
    # Startup
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")

    try:
        app_state.database.create_all()
    except Exception as e:
        logger.warning(f"Could not create census tables at startup: {e}")

    if settings.retention_enabled:
        app_state.retention_stop = asyncio.Event()
        app_state.retention_task = asyncio.create_task(
            run_retention_loop(
                app_state.sweeper,
                settings.retention_hour_utc,
                app_state.retention_stop,
            )
        )

    yield

    # Shutdown
    logger.info("Shutting down census forecast agent")
    if app_state.retention_task is not None:
        app_state.retention_stop.set()
        await app_state.retention_task
        app_state.retention_task = None
    app_state.database.close()


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Census Forecast Agent",
    description="""
    Hospital census reconciliation, nurse staffing and census forecasting.

    ## Features
    - **Census Reconciliation**: Transfers and discharges inferred from re-uploads
    - **Staffing**: AM/PM registered nurse needs per unit
    - **Forecasts**: 5 or 7 day census projections, optionally with procedure admits
    - **Retention**: Patient data purged 3 days after its last write

    ## Usage
    1. POST to `/imports`, then `/imports/{id}/rows` and `/imports/{id}/reconcile`
    2. GET `/hospitals/{id}/staffing` and `/hospitals/{id}/forecast`
    3. GET `/health` for service status
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware for cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _invalid_request(e: ValueError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"error": "invalid_request", "message": str(e)},
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
def health_check() -> HealthResponse:
    """
    Health check endpoint for Kubernetes probes.

    Checks:
    - Database connectivity
    - Retention sweep task
    """
    checks = {}
    overall_status = "healthy"

    db_check = {"status": "ok"}
    try:
        app_state.database.ping()
    except Exception as e:
        db_check["status"] = "error"
        db_check["message"] = str(e)
        overall_status = "unhealthy"
    checks["database"] = db_check

    retention_check = {
        "status": "ok",
        "enabled": settings.retention_enabled,
        "hour_utc": settings.retention_hour_utc,
    }
    task = app_state.retention_task
    if settings.retention_enabled and task is not None and task.done():
        retention_check["status"] = "stopped"
        if overall_status == "healthy":
            overall_status = "degraded"
    checks["retention"] = retention_check

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=utcnow(),
        checks=checks,
    )


# ----------------------------------------------------------------------------
# Imports
# ----------------------------------------------------------------------------

@app.post(
    "/imports",
    response_model=CreateImportResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Imports"],
)
def create_import(request: CreateImportRequest) -> CreateImportResponse:
    """Register a census upload; rows are sent separately."""
    import_id = app_state.ingestor.create_import(
        hospital_id=request.hospital_id,
        file_name=request.file_name,
        upload_date=request.upload_date,
    )
    return CreateImportResponse(import_id=import_id)


@app.get(
    "/hospitals/{hospital_id}/imports",
    response_model=List[ImportResponse],
    tags=["Imports"],
)
def list_imports(
    hospital_id: str,
    limit: int = Query(default=50, ge=1, le=50),
) -> List[ImportResponse]:
    """Most recent imports of a hospital, newest first."""
    return app_state.queries.list_imports(hospital_id, limit=limit)


@app.post(
    "/imports/{import_id}/rows",
    response_model=IngestRowsResponse,
    tags=["Imports"],
)
def ingest_rows(import_id: int, request: IngestRowsRequest) -> IngestRowsResponse:
    """
    Upsert census rows into the patient store.

    Rejected rows are listed in `errors` as "<mrn>: <message>" and stored
    on the import; the remaining rows are still written.
    """
    result = app_state.ingestor.ingest_rows(import_id, request.rows)
    return IngestRowsResponse(**result.to_dict())


@app.post(
    "/imports/{import_id}/reconcile",
    response_model=ReconcileResponse,
    tags=["Imports"],
)
def reconcile_discharges(import_id: int, request: ReconcileRequest) -> ReconcileResponse:
    """Discharge every active patient whose MRN is not in the import."""
    result = app_state.ingestor.reconcile_discharges(import_id, request.current_mrns)
    return ReconcileResponse(**result.to_dict())


@app.patch("/imports/{import_id}", response_model=ImportResponse, tags=["Imports"])
def update_import_status(import_id: int, request: ImportStatusUpdate) -> ImportResponse:
    return app_state.ingestor.update_import_status(
        import_id,
        request.status,
        patients_processed=request.patients_processed,
        predictions_generated=request.predictions_generated,
        errors=request.errors,
    )


@app.post(
    "/imports/{import_id}/predictions",
    response_model=ImportResponse,
    tags=["Imports"],
)
def record_predictions(import_id: int, request: RecordPredictionsRequest) -> ImportResponse:
    return app_state.ingestor.record_predictions(import_id, request.predictions_generated)


# ----------------------------------------------------------------------------
# Patients
# ----------------------------------------------------------------------------

@app.patch(
    "/patients/{patient_id}/predictions",
    response_model=PatientResponse,
    tags=["Patients"],
)
def apply_predictions(patient_id: int, patch: PredictionPatch) -> PatientResponse:
    """
    Merge AI-derived fields into a patient.

    Only fields present in the body are written; an explicit null clears
    the stored value.
    """
    return app_state.ingestor.apply_predictions(patient_id, patch)


@app.post(
    "/patients/{patient_id}/deactivate",
    response_model=PatientResponse,
    tags=["Patients"],
)
def deactivate_patient(patient_id: int) -> PatientResponse:
    return app_state.ingestor.deactivate_patient(patient_id)


@app.get("/hospitals/{hospital_id}/census", tags=["Census"])
def census_summary(hospital_id: str) -> Dict[str, Any]:
    """Current census by unit from the latest import."""
    return app_state.queries.census_summary(hospital_id).to_dict()


@app.get(
    "/hospitals/{hospital_id}/patients",
    response_model=List[PatientResponse],
    tags=["Census"],
)
def patients_by_date(
    hospital_id: str,
    census_date: date = Query(..., description="Census date to list"),
    unit_name: Optional[str] = Query(default=None, description="Raw unit name filter"),
) -> List[PatientResponse]:
    return app_state.queries.patients_by_date(hospital_id, census_date, unit_name)


@app.get(
    "/hospitals/{hospital_id}/patients/{mrn}/history",
    response_model=List[TransferEventResponse],
    tags=["Census"],
)
def patient_history(hospital_id: str, mrn: str) -> List[TransferEventResponse]:
    """Transfer ledger of one MRN, newest first."""
    return app_state.queries.patient_history(hospital_id, mrn)


# ----------------------------------------------------------------------------
# Unit mappings
# ----------------------------------------------------------------------------

@app.get(
    "/hospitals/{hospital_id}/unit-mappings",
    response_model=List[UnitMappingResponse],
    tags=["Units"],
)
def unit_mappings(hospital_id: str) -> List[UnitMappingResponse]:
    return app_state.queries.unit_mappings(hospital_id)


@app.put(
    "/hospitals/{hospital_id}/unit-mappings",
    response_model=UnitMappingResponse,
    tags=["Units"],
)
def update_unit_mapping(hospital_id: str, request: UnitMappingUpdate) -> UnitMappingResponse:
    is_icu = request.is_icu if request.is_icu is not None else request.unit_type == UnitType.ICU
    return app_state.ingestor.update_unit_mapping(
        hospital_id,
        request.raw_unit_name,
        request.unit_type,
        is_icu,
        unit_id=request.unit_id,
    )


# ----------------------------------------------------------------------------
# Staffing and forecasts
# ----------------------------------------------------------------------------

@app.get("/hospitals/{hospital_id}/staffing", tags=["Forecasts"])
def staffing(hospital_id: str) -> Dict[str, Any]:
    """AM/PM registered nurse needs per unit for the latest census."""
    return app_state.staffing.calculate(hospital_id).to_dict()


@app.get("/hospitals/{hospital_id}/forecast", tags=["Forecasts"])
def forecast(
    hospital_id: str,
    horizon_days: Optional[int] = Query(default=None, description="5 or 7 days"),
) -> Dict[str, Any]:
    """Day-by-day census projection per unit."""
    try:
        result = app_state.forecaster.forecast(hospital_id, horizon_days)
    except ValueError as e:
        raise _invalid_request(e)
    return result.to_dict()


@app.post("/hospitals/{hospital_id}/forecast/combined", tags=["Forecasts"])
def combined_forecast(
    hospital_id: str,
    request: CombinedForecastRequest,
    horizon_days: Optional[int] = Query(default=None, description="5 or 7 days"),
) -> Dict[str, Any]:
    """Census projection merged with the procedure admissions feed."""
    try:
        result = app_state.forecaster.combined_forecast(
            hospital_id, request.admissions, horizon_days
        )
    except ValueError as e:
        raise _invalid_request(e)
    return result.to_dict()


# ----------------------------------------------------------------------------
# Retention
# ----------------------------------------------------------------------------

@app.post("/retention/sweep", tags=["Operations"])
def retention_sweep() -> Dict[str, int]:
    """Run the retention sweep now instead of waiting for the daily run."""
    return app_state.sweeper.sweep().to_dict()


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(RecordNotFoundError)
async def not_found_handler(request, exc: RecordNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": {"error": "not_found", "message": str(exc)}},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "detail": str(exc) if settings.debug else None,
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agents.census_forecast.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
