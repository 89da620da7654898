"""
Census Forecast Agent - Persistence Layer

Four hospital-scoped stores back the agent:

    census_imports          one row per uploaded census file (never deleted)
    census_patients         one row per (hospital, mrn), reused on re-admission
    census_transfer_events  append-only unit change ledger
    census_unit_mappings    raw unit name -> unit type, created on first sight

Patient lifecycle is explicit:

    active  <->  discharged  ->  purged
                 (retained)      (row deleted by the retention sweep)

The "is active" notion is derived from the status column instead of being
stored as a second, independently toggled flag.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings
from .signals import OneToOneSource
from .units import UnitType

logger = logging.getLogger(__name__)

# Sentinel to-unit written when a patient is inferred to have left
DISCHARGED_UNIT = "DISCHARGED"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ImportStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class PatientStatus(str, Enum):
    ACTIVE = "active"
    DISCHARGED = "discharged"


def _enum_column(enum_cls: type, length: int = 16) -> SAEnum:
    # Persist enum values ("icu"), not member names ("ICU")
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# ORM MODELS
# =============================================================================

class Base(DeclarativeBase):
    pass


class CensusImport(Base):
    __tablename__ = "census_imports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hospital_id: Mapped[str] = mapped_column(String(64), index=True)
    file_name: Mapped[str] = mapped_column(String(255))
    upload_date: Mapped[date] = mapped_column(Date)
    patients_processed: Mapped[int] = mapped_column(Integer, default=0)
    predictions_generated: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[ImportStatus] = mapped_column(
        _enum_column(ImportStatus), default=ImportStatus.PENDING
    )
    errors: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class CensusPatient(Base):
    __tablename__ = "census_patients"
    __table_args__ = (
        UniqueConstraint("hospital_id", "mrn", name="uq_census_patients_hospital_mrn"),
        Index("ix_census_patients_hospital_census_date", "hospital_id", "census_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hospital_id: Mapped[str] = mapped_column(String(64), index=True)
    import_id: Mapped[int] = mapped_column(ForeignKey("census_imports.id"), index=True)
    mrn: Mapped[str] = mapped_column(String(64))
    initials: Mapped[str] = mapped_column(String(16), default="")

    # Location
    current_unit_name: Mapped[str] = mapped_column(String(128))
    unit_type: Mapped[UnitType] = mapped_column(_enum_column(UnitType))
    admission_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    census_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    los_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    service: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    attending_doctor: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Demographics
    sex: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    age: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Clinical input
    general_comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requires_one_to_one: Mapped[bool] = mapped_column(Boolean, default=False)
    one_to_one_devices: Mapped[List[str]] = mapped_column(JSON, default=list)
    one_to_one_source: Mapped[Optional[OneToOneSource]] = mapped_column(
        _enum_column(OneToOneSource), nullable=True
    )

    # AI-derived fields
    primary_diagnosis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    clinical_status: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disposition_considerations: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pending_procedures: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    los_reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trajectory: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    projected_discharge_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    projected_downgrade_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    predicted_downgrade_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    predicted_downgrade_unit: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Lifecycle
    status: Mapped[PatientStatus] = mapped_column(
        _enum_column(PatientStatus), default=PatientStatus.ACTIVE, index=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == PatientStatus.ACTIVE


class TransferEvent(Base):
    __tablename__ = "census_transfer_events"
    __table_args__ = (
        Index("ix_census_transfer_events_hospital_mrn", "hospital_id", "mrn"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("census_patients.id", ondelete="CASCADE"), index=True
    )
    hospital_id: Mapped[str] = mapped_column(String(64))
    mrn: Mapped[str] = mapped_column(String(64))
    from_unit_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    to_unit_name: Mapped[str] = mapped_column(String(128))
    event_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    clinical_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class UnitMapping(Base):
    __tablename__ = "census_unit_mappings"
    __table_args__ = (
        UniqueConstraint("hospital_id", "raw_unit_name", name="uq_census_unit_mappings_raw_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hospital_id: Mapped[str] = mapped_column(String(64), index=True)
    raw_unit_name: Mapped[str] = mapped_column(String(128))
    unit_type: Mapped[UnitType] = mapped_column(_enum_column(UnitType))
    is_icu: Mapped[bool] = mapped_column(Boolean, default=False)
    unit_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class RecordNotFoundError(LookupError):
    """An import or patient id passed by a caller does not exist."""

    def __init__(self, kind: str, record_id: Any):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


# =============================================================================
# DATABASE HANDLE
# =============================================================================

class CensusDatabase:
    """
    Owns the SQLAlchemy engine and session factory for the census store.

    Every mutating operation runs inside `transaction()`, which commits on
    success and rolls back on any exception, so one call is one atomic unit.
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """
        Initialize the database handle.

        Args:
            database_url: SQLAlchemy URL (default from settings)
        """
        self.database_url = str(database_url or settings.database_url)
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        """Lazily create database engine."""
        if self._engine is None:
            if self.is_sqlite:
                self._engine = create_engine(
                    self.database_url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
                _enable_sqlite_savepoints(self._engine)
            else:
                self._engine = create_engine(
                    self.database_url,
                    pool_size=settings.db_pool_size,
                    pool_timeout=settings.db_pool_timeout,
                    pool_pre_ping=True,  # Verify connections before use
                )
        return self._engine

    @property
    def sessions(self) -> sessionmaker:
        if self._sessionmaker is None:
            self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._sessionmaker

    def create_all(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session inside a transaction; commit or roll back on exit."""
        with self.sessions.begin() as session:
            yield session

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a read-only session."""
        with self.sessions() as session:
            yield session

    def ping(self) -> None:
        """Raise if the database cannot be reached."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database ping failed: {e}")
            raise

    def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessionmaker = None


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite issues its own BEGIN and breaks SAVEPOINT; take control of it
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")
