"""
Retention sweep for patient data.

Patient records and transfer events carry an expires_at stamp (written at
ingestion, see CensusIngestor). The sweep runs once a day and:

1. deletes transfer events whose expires_at is strictly before now
2. deletes patient records whose expires_at is strictly before now
3. marks imports inactive once they are older than the inactivity window
   and no active patient references them

Import rows themselves are kept for audit.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update

from .config import settings
from .database import (
    CensusDatabase,
    CensusImport,
    CensusPatient,
    PatientStatus,
    TransferEvent,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    patients_deleted: int = 0
    history_deleted: int = 0
    imports_deactivated: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionSweeper:
    """Removes expired patient data and retires stale imports."""

    def __init__(
        self,
        database: CensusDatabase,
        import_inactive_after_days: Optional[int] = None,
    ) -> None:
        self.database = database
        self.import_inactive_after_days = (
            import_inactive_after_days
            if import_inactive_after_days is not None
            else settings.import_inactive_after_days
        )

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one retention pass.

        Failures are logged and reported as an all-zero result; the next
        scheduled run retries.
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=self.import_inactive_after_days)

        try:
            with self.database.transaction() as session:
                history = session.execute(
                    delete(TransferEvent).where(TransferEvent.expires_at < now)
                )
                patients = session.execute(
                    delete(CensusPatient).where(CensusPatient.expires_at < now)
                )

                referenced = (
                    select(CensusPatient.import_id)
                    .where(CensusPatient.status == PatientStatus.ACTIVE)
                    .distinct()
                )
                imports = session.execute(
                    update(CensusImport)
                    .where(
                        CensusImport.is_active.is_(True),
                        CensusImport.created_at < cutoff,
                        CensusImport.id.not_in(referenced),
                    )
                    .values(is_active=False)
                )

                result = SweepResult(
                    patients_deleted=patients.rowcount or 0,
                    history_deleted=history.rowcount or 0,
                    imports_deactivated=imports.rowcount or 0,
                )
        except Exception as e:
            logger.error(f"Census cleanup failed: {e}", exc_info=True)
            return SweepResult()

        logger.info(
            f"Census cleanup: {result.patients_deleted} patients, "
            f"{result.history_deleted} history records, "
            f"{result.imports_deactivated} imports marked inactive"
        )
        return result


def seconds_until_next_run(now: datetime, hour_utc: int) -> float:
    """Seconds from `now` (naive UTC) until the next HH:00 UTC."""
    target = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def run_retention_loop(
    sweeper: RetentionSweeper,
    hour_utc: int,
    stop_event: asyncio.Event,
) -> None:
    """Run the sweep daily at `hour_utc` until `stop_event` is set."""
    loop = asyncio.get_running_loop()
    logger.info(f"Retention sweep scheduled daily at {hour_utc:02d}:00 UTC")

    while not stop_event.is_set():
        delay = seconds_until_next_run(utcnow(), hour_utc)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
            break
        except asyncio.TimeoutError:
            pass

        await loop.run_in_executor(None, sweeper.sweep)

    logger.info("Retention sweep stopped")
