"""Job record store.

One row per job in the ``processes`` table, accessed through ``databases``
with SQLAlchemy Core queries. Every status change runs the state-machine
check and the write inside a single transaction, so concurrent pollers only
ever observe a legal status.
"""

import json
import uuid
from typing import List, Optional, Sequence

from databases import Database
from sqlalchemy import create_engine, delete, insert, select, update

from .api.db_models import Base, Process, utcnow
from .exceptions import InvalidTransitionError
from .logging import get_logger
from .queue.models import JobRecord, JobStatus, can_transition

logger = get_logger(__name__)

ERROR_MAX_CHARS = 500


def create_tables(database_url: str) -> None:
    """Create the schema via synchronous SQLAlchemy (no-op if it exists)."""
    engine = create_engine(database_url)
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()


class JobStore:
    """Async CRUD over job records."""

    def __init__(self, database_url: str, database: Optional[Database] = None):
        self.database_url = database_url
        self.database = database or Database(database_url)

    async def connect(self) -> None:
        create_tables(self.database_url)
        if not self.database.is_connected:
            await self.database.connect()

    async def disconnect(self) -> None:
        if self.database.is_connected:
            await self.database.disconnect()

    async def create(self, images: Sequence[str], title: Optional[str] = None) -> JobRecord:
        """Insert a new PENDING record and return it."""
        job_id = str(uuid.uuid4())
        now = utcnow()
        await self.database.execute(
            insert(Process).values(
                id=job_id,
                status=JobStatus.PENDING.value,
                images=json.dumps(list(images)),
                remaining=0,
                title=title or job_id,
                createdAt=now,
                updatedAt=now,
            )
        )
        return await self.get(job_id)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        row = await self.database.fetch_one(select(Process).where(Process.id == job_id))
        return JobRecord.from_row(row) if row else None

    async def list_all(self) -> List[JobRecord]:
        rows = await self.database.fetch_all(select(Process).order_by(Process.createdAt.desc()))
        return [JobRecord.from_row(row) for row in rows]

    async def delete(self, job_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        async with self.database.transaction():
            row = await self.database.fetch_one(select(Process.id).where(Process.id == job_id))
            if not row:
                return False
            await self.database.execute(delete(Process).where(Process.id == job_id))
        return True

    async def transition(
        self, job_id: str, to_status: JobStatus, error: Optional[str] = None
    ) -> bool:
        """Move a job to ``to_status`` if the state machine allows it.

        Returns:
            False if the record no longer exists (deleted while running)

        Raises:
            InvalidTransitionError: if the current status cannot move to ``to_status``
        """
        values = {"status": to_status.value, "updatedAt": utcnow()}
        if to_status == JobStatus.FAILED and error:
            values["error"] = error[:ERROR_MAX_CHARS]

        async with self.database.transaction():
            row = await self.database.fetch_one(
                select(Process.status).where(Process.id == job_id)
            )
            if not row:
                return False
            current = JobStatus(row["status"])
            if not can_transition(current, to_status):
                raise InvalidTransitionError(job_id, current.value, to_status.value)
            await self.database.execute(
                update(Process).where(Process.id == job_id).values(**values)
            )

        logger.info("job_status_changed", job_id=job_id, status=to_status.value)
        return True
