"""Pydantic models for job records and results.

This module defines the job state machine and the type-safe views of a job
that the orchestrator hands to its callers.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        pending → running      (admission queue starts the job)
        running → completed    (fetch and upscale both succeeded)
        running → failed       (a stage raised)

    ``completed`` and ``failed`` are terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[JobStatus(from_status)]


class JobRecord(BaseModel):
    """A persisted job row."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique job identifier (UUID)")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    images: List[str] = Field(default_factory=list, description="Source URLs, in order")
    remaining: int = Field(default=0, ge=0, description="Stored remaining counter")
    title: str = Field(..., description="Display label (defaults to the id)")
    error: Optional[str] = Field(default=None, description="Failure reason (FAILED only)")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_row(cls, row: Any) -> "JobRecord":
        """Build a record from a ``databases`` row of the ``processes`` table."""
        return cls(
            id=row["id"],
            status=JobStatus(row["status"]),
            images=json.loads(row["images"]) if row["images"] else [],
            remaining=row["remaining"] or 0,
            title=row["title"] or row["id"],
            error=row["error"],
            createdAt=row["createdAt"],
            updatedAt=row["updatedAt"],
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "images": self.images,
            "remaining": self.remaining,
            "title": self.title,
            "error": self.error,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class JobResult(BaseModel):
    """Point-in-time view of a job for status polling.

    ``remaining`` is the live number of files staged in the input directory.
    ``images`` is only set once the job is completed.
    """

    id: str
    status: JobStatus
    title: str
    remaining: int = Field(default=0, ge=0)
    images: Optional[List[str]] = None
    error: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "status": self.status.value,
            "title": self.title,
            "remaining": self.remaining,
        }
        if self.images is not None:
            data["images"] = self.images
        if self.error is not None:
            data["error"] = self.error
        return data
