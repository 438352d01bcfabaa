"""Job state machine, records and the admission queue."""

from .admission import AdmissionQueue
from .models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    JobRecord,
    JobResult,
    JobStatus,
    can_transition,
)

__all__ = [
    "AdmissionQueue",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "JobRecord",
    "JobResult",
    "JobStatus",
    "can_transition",
]
