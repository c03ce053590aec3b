"""
Data models for storage layer.

Defines ledger records and job records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one billable action.

    Append-only events that create an auditable ledger of generation spend.
    Written only after the billable side effect has occurred; never
    modified or deleted. Corrections are new compensating entries.
    """
    project_id: str
    user_id: str
    action_type: str
    model_identifier: str
    quantity: float
    amount: float
    created_at: datetime


class JobState(Enum):
    """Lifecycle of a queued job. Order matters: states only move forward."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass
class ExportJob:
    """One unit of queued work and its lifecycle.

    Mutated only by the worker holding its lease.
    """
    id: str
    kind: str
    state: JobState
    progress_percent: float
    input_ref: str
    output_ref: Optional[str]
    options: Dict[str, Any] = field(default_factory=dict)
    project_id: Optional[str] = None
    failure_reason: Optional[str] = None
    worker_id: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class JobStatus:
    """Read-only view of a job, safe to poll."""
    state: JobState
    progress_percent: float
    output_ref: Optional[str] = None
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "state": self.state.value,
            "progressPercent": self.progress_percent,
        }
        if self.output_ref is not None:
            result["outputRef"] = self.output_ref
        if self.failure_reason is not None:
            result["failureReason"] = self.failure_reason
        return result
