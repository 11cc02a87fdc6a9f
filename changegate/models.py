"""changegate — Canonical data models.

Build nodes are declared in configuration and validated through Pydantic v2.
Run-time records (JobRun, OrchestrationRun) are plain dataclasses owned by
the orchestration layer.  Do not add business logic here — only data shapes
and their invariants.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, field_validator

_NODE_NAME_RE = re.compile(r"^[a-zA-Z0-9_.-]{1,128}$")


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class JobStatus(str, Enum):
    """Lifecycle status of one JobRun."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)

    @property
    def satisfies_dependents(self) -> bool:
        """Succeeded and skipped both unblock downstream nodes."""
        return self in (JobStatus.SUCCEEDED, JobStatus.SKIPPED)


class FailureReason(str, Enum):
    """Why a JobRun did not succeed."""

    TRIGGER_ERROR = "trigger_error"
    POLL_ERROR = "poll_error"
    POLL_TIMEOUT = "poll_timeout"
    REMOTE_FAILURE = "remote_failure"
    UNEXPECTED_ERROR = "unexpected_error"
    NOT_STARTED = "not_started"


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class GateStatus(str, Enum):
    """Per-change-set merge eligibility.

    Transitions:
        pending -> invalidated -> running -> succeeded | failed
        any -> invalidated              (on every modification)
        failed | succeeded | ... -> running  (operator re-run)
    """

    PENDING = "pending"
    INVALIDATED = "invalidated"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CheckState(str, Enum):
    """State of the externally visible merge-gate StatusCheck."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class PublishResult(str, Enum):
    PUBLISHED = "published"
    SUPPRESSED = "suppressed"


# ---------------------------------------------------------------------------
# Static configuration
# ---------------------------------------------------------------------------


class BuildNode(BaseModel):
    """A unit of work bound to one repository and one remote job."""

    name: str
    repository: str = Field(min_length=1, description="Repository, 'owner/name' or bare name.")
    job: str = Field(min_length=1, description="Remote job name (e.g. workflow file).")
    depends_on: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _NODE_NAME_RE.match(v):
            raise ValueError(
                f"Invalid build node name '{v}'. Use letters, digits, '.', '_' or '-'."
            )
        return v

    @field_validator("depends_on")
    @classmethod
    def unique_dependencies(cls, v: list[str]) -> list[str]:
        if len(v) != len(set(v)):
            raise ValueError("depends_on contains duplicate entries.")
        return v


class Revision(NamedTuple):
    """One open revision as reported by the platform."""

    branch: str
    head: str


# ---------------------------------------------------------------------------
# Run-time records
# ---------------------------------------------------------------------------


@dataclass
class JobRun:
    """One execution attempt of a BuildNode against a change set."""

    node: str
    repository: str
    branch: str
    status: JobStatus = JobStatus.PENDING
    handle: str | None = None
    reason: FailureReason | None = None
    error: str | None = None
    poll_count: int = 0
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None

    def finish(
        self,
        status: JobStatus,
        reason: FailureReason | None = None,
        error: str | None = None,
    ) -> "JobRun":
        self.status = status
        self.reason = reason
        self.error = error
        self.finished_at = time.time()
        return self

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node,
            "repository": self.repository,
            "branch": self.branch,
            "status": self.status.value,
            "handle": self.handle,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "poll_count": self.poll_count,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class OrchestrationRun:
    """One full pass of the graph executor over every BuildNode."""

    change_set_id: str
    generation: int
    snapshot: dict[str, str]
    run_id: str = field(default_factory=new_run_id)
    job_runs: dict[str, JobRun] = field(default_factory=dict)
    outcome: RunOutcome | None = None
    aborted: bool = False
    publish_result: PublishResult | None = None
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.SUCCEEDED

    def jobs_with_status(self, *statuses: JobStatus) -> list[str]:
        return sorted(name for name, jr in self.job_runs.items() if jr.status in statuses)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "change_set_id": self.change_set_id,
            "generation": self.generation,
            "snapshot": dict(self.snapshot),
            "outcome": self.outcome.value if self.outcome else None,
            "aborted": self.aborted,
            "publish_result": self.publish_result.value if self.publish_result else None,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "jobs": {name: jr.to_dict() for name, jr in self.job_runs.items()},
        }
