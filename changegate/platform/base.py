"""Remote platform abstraction — the contract the orchestrator consumes.

The orchestration core never talks to a source host or CI service directly.
Every interaction goes through a ``RemotePlatform`` implementation:

    branch_exists        → is there a branch for this change set in a repo?
    trigger_job          → start a remote job, return its correlation handle
    poll_job_status      → current state of the job behind a handle
    list_open_revisions  → open revisions (branch, head) matching a pattern
    set_status_check     → write the merge-gate signal on a revision

Interface contract
------------------
``poll_job_status`` raises ``TransientPlatformError`` for failures that are
worth retrying (rate limits, 5xx, network).  Any other ``PlatformError`` is
treated as permanent by the caller.  ``trigger_job`` must return a handle
that identifies exactly the job instance it started.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from changegate.models import CheckState, Revision


class RemoteJobState(str, Enum):
    """State of a remote job as reported by the platform."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteJobState.SUCCEEDED, RemoteJobState.FAILED)


class RemotePlatform(ABC):
    """Abstract interface for a remote execution and source hosting platform."""

    @abstractmethod
    async def branch_exists(self, repository: str, branch: str) -> bool:
        """Return True if *branch* exists in *repository*."""

    @abstractmethod
    async def trigger_job(self, repository: str, job: str, branch: str) -> str:
        """Start *job* on *branch* and return the run's correlation handle.

        Raises:
            PlatformError: the job could not be started.
        """

    @abstractmethod
    async def poll_job_status(self, repository: str, handle: str) -> RemoteJobState:
        """Return the current state of the job identified by *handle*.

        Raises:
            TransientPlatformError: temporary failure, the caller may retry.
            PlatformError: permanent failure.
        """

    @abstractmethod
    async def list_open_revisions(
        self, repository: str, branch_pattern: str
    ) -> list[Revision]:
        """Return open revisions whose branch matches *branch_pattern*, in platform order."""

    @abstractmethod
    async def set_status_check(
        self,
        repository: str,
        revision: str,
        context: str,
        state: CheckState,
        description: str,
    ) -> None:
        """Write the status check *context* on *revision*."""

    async def close(self) -> None:
        """Release network resources.  Default: nothing to release."""
