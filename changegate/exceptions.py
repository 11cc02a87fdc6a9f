"""changegate — Exception hierarchy.

All exceptions raised by the orchestrator inherit from ChangeGateError so that
callers can catch the full family with a single except clause when needed.

Hierarchy:
    ChangeGateError
    ├── ConfigurationError
    │   ├── DAGCycleError
    │   └── UnknownDependencyError
    ├── PlatformError
    │   └── TransientPlatformError
    ├── OrchestrationError
    │   ├── ConcurrentRunRejectedError
    │   └── RevisionNotFoundError
    └── StateStoreError

Node-level failures (trigger errors, poll errors, timeouts) are never raised
across the executor boundary; they are recorded on the JobRun instead.
"""

from __future__ import annotations

from typing import Any


class ChangeGateError(Exception):
    """Base exception for all changegate errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(ChangeGateError):
    """The pipeline or settings are invalid."""


class DAGCycleError(ConfigurationError):
    """The build graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            context={"cycle": cycle},
        )
        self.cycle = cycle


class UnknownDependencyError(ConfigurationError):
    """A build node depends on a node that is not declared."""

    def __init__(self, node: str, dependency: str) -> None:
        super().__init__(
            f"Build node '{node}' depends on undeclared node '{dependency}'",
            context={"node": node, "dependency": dependency},
        )
        self.node = node
        self.dependency = dependency


# ---------------------------------------------------------------------------
# Remote platform
# ---------------------------------------------------------------------------


class PlatformError(ChangeGateError):
    """The remote execution platform rejected or failed a request."""

    def __init__(
        self,
        message: str,
        repository: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            context={"repository": repository, "status_code": status_code},
        )
        self.repository = repository
        self.status_code = status_code


class TransientPlatformError(PlatformError):
    """A temporary platform failure (rate limit, 5xx, network). Safe to retry."""


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class OrchestrationError(ChangeGateError):
    """Base for all orchestration errors."""


class ConcurrentRunRejectedError(OrchestrationError):
    """An orchestration run is already in progress for the change set."""

    def __init__(self, change_set_id: str, active_run_id: str) -> None:
        super().__init__(
            f"Change set '{change_set_id}' already has a running orchestration "
            f"('{active_run_id}')",
            context={"change_set_id": change_set_id, "active_run_id": active_run_id},
        )
        self.change_set_id = change_set_id
        self.active_run_id = active_run_id


class RevisionNotFoundError(OrchestrationError):
    """No open revision exists for the change set in the given repository."""

    def __init__(self, change_set_id: str, repository: str) -> None:
        super().__init__(
            f"No open revision for change set '{change_set_id}' in '{repository}'",
            context={"change_set_id": change_set_id, "repository": repository},
        )
        self.change_set_id = change_set_id
        self.repository = repository


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class StateStoreError(ChangeGateError):
    """Gate state store operation failed."""
