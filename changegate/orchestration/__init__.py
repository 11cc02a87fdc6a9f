"""Orchestration layer — build graph, trigger-and-wait unit, executor, gate coordinator."""

from changegate.orchestration.coordinator import InvalidationCoordinator
from changegate.orchestration.executor import GraphExecutor
from changegate.orchestration.graph import BuildGraph
from changegate.orchestration.orchestrator import Orchestrator
from changegate.orchestration.state import (
    GateState,
    GateStateStore,
    MemoryGateStateStore,
    SQLiteGateStateStore,
)
from changegate.orchestration.trigger import TriggerAndWait

__all__ = [
    "BuildGraph",
    "GateState",
    "GateStateStore",
    "GraphExecutor",
    "InvalidationCoordinator",
    "MemoryGateStateStore",
    "Orchestrator",
    "SQLiteGateStateStore",
    "TriggerAndWait",
]
