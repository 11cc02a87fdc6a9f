"""changegate — Multi-repository build orchestration with a transactional merge gate.

A change set is a group of open revisions, one per repository, that share a
branch token and must merge together or not at all.  changegate builds every
repository in dependency order on a remote execution platform and grants the
merge gate only while the validated revisions are still the current ones.

Architecture layers (bottom to top):
    1. Models        — build nodes, job runs, orchestration runs, gate states
    2. Platform      — remote platform contract, GitHub implementation
    3. Orchestration — build graph, trigger-and-wait unit, graph executor,
                       invalidation coordinator, gate state store
    4. CLI           — typer commands over the Orchestrator
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from changegate.models import BuildNode, JobRun, OrchestrationRun

__all__ = [
    "__version__",
    "BuildNode",
    "JobRun",
    "OrchestrationRun",
]
