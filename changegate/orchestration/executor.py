"""Orchestration layer — Graph executor.

The GraphExecutor runs every node of a BuildGraph exactly once for a change
set branch and resolves to a single RunOutcome:

  1. Seed a per-node counter of unresolved upstream dependencies.
  2. Start every node whose counter is zero as its own asyncio task
     (up to ``max_concurrency`` at a time; the rest queue in FIFO order).
  3. When a node resolves SUCCEEDED or SKIPPED, decrement each successor's
     counter and start the successors that reach zero.
  4. When a node resolves FAILED or TIMED_OUT (or the abort event fires),
     the run is failed: no node that has not started yet is ever started.
     Nodes already running are awaited and recorded, but their results no
     longer change the outcome.
  5. Outcome is SUCCEEDED only if every node is SUCCEEDED or SKIPPED.

Downstream nodes only ever see fully terminal upstream states.  The
executor never raises for node-level problems; a unit that escapes with an
unexpected exception is recorded as FAILED (unexpected_error).
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

from changegate.logging import get_logger
from changegate.models import FailureReason, JobRun, JobStatus, RunOutcome
from changegate.orchestration.graph import BuildGraph
from changegate.orchestration.trigger import TriggerAndWait

log = get_logger(__name__)


class GraphExecutor:
    """Executes a BuildGraph for one change set.

    Usage::

        executor = GraphExecutor(graph, TriggerAndWait(platform, settings.polling))
        outcome, job_runs, aborted = await executor.run("feature-x")
    """

    def __init__(
        self,
        graph: BuildGraph,
        unit: TriggerAndWait,
        max_concurrency: int | None = None,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._graph = graph
        self._unit = unit
        self._max_concurrency = max_concurrency

    @property
    def graph(self) -> BuildGraph:
        return self._graph

    async def run(
        self,
        branch: str,
        abort: asyncio.Event | None = None,
    ) -> tuple[RunOutcome, dict[str, JobRun], bool]:
        """Execute the graph against *branch*.

        Returns:
            (outcome, job_runs keyed by node name, aborted)
        """
        job_runs: dict[str, JobRun] = {}
        unresolved = self._graph.unresolved_counts()
        ready: deque[str] = deque(self._graph.roots())
        running: dict[asyncio.Future[Any], str] = {}
        failed = False
        aborted = abort is not None and abort.is_set()

        abort_waiter: asyncio.Future[Any] | None = None
        if abort is not None and not aborted:
            abort_waiter = asyncio.create_task(abort.wait(), name=f"abort_{branch}")

        def start_ready() -> None:
            while ready and not failed and not aborted:
                if self._max_concurrency is not None and len(running) >= self._max_concurrency:
                    return
                name = ready.popleft()
                node = self._graph.node(name)
                task = asyncio.create_task(self._unit.run(node, branch), name=f"node_{name}")
                running[task] = name
                log.info("node_started", node=name, repository=node.repository)

        try:
            start_ready()
            while running:
                waitables = set(running)
                if abort_waiter is not None and not aborted:
                    waitables.add(abort_waiter)
                done, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)

                if abort_waiter is not None and abort_waiter in done:
                    aborted = True
                    log.warning("run_aborted", not_started=len(ready), running=len(running))

                for task in done:
                    if task is abort_waiter:
                        continue
                    name = running.pop(task)
                    job_run = self._collect(name, branch, task)
                    job_runs[name] = job_run

                    if job_run.status.satisfies_dependents:
                        for successor in self._graph.successors(name):
                            unresolved[successor] -= 1
                            if unresolved[successor] == 0:
                                ready.append(successor)
                    elif not failed:
                        failed = True
                        log.warning(
                            "run_failing_fast",
                            node=name,
                            status=job_run.status.value,
                            still_running=sorted(running.values()),
                        )

                start_ready()
        finally:
            if abort_waiter is not None and not abort_waiter.done():
                abort_waiter.cancel()
            # Only reached with live tasks when the run itself is cancelled.
            for task in running:
                task.cancel()

        for name in self._graph.topological_order():
            if name not in job_runs:
                node = self._graph.node(name)
                job_runs[name] = JobRun(
                    node=name,
                    repository=node.repository,
                    branch=branch,
                    reason=FailureReason.NOT_STARTED,
                )

        all_satisfied = all(jr.status.satisfies_dependents for jr in job_runs.values())
        outcome = (
            RunOutcome.SUCCEEDED if all_satisfied and not aborted else RunOutcome.FAILED
        )
        log.info(
            "graph_finished",
            outcome=outcome.value,
            aborted=aborted,
            succeeded=sum(jr.status == JobStatus.SUCCEEDED for jr in job_runs.values()),
            skipped=sum(jr.status == JobStatus.SKIPPED for jr in job_runs.values()),
        )
        return outcome, job_runs, aborted

    def _collect(self, name: str, branch: str, task: asyncio.Future[Any]) -> JobRun:
        if task.cancelled():
            error = "Node task was cancelled"
        elif (exc := task.exception()) is not None:
            error = str(exc) or exc.__class__.__name__
        else:
            job_run: JobRun = task.result()
            log.info("node_finished", node=name, status=job_run.status.value)
            return job_run

        node = self._graph.node(name)
        log.error("node_crashed", node=name, error=error)
        return JobRun(node=name, repository=node.repository, branch=branch).finish(
            JobStatus.FAILED, FailureReason.UNEXPECTED_ERROR, error
        )
