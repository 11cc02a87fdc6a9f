"""Orchestration layer — Orchestrator.

The Orchestrator is the invocation surface consumed by the CLI and other
automation.  It wires the graph executor to the invalidation coordinator:

  1. Claim the change set's run slot (captures generation + snapshot).
  2. Execute the build graph for the change set branch while a heartbeat
     task renews the slot lease.  Losing the slot aborts the run.
  3. Hand the finished run to the coordinator, which publishes success only
     if nothing changed since step 1.

``invalidate`` and ``publish_test_signal`` go straight to the coordinator.
"""

from __future__ import annotations

import asyncio
import time

from changegate.config import Settings
from changegate.exceptions import StateStoreError
from changegate.logging import bind_run_context, clear_run_context, get_logger
from changegate.models import OrchestrationRun, PublishResult
from changegate.orchestration.coordinator import InvalidationCoordinator
from changegate.orchestration.executor import GraphExecutor
from changegate.orchestration.graph import BuildGraph
from changegate.orchestration.state import GateState, GateStateStore
from changegate.orchestration.trigger import TriggerAndWait
from changegate.platform.base import RemotePlatform

log = get_logger(__name__)


class Orchestrator:
    """Runs change set validations and owns the merge-gate coordinator.

    Usage::

        orchestrator = Orchestrator.from_settings(settings, platform, store)
        await orchestrator.start()
        run = await orchestrator.run_orchestration("feature-x")
        print(run.outcome, run.publish_result)
    """

    def __init__(
        self,
        graph: BuildGraph,
        platform: RemotePlatform,
        store: GateStateStore,
        settings: Settings,
    ) -> None:
        self._graph = graph
        self._platform = platform
        self._store = store
        self._settings = settings
        self._coordinator = InvalidationCoordinator(
            platform=platform,
            store=store,
            repositories=graph.repositories(),
            gate=settings.gate,
        )
        self._executor = GraphExecutor(
            graph,
            TriggerAndWait(platform, settings.polling),
            max_concurrency=settings.pipeline.max_concurrency,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        platform: RemotePlatform,
        store: GateStateStore,
    ) -> "Orchestrator":
        return cls(BuildGraph(settings.pipeline.build_nodes()), platform, store, settings)

    @property
    def graph(self) -> BuildGraph:
        return self._graph

    @property
    def coordinator(self) -> InvalidationCoordinator:
        return self._coordinator

    async def start(self) -> None:
        """Open the state store and release run slots left by a dead process."""
        await self._store.init()
        recovered = await self._coordinator.recover()
        if recovered:
            log.warning("orchestrator_recovered_stale_runs", change_sets=recovered)

    async def close(self) -> None:
        await self._store.close()
        await self._platform.close()

    # ------------------------------------------------------------------
    # Invocation surface
    # ------------------------------------------------------------------

    async def run_orchestration(self, change_set_id: str) -> OrchestrationRun:
        """Validate *change_set_id* end to end and return the finished run.

        Raises:
            ConcurrentRunRejectedError: another run for the change set is in progress.
        """
        bind_run_context(change_set_id=change_set_id)
        run = await self._coordinator.begin_run(change_set_id)
        bind_run_context(run_id=run.run_id)
        log.info(
            "run_started",
            node_count=len(self._graph),
            generation=run.generation,
            snapshot=run.snapshot,
        )

        abort = self._coordinator.abort_event(change_set_id)
        heartbeat = asyncio.create_task(
            self._keep_lease(change_set_id, run.run_id, abort),
            name=f"lease_{run.run_id}",
        )
        try:
            outcome, job_runs, aborted = await self._executor.run(change_set_id, abort=abort)
        except BaseException:
            await self._stop(heartbeat)
            await self._coordinator.abandon_run(change_set_id, run.run_id)
            clear_run_context()
            raise
        await self._stop(heartbeat)

        run.outcome = outcome
        run.job_runs = job_runs
        run.aborted = aborted
        run.finished_at = time.time()

        try:
            result = await self._coordinator.complete_run(change_set_id, run)
        finally:
            clear_run_context()

        log.info(
            "run_finished",
            change_set_id=change_set_id,
            run_id=run.run_id,
            outcome=outcome.value,
            publish_result=result.value if result else None,
            duration=round(run.finished_at - run.started_at, 3),
        )
        return run

    async def _keep_lease(
        self, change_set_id: str, run_id: str, abort: asyncio.Event | None
    ) -> None:
        """Renew the run slot lease until cancelled; abort the run if the slot is lost."""
        interval = self._settings.gate.run_lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self._coordinator.renew_lease(change_set_id, run_id)
            except StateStoreError as exc:
                log.warning("run_lease_renew_failed", run_id=run_id, error=exc.message)
                continue
            if not renewed:
                log.error("run_lease_lost", change_set_id=change_set_id, run_id=run_id)
                if abort is not None:
                    abort.set()
                return

    @staticmethod
    async def _stop(task: asyncio.Task[None]) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def invalidate(self, change_set_id: str) -> GateState:
        return await self._coordinator.invalidate(change_set_id)

    async def publish(self, change_set_id: str, run: OrchestrationRun) -> PublishResult:
        return await self._coordinator.publish(change_set_id, run)

    async def publish_test_signal(self, change_set_id: str, repository: str) -> str:
        return await self._coordinator.publish_test_signal(change_set_id, repository)

    async def gate_state(self, change_set_id: str) -> GateState:
        return await self._coordinator.gate_state(change_set_id)
