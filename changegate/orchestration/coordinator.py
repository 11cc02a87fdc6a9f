"""Orchestration layer — Invalidation coordinator.

The InvalidationCoordinator owns the GateState of every change set and is
the only writer of merge-gate status checks.  It reconciles two event
streams:

    invalidate(id)      — a revision in the change set was created/updated
    complete_run(id, r) — an orchestration run finished

A success check is only written when the run's captured generation still
equals the current generation AND every repository's open-revision head
still equals the run's snapshot.  Anything else is a suppressed publish:
not an error, just the transactional outcome of a race.

Serialisation
-------------
Inside one process every entry point runs under a per-change-set
``asyncio.Lock``; unrelated change sets never contend.  Across processes
sharing one state store, the generation bump and the run slot are changed
only through the store's atomic operations, so:

* a second run is rejected while the first one's lease is alive, whichever
  process holds it;
* a bump from another process is never lost, and a bump that lands while
  success checks are being written revokes them (they are set back to
  pending before the publish returns SUPPRESSED).

The run slot is a lease (``gate.run_lease_seconds``) renewed by the running
orchestrator.  ``recover()`` only frees slots whose lease has lapsed, i.e.
whose owner stopped renewing.
"""

from __future__ import annotations

import asyncio
import time
import weakref

from changegate.config import GateConfig
from changegate.exceptions import (
    ConcurrentRunRejectedError,
    OrchestrationError,
    RevisionNotFoundError,
)
from changegate.logging import get_logger
from changegate.models import (
    CheckState,
    GateStatus,
    JobStatus,
    OrchestrationRun,
    PublishResult,
    new_run_id,
)
from changegate.orchestration.state import GateState, GateStateStore
from changegate.platform.base import RemotePlatform

log = get_logger(__name__)

_FAILING = (JobStatus.FAILED, JobStatus.TIMED_OUT)


class InvalidationCoordinator:
    """Per-change-set gate state machine and status check writer.

    Usage::

        coordinator = InvalidationCoordinator(platform, store, graph.repositories(), settings.gate)
        await coordinator.invalidate("feature-x")
        run = await coordinator.begin_run("feature-x")
        ...
        result = await coordinator.complete_run("feature-x", run)
    """

    def __init__(
        self,
        platform: RemotePlatform,
        store: GateStateStore,
        repositories: list[str],
        gate: GateConfig | None = None,
    ) -> None:
        self._platform = platform
        self._store = store
        self._repositories = list(repositories)
        self._gate = gate or GateConfig()
        # change_set_id → lock; an entry lives only while someone holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        # change_set_id → abort signal of the run this process holds the slot for
        self._abort_events: dict[str, asyncio.Event] = {}

    def _lock_for(self, change_set_id: str) -> asyncio.Lock:
        lock = self._locks.get(change_set_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[change_set_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def gate_state(self, change_set_id: str) -> GateState:
        return await self._store.load(change_set_id)

    async def current_revisions(self, change_set_id: str) -> dict[str, str]:
        """Return {repository: head} for every repository with an open revision."""
        pattern = self._gate.pattern_for(change_set_id)
        listings = await asyncio.gather(
            *(self._platform.list_open_revisions(repo, pattern) for repo in self._repositories)
        )
        return {
            repo: revisions[0].head
            for repo, revisions in zip(self._repositories, listings)
            if revisions
        }

    def abort_event(self, change_set_id: str) -> asyncio.Event | None:
        return self._abort_events.get(change_set_id)

    # ------------------------------------------------------------------
    # Modification events
    # ------------------------------------------------------------------

    async def invalidate(self, change_set_id: str) -> GateState:
        """Bump the generation and mark every open revision's check pending."""
        async with self._lock_for(change_set_id):
            # The bump is committed before the platform is touched.
            generation = await self._store.bump_generation(change_set_id)
            state = await self._store.load(change_set_id)

            event = self._abort_events.get(change_set_id)
            if event is not None and self._gate.abort_on_invalidate:
                event.set()

            written = 0
            try:
                for repo, head in (await self.current_revisions(change_set_id)).items():
                    if state.already_written(repo, head, CheckState.PENDING):
                        continue
                    await self._platform.set_status_check(
                        repo,
                        head,
                        self._gate.status_context,
                        CheckState.PENDING,
                        "Change set modified; validation required",
                    )
                    state.record_check(repo, head, CheckState.PENDING)
                    written += 1
            finally:
                await self._store.save(state)

        log.info(
            "change_set_invalidated",
            change_set_id=change_set_id,
            generation=generation,
            checks_written=written,
            run_in_flight=state.active_run_id,
        )
        return state

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def begin_run(self, change_set_id: str) -> OrchestrationRun:
        """Claim the single-run slot and capture generation + revision snapshot.

        Raises:
            ConcurrentRunRejectedError: a live run already holds the slot.
        """
        run_id = new_run_id()
        async with self._lock_for(change_set_id):
            state = await self._store.claim_slot(
                change_set_id, run_id, time.time() + self._gate.run_lease_seconds
            )
            if state.active_run_id != run_id:
                log.warning(
                    "concurrent_run_rejected",
                    change_set_id=change_set_id,
                    active_run_id=state.active_run_id,
                    lease_expires_at=state.lease_expires_at,
                )
                raise ConcurrentRunRejectedError(change_set_id, state.active_run_id or "unknown")

            try:
                snapshot = await self.current_revisions(change_set_id)
            except BaseException:
                await self._store.release_slot(change_set_id, run_id)
                state = await self._store.load(change_set_id)
                state.status = GateStatus.INVALIDATED
                await self._store.save(state)
                raise

            run = OrchestrationRun(
                change_set_id=change_set_id,
                generation=state.generation,
                snapshot=snapshot,
                run_id=run_id,
            )
            self._abort_events[change_set_id] = asyncio.Event()

        log.info(
            "run_slot_claimed",
            change_set_id=change_set_id,
            run_id=run.run_id,
            generation=run.generation,
            revisions=len(snapshot),
        )
        return run

    async def renew_lease(self, change_set_id: str, run_id: str) -> bool:
        """Push the slot lease of *run_id* forward.  False once the slot was lost."""
        return await self._store.renew_lease(
            change_set_id, run_id, time.time() + self._gate.run_lease_seconds
        )

    async def complete_run(
        self, change_set_id: str, run: OrchestrationRun
    ) -> PublishResult | None:
        """Release the run slot and publish (success) or record the failure.

        Returns the publish result for succeeded runs, None for failed ones.
        """
        async with self._lock_for(change_set_id):
            if not await self._store.release_slot(change_set_id, run.run_id):
                log.warning("run_lease_lost", change_set_id=change_set_id, run_id=run.run_id)
            self._abort_events.pop(change_set_id, None)

            state = await self._store.load(change_set_id)
            if run.succeeded:
                result: PublishResult | None = await self._publish_locked(state, run)
            else:
                await self._record_failure_locked(state, run)
                result = None
            await self._store.save(state)
        run.publish_result = result
        return result

    async def abandon_run(self, change_set_id: str, run_id: str) -> None:
        """Release the slot of a run that ended without an outcome (cancelled/crashed)."""
        async with self._lock_for(change_set_id):
            self._abort_events.pop(change_set_id, None)
            if not await self._store.release_slot(change_set_id, run_id):
                return
            state = await self._store.load(change_set_id)
            state.status = GateStatus.INVALIDATED
            await self._store.save(state)
        log.warning("run_abandoned", change_set_id=change_set_id, run_id=run_id)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, change_set_id: str, run: OrchestrationRun) -> PublishResult:
        """Publish success for a succeeded *run* unless the change set moved on."""
        if not run.succeeded:
            raise OrchestrationError(
                f"Cannot publish run '{run.run_id}' with outcome "
                f"'{run.outcome.value if run.outcome else None}'",
                context={"change_set_id": change_set_id, "run_id": run.run_id},
            )
        async with self._lock_for(change_set_id):
            state = await self._store.load(change_set_id)
            result = await self._publish_locked(state, run)
            await self._store.save(state)
        run.publish_result = result
        return result

    async def _publish_locked(self, state: GateState, run: OrchestrationRun) -> PublishResult:
        reason: str | None = None
        if state.generation != run.generation:
            reason = "generation_changed"
        else:
            current = await self.current_revisions(state.change_set_id)
            if current != run.snapshot:
                reason = "revisions_changed"

        if reason is not None:
            state.status = GateStatus.INVALIDATED
            log.warning(
                "publish_suppressed",
                change_set_id=state.change_set_id,
                run_id=run.run_id,
                reason=reason,
                run_generation=run.generation,
                current_generation=state.generation,
            )
            return PublishResult.SUPPRESSED

        try:
            for repo, head in sorted(run.snapshot.items()):
                if state.already_written(repo, head, CheckState.SUCCESS):
                    continue
                await self._platform.set_status_check(
                    repo,
                    head,
                    self._gate.status_context,
                    CheckState.SUCCESS,
                    f"Change set validated by {run.run_id}",
                )
                state.record_check(repo, head, CheckState.SUCCESS)
        finally:
            # Recorded before the generation is re-read: an invalidation that
            # lands after this save sees the success records and overwrites them.
            await self._store.save(state)

        latest = await self._store.load(state.change_set_id)
        if latest.generation != run.generation:
            await self._revoke_locked(state, run, latest.generation)
            return PublishResult.SUPPRESSED

        if latest.active_run_id is None:
            state.status = GateStatus.SUCCEEDED
        log.info(
            "publish_succeeded",
            change_set_id=state.change_set_id,
            run_id=run.run_id,
            revisions=len(run.snapshot),
        )
        return PublishResult.PUBLISHED

    async def _revoke_locked(
        self, state: GateState, run: OrchestrationRun, current_generation: int
    ) -> None:
        """Set the checks a publish just wrote back to pending."""
        state.generation = current_generation
        state.status = GateStatus.INVALIDATED
        for repo, head in sorted(run.snapshot.items()):
            if not state.already_written(repo, head, CheckState.SUCCESS):
                continue
            await self._platform.set_status_check(
                repo,
                head,
                self._gate.status_context,
                CheckState.PENDING,
                "Change set modified; validation required",
            )
            state.record_check(repo, head, CheckState.PENDING)
        log.warning(
            "publish_revoked",
            change_set_id=state.change_set_id,
            run_id=run.run_id,
            run_generation=run.generation,
            current_generation=current_generation,
        )

    async def _record_failure_locked(self, state: GateState, run: OrchestrationRun) -> None:
        if state.generation != run.generation:
            # A newer modification already invalidated this run's revisions.
            state.status = GateStatus.INVALIDATED
            log.info("failed_run_superseded", change_set_id=state.change_set_id, run_id=run.run_id)
            return

        state.status = GateStatus.FAILED
        if not self._gate.report_failures:
            return
        failed_nodes = ", ".join(run.jobs_with_status(*_FAILING)) or "aborted"
        for repo, head in sorted(run.snapshot.items()):
            if state.already_written(repo, head, CheckState.FAILURE):
                continue
            await self._platform.set_status_check(
                repo,
                head,
                self._gate.status_context,
                CheckState.FAILURE,
                f"Failed: {failed_nodes}"[:140],
            )
            state.record_check(repo, head, CheckState.FAILURE)

    async def publish_test_signal(self, change_set_id: str, repository: str) -> str:
        """Write a success check on one repository's open revision, bypassing the graph.

        Diagnostic only: the gate status is left untouched.

        Returns:
            The revision the check was written on.
        """
        pattern = self._gate.pattern_for(change_set_id)
        async with self._lock_for(change_set_id):
            revisions = await self._platform.list_open_revisions(repository, pattern)
            if not revisions:
                raise RevisionNotFoundError(change_set_id, repository)
            head = revisions[0].head
            await self._platform.set_status_check(
                repository,
                head,
                self._gate.status_context,
                CheckState.SUCCESS,
                "Manual test signal",
            )
            state = await self._store.load(change_set_id)
            state.record_check(repository, head, CheckState.SUCCESS)
            await self._store.save(state)

        log.info(
            "test_signal_published",
            change_set_id=change_set_id,
            repository=repository,
            revision=head,
        )
        return head

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def recover(self) -> list[str]:
        """Release run slots whose lease lapsed (their owner stopped renewing).

        Slots held under a live lease belong to a running orchestrator, possibly
        in another process, and are left alone.

        Returns the change set ids that were reset to INVALIDATED.
        """
        recovered: list[str] = []
        for stale in await self._store.list_states():
            if stale.active_run_id is None:
                continue
            async with self._lock_for(stale.change_set_id):
                dead_run = await self._store.release_expired_slot(stale.change_set_id)
            if dead_run is None:
                continue
            log.warning(
                "stale_run_recovered",
                change_set_id=stale.change_set_id,
                run_id=dead_run,
            )
            recovered.append(stale.change_set_id)
        return recovered
