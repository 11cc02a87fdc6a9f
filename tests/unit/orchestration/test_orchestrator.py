"""Unit tests — Orchestrator (executor + coordinator end to end)."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from changegate.config import Settings
from changegate.exceptions import ConcurrentRunRejectedError
from changegate.models import (
    CheckState,
    FailureReason,
    GateStatus,
    JobStatus,
    PublishResult,
    RunOutcome,
)
from changegate.orchestration.orchestrator import Orchestrator
from changegate.orchestration.state import (
    GateState,
    MemoryGateStateStore,
    SQLiteGateStateStore,
)
from changegate.platform.base import RemoteJobState

from conftest import CHANGE_SET, DIAMOND, FakePlatform

REPOS = [spec["repository"] for spec in DIAMOND.values()]


@pytest.mark.unit
class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_invalidate_then_run_publishes(
        self, orchestrator: Orchestrator, fake_platform: FakePlatform
    ) -> None:
        assert (await orchestrator.gate_state(CHANGE_SET)).status == GateStatus.PENDING

        await orchestrator.invalidate(CHANGE_SET)
        run = await orchestrator.run_orchestration(CHANGE_SET)

        assert run.outcome == RunOutcome.SUCCEEDED
        assert run.publish_result == PublishResult.PUBLISHED
        assert run.finished_at is not None
        assert set(fake_platform.checks_with_state(CheckState.SUCCESS)) == set(REPOS)
        state = await orchestrator.gate_state(CHANGE_SET)
        assert state.status == GateStatus.SUCCEEDED
        assert state.last_run_id == run.run_id

    @pytest.mark.asyncio
    async def test_modification_after_success_resets_gate(
        self, orchestrator: Orchestrator, fake_platform: FakePlatform
    ) -> None:
        await orchestrator.run_orchestration(CHANGE_SET)
        fake_platform.push("org/repo-a", "repo-a-2")
        state = await orchestrator.invalidate(CHANGE_SET)

        assert state.status == GateStatus.INVALIDATED
        assert fake_platform.status_checks[-1][:2] == ("org/repo-a", "repo-a-2")
        assert fake_platform.status_checks[-1][3] == CheckState.PENDING

    @pytest.mark.asyncio
    async def test_failed_run(self, orchestrator: Orchestrator, fake_platform: FakePlatform) -> None:
        fake_platform.job_states["b.yml"] = [RemoteJobState.FAILED]
        run = await orchestrator.run_orchestration(CHANGE_SET)

        assert run.outcome == RunOutcome.FAILED
        assert run.publish_result is None
        assert run.jobs_with_status(JobStatus.FAILED) == ["b"]
        assert run.job_runs["e"].reason == FailureReason.NOT_STARTED
        assert fake_platform.checks_with_state(CheckState.SUCCESS) == {}
        assert (await orchestrator.gate_state(CHANGE_SET)).status == GateStatus.FAILED

    @pytest.mark.asyncio
    async def test_rerun_after_failure(
        self, orchestrator: Orchestrator, fake_platform: FakePlatform
    ) -> None:
        fake_platform.job_states["b.yml"] = [RemoteJobState.FAILED]
        await orchestrator.run_orchestration(CHANGE_SET)
        fake_platform.job_states["b.yml"] = [RemoteJobState.SUCCEEDED]
        run = await orchestrator.run_orchestration(CHANGE_SET)
        assert run.publish_result == PublishResult.PUBLISHED
        assert (await orchestrator.gate_state(CHANGE_SET)).status == GateStatus.SUCCEEDED


@pytest.mark.unit
class TestRaces:
    @pytest.mark.asyncio
    async def test_invalidation_mid_run_suppresses_publish(
        self, orchestrator: Orchestrator, fake_platform: FakePlatform
    ) -> None:
        gate = fake_platform.gate("c.yml")
        task = asyncio.create_task(orchestrator.run_orchestration(CHANGE_SET))
        await fake_platform.wait_for_trigger("c.yml")

        fake_platform.push("org/repo-c", "repo-c-2")
        await orchestrator.invalidate(CHANGE_SET)
        gate.set()
        run = await task

        assert run.outcome == RunOutcome.SUCCEEDED
        assert not run.aborted
        assert run.publish_result == PublishResult.SUPPRESSED
        assert fake_platform.checks_with_state(CheckState.SUCCESS) == {}
        state = await orchestrator.gate_state(CHANGE_SET)
        assert state.status == GateStatus.INVALIDATED
        assert state.active_run_id is None
        assert state.generation == 1

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(
        self, orchestrator: Orchestrator, fake_platform: FakePlatform
    ) -> None:
        gate = fake_platform.gate("a.yml")
        first = asyncio.create_task(orchestrator.run_orchestration(CHANGE_SET))
        await fake_platform.wait_for_trigger("a.yml")

        with pytest.raises(ConcurrentRunRejectedError):
            await orchestrator.run_orchestration(CHANGE_SET)

        gate.set()
        run = await first
        assert run.publish_result == PublishResult.PUBLISHED
        assert fake_platform.triggered_jobs().count("a.yml") == 1

    @pytest.mark.asyncio
    async def test_concurrent_runs_of_different_change_sets(
        self, orchestrator: Orchestrator, fake_platform: FakePlatform
    ) -> None:
        fake_platform.open_change_set("feature-y", REPOS)
        first, second = await asyncio.gather(
            orchestrator.run_orchestration(CHANGE_SET),
            orchestrator.run_orchestration("feature-y"),
        )
        assert first.publish_result == second.publish_result == PublishResult.PUBLISHED
        assert len(fake_platform.triggered) == 10
        assert {branch for _repo, _job, branch in fake_platform.triggered} == {
            CHANGE_SET,
            "feature-y",
        }

    @pytest.mark.asyncio
    async def test_abort_on_invalidate_stops_new_nodes(
        self,
        test_settings: Settings,
        fake_platform: FakePlatform,
        memory_store: MemoryGateStateStore,
    ) -> None:
        settings = test_settings.model_copy(
            update={"gate": test_settings.gate.model_copy(update={"abort_on_invalidate": True})}
        )
        orchestrator = Orchestrator.from_settings(settings, fake_platform, memory_store)
        await orchestrator.start()

        gate = fake_platform.gate("a.yml")
        task = asyncio.create_task(orchestrator.run_orchestration(CHANGE_SET))
        await fake_platform.wait_for_trigger("a.yml")
        await orchestrator.invalidate(CHANGE_SET)
        gate.set()
        run = await task

        assert run.aborted
        assert run.outcome == RunOutcome.FAILED
        assert run.job_runs["a"].status == JobStatus.SUCCEEDED
        assert fake_platform.triggered_jobs() == ["a.yml"]
        assert fake_platform.checks_with_state(CheckState.FAILURE) == {}
        assert (await orchestrator.gate_state(CHANGE_SET)).status == GateStatus.INVALIDATED

    @pytest.mark.asyncio
    async def test_cancelled_run_releases_slot(
        self, orchestrator: Orchestrator, fake_platform: FakePlatform
    ) -> None:
        fake_platform.gate("a.yml")
        task = asyncio.create_task(orchestrator.run_orchestration(CHANGE_SET))
        await fake_platform.wait_for_trigger("a.yml")
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        state = await orchestrator.gate_state(CHANGE_SET)
        assert state.active_run_id is None
        assert state.status == GateStatus.INVALIDATED


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_recovers_stale_runs(
        self,
        test_settings: Settings,
        fake_platform: FakePlatform,
        memory_store: MemoryGateStateStore,
    ) -> None:
        await memory_store.save(
            GateState(change_set_id=CHANGE_SET, status=GateStatus.RUNNING, active_run_id="run_dead")
        )
        orchestrator = Orchestrator.from_settings(test_settings, fake_platform, memory_store)
        await orchestrator.start()

        run = await orchestrator.run_orchestration(CHANGE_SET)
        assert run.publish_result == PublishResult.PUBLISHED

    @pytest.mark.asyncio
    async def test_close_closes_platform(
        self, test_settings: Settings, fake_platform: FakePlatform, memory_store: MemoryGateStateStore
    ) -> None:
        orchestrator = Orchestrator.from_settings(test_settings, fake_platform, memory_store)
        await orchestrator.start()
        await orchestrator.close()
        assert fake_platform.closed

    @pytest.mark.asyncio
    async def test_publish_test_signal(
        self, orchestrator: Orchestrator, fake_platform: FakePlatform
    ) -> None:
        revision = await orchestrator.publish_test_signal(CHANGE_SET, "org/repo-b")
        assert revision == "repo-b-1"
        assert (await orchestrator.gate_state(CHANGE_SET)).status == GateStatus.PENDING


def _with_gate(settings: Settings, **update: object) -> Settings:
    return settings.model_copy(update={"gate": settings.gate.model_copy(update=update)})


@pytest.mark.unit
class TestSharedStateFile:
    """Two orchestrators (e.g. two CLI processes) sharing one SQLite state file."""

    @pytest_asyncio.fixture
    async def pair(
        self, tmp_path: Path, test_settings: Settings, fake_platform: FakePlatform
    ) -> AsyncGenerator[tuple[Orchestrator, Orchestrator], None]:
        db = tmp_path / "shared.db"
        first = Orchestrator.from_settings(test_settings, fake_platform, SQLiteGateStateStore(db))
        second = Orchestrator.from_settings(test_settings, fake_platform, SQLiteGateStateStore(db))
        await first.start()
        yield first, second
        await first.close()
        await second.close()

    @pytest.mark.asyncio
    async def test_second_process_is_rejected_while_first_runs(
        self, pair: tuple[Orchestrator, Orchestrator], fake_platform: FakePlatform
    ) -> None:
        first, second = pair
        gate = fake_platform.gate("a.yml")
        task = asyncio.create_task(first.run_orchestration(CHANGE_SET))
        await fake_platform.wait_for_trigger("a.yml")

        # Startup recovery must not free a slot whose owner is still alive.
        await second.start()
        with pytest.raises(ConcurrentRunRejectedError):
            await second.run_orchestration(CHANGE_SET)

        gate.set()
        run = await task
        assert run.publish_result == PublishResult.PUBLISHED
        assert fake_platform.triggered_jobs().count("a.yml") == 1
        state = await second.gate_state(CHANGE_SET)
        assert state.status == GateStatus.SUCCEEDED
        assert state.active_run_id is None

    @pytest.mark.asyncio
    async def test_invalidation_from_second_process_suppresses_publish(
        self, pair: tuple[Orchestrator, Orchestrator], fake_platform: FakePlatform
    ) -> None:
        first, second = pair
        gate = fake_platform.gate("c.yml")
        task = asyncio.create_task(first.run_orchestration(CHANGE_SET))
        await fake_platform.wait_for_trigger("c.yml")

        await second.start()
        invalidated = await second.invalidate(CHANGE_SET)
        assert invalidated.generation == 1
        assert invalidated.active_run_id is not None

        gate.set()
        run = await task
        assert run.outcome == RunOutcome.SUCCEEDED
        assert run.publish_result == PublishResult.SUPPRESSED
        assert fake_platform.checks_with_state(CheckState.SUCCESS) == {}
        state = await first.gate_state(CHANGE_SET)
        assert state.generation == 1
        assert state.status == GateStatus.INVALIDATED
        assert state.active_run_id is None


@pytest.mark.unit
class TestRunLease:
    @pytest.mark.asyncio
    async def test_heartbeat_keeps_slot_past_lease(
        self,
        test_settings: Settings,
        fake_platform: FakePlatform,
        memory_store: MemoryGateStateStore,
    ) -> None:
        settings = _with_gate(test_settings, run_lease_seconds=0.15)
        orchestrator = Orchestrator.from_settings(settings, fake_platform, memory_store)
        await orchestrator.start()

        gate = fake_platform.gate("a.yml")
        task = asyncio.create_task(orchestrator.run_orchestration(CHANGE_SET))
        await fake_platform.wait_for_trigger("a.yml")
        await asyncio.sleep(0.4)

        other = Orchestrator.from_settings(settings, fake_platform, memory_store)
        await other.start()
        with pytest.raises(ConcurrentRunRejectedError):
            await other.run_orchestration(CHANGE_SET)

        gate.set()
        run = await task
        assert run.publish_result == PublishResult.PUBLISHED

    @pytest.mark.asyncio
    async def test_lost_slot_aborts_run(
        self,
        test_settings: Settings,
        fake_platform: FakePlatform,
        memory_store: MemoryGateStateStore,
    ) -> None:
        settings = _with_gate(test_settings, run_lease_seconds=0.06)
        orchestrator = Orchestrator.from_settings(settings, fake_platform, memory_store)
        await orchestrator.start()

        gate = fake_platform.gate("a.yml")
        task = asyncio.create_task(orchestrator.run_orchestration(CHANGE_SET))
        await fake_platform.wait_for_trigger("a.yml")
        abort = orchestrator.coordinator.abort_event(CHANGE_SET)
        assert abort is not None

        holder = (await memory_store.load(CHANGE_SET)).active_run_id
        assert holder is not None
        assert await memory_store.release_slot(CHANGE_SET, holder)
        await asyncio.wait_for(abort.wait(), timeout=1.0)

        gate.set()
        run = await task
        assert run.aborted
        assert run.outcome == RunOutcome.FAILED
        assert fake_platform.triggered_jobs() == ["a.yml"]
