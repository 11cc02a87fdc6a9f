"""Shared pytest fixtures for the changegate test suite."""

from __future__ import annotations

import asyncio
import fnmatch
import itertools
from pathlib import Path
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

from changegate.config import PollingConfig, Settings
from changegate.models import BuildNode, CheckState, Revision
from changegate.orchestration.graph import BuildGraph
from changegate.orchestration.orchestrator import Orchestrator
from changegate.orchestration.state import MemoryGateStateStore
from changegate.platform.base import RemoteJobState, RemotePlatform

CHANGE_SET = "feature-x"

# A → {B, C, D} → E, one repository per node.
DIAMOND = {
    "a": {"repository": "org/repo-a", "job": "a.yml", "depends_on": []},
    "b": {"repository": "org/repo-b", "job": "b.yml", "depends_on": ["a"]},
    "c": {"repository": "org/repo-c", "job": "c.yml", "depends_on": ["a"]},
    "d": {"repository": "org/repo-d", "job": "d.yml", "depends_on": ["a"]},
    "e": {"repository": "org/repo-e", "job": "e.yml", "depends_on": ["b", "c", "d"]},
}


# ---------------------------------------------------------------------------
# Fake remote platform
# ---------------------------------------------------------------------------


class FakePlatform(RemotePlatform):
    """Scriptable in-memory platform.

    ``job_states[job]`` is consumed one entry per poll; the last entry repeats.
    An entry that is an exception instance is raised instead of returned.
    """

    def __init__(self) -> None:
        self.branches: dict[str, set[str]] = {}
        self.revisions: dict[str, list[Revision]] = {}
        self.job_states: dict[str, list[RemoteJobState | Exception]] = {}
        self.branch_errors: dict[str, Exception] = {}
        self.trigger_errors: dict[str, Exception] = {}
        # seconds each trigger call takes before returning a handle
        self.trigger_delay = 0.0
        # awaited after every recorded status check
        self.on_status_check: Callable[[CheckState], Awaitable[None]] | None = None
        # job -> event; polls report RUNNING until the event is set
        self.gates: dict[str, asyncio.Event] = {}

        self.triggered: list[tuple[str, str, str]] = []
        self.polls: list[str] = []
        self.status_checks: list[tuple[str, str, str, CheckState, str]] = []
        self.closed = False

        self.max_active = 0
        self._active: set[str] = set()
        self._handle_jobs: dict[str, str] = {}
        self._scripts: dict[str, list[RemoteJobState | Exception]] = {}
        self._counter = itertools.count(1)

    # -- scripting helpers ------------------------------------------------

    def open_change_set(self, change_set: str, repositories: list[str]) -> None:
        for repo in repositories:
            self.branches.setdefault(repo, set()).add(change_set)
            self.revisions.setdefault(repo, []).append(
                Revision(branch=change_set, head=f"{repo.split('/')[-1]}-1")
            )

    def push(self, repository: str, head: str, branch: str = CHANGE_SET) -> None:
        self.revisions[repository] = [
            rev._replace(head=head) if rev.branch == branch else rev
            for rev in self.revisions[repository]
        ]

    def gate(self, job: str) -> asyncio.Event:
        return self.gates.setdefault(job, asyncio.Event())

    def checks_with_state(self, state: CheckState) -> dict[str, str]:
        return {repo: rev for repo, rev, _ctx, st, _desc in self.status_checks if st == state}

    def triggered_jobs(self) -> list[str]:
        return [job for _repo, job, _branch in self.triggered]

    async def wait_for_trigger(self, job: str, timeout: float = 2.0) -> None:
        async def _wait() -> None:
            while job not in self.triggered_jobs():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_wait(), timeout=timeout)

    # -- RemotePlatform ---------------------------------------------------

    async def branch_exists(self, repository: str, branch: str) -> bool:
        await asyncio.sleep(0)
        if repository in self.branch_errors:
            raise self.branch_errors[repository]
        return branch in self.branches.get(repository, set())

    async def trigger_job(self, repository: str, job: str, branch: str) -> str:
        await asyncio.sleep(self.trigger_delay)
        if job in self.trigger_errors:
            raise self.trigger_errors[job]
        self.triggered.append((repository, job, branch))
        handle = f"{job}#{next(self._counter)}"
        self._handle_jobs[handle] = job
        self._scripts[handle] = list(self.job_states.get(job, [RemoteJobState.SUCCEEDED]))
        self._active.add(handle)
        self.max_active = max(self.max_active, len(self._active))
        return handle

    async def poll_job_status(self, repository: str, handle: str) -> RemoteJobState:
        await asyncio.sleep(0)
        self.polls.append(handle)
        job = self._handle_jobs[handle]
        gate = self.gates.get(job)
        if gate is not None and not gate.is_set():
            return RemoteJobState.RUNNING

        script = self._scripts[handle]
        entry = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(entry, Exception):
            raise entry
        if entry.is_terminal:
            self._active.discard(handle)
        return entry

    async def list_open_revisions(self, repository: str, branch_pattern: str) -> list[Revision]:
        await asyncio.sleep(0)
        return [
            rev
            for rev in self.revisions.get(repository, [])
            if fnmatch.fnmatchcase(rev.branch, branch_pattern)
        ]

    async def set_status_check(
        self,
        repository: str,
        revision: str,
        context: str,
        state: CheckState,
        description: str,
    ) -> None:
        await asyncio.sleep(0)
        self.status_checks.append((repository, revision, context, state, description))
        if self.on_status_check is not None:
            await self.on_status_check(state)

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_platform() -> FakePlatform:
    platform = FakePlatform()
    platform.open_change_set(CHANGE_SET, [spec["repository"] for spec in DIAMOND.values()])
    return platform


@pytest.fixture
def polling() -> PollingConfig:
    return PollingConfig(
        interval_seconds=0.01,
        timeout_seconds=2.0,
        max_poll_retries=3,
        retry_delay_seconds=0.0,
        backoff_factor=1.0,
    )


@pytest.fixture
def diamond_nodes() -> list[BuildNode]:
    return [BuildNode(name=name, **spec) for name, spec in DIAMOND.items()]


@pytest.fixture
def diamond_graph(diamond_nodes: list[BuildNode]) -> BuildGraph:
    return BuildGraph(diamond_nodes)


@pytest.fixture
def memory_store() -> MemoryGateStateStore:
    return MemoryGateStateStore()


@pytest.fixture
def test_settings(tmp_path: Path, polling: PollingConfig) -> Settings:
    settings = Settings(
        polling=polling.model_dump(),
        state={"backend": "memory", "db_path": str(tmp_path / "state.db")},
        logging={"level": "debug", "format": "console"},
        pipeline={"nodes": DIAMOND},
    )
    return settings


@pytest_asyncio.fixture
async def orchestrator(
    test_settings: Settings,
    fake_platform: FakePlatform,
    memory_store: MemoryGateStateStore,
) -> AsyncGenerator[Orchestrator, None]:
    orch = Orchestrator.from_settings(test_settings, fake_platform, memory_store)
    await orch.start()
    yield orch
    await orch.close()
