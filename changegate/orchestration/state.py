"""Orchestration layer — Gate state and its persistence.

One GateState per change set: the merge-eligibility status, the monotonic
generation counter, the leased single-run slot, and the last status check
written per repository (used to avoid duplicate writes).

Two stores share one interface:
    MemoryGateStateStore  — single orchestrator process, nothing persisted
    SQLiteGateStateStore  — aiosqlite file shared by every orchestrator
                            process (CLI invocations included)

Column ownership
----------------
The generation counter and the run slot (``active_run_id`` +
``lease_expires_at``) are only ever changed by the store's atomic
operations: ``bump_generation``, ``claim_slot``, ``renew_lease``,
``release_slot`` and ``release_expired_slot``.  Each one is a single
conditional UPDATE, so two processes sharing the SQLite file can never
both hold the slot or lose a generation bump.  ``save()`` inserts a new
row in full but, for an existing row, only writes the status and the
check records.
"""

from __future__ import annotations

import asyncio
import copy
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite

from changegate.exceptions import StateStoreError
from changegate.logging import get_logger
from changegate.models import CheckState, GateStatus

log = get_logger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS gate_states (
    change_set_id     TEXT PRIMARY KEY,
    status            TEXT NOT NULL,
    generation        INTEGER NOT NULL DEFAULT 0,
    active_run_id     TEXT,
    lease_expires_at  REAL,
    last_run_id       TEXT,
    checks            TEXT NOT NULL DEFAULT '{}',
    updated_at        REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_gate_states_active ON gate_states (active_run_id);
"""

_COLUMNS = (
    "change_set_id, status, generation, active_run_id, lease_expires_at, "
    "last_run_id, checks, updated_at"
)

# A slot with no lease (written by an older process) counts as expired.
_SLOT_RECLAIMABLE = "(active_run_id IS NULL OR lease_expires_at IS NULL OR lease_expires_at < ?)"


@dataclass
class CheckRecord:
    """The last status check written for a repository."""

    revision: str
    state: CheckState


@dataclass
class GateState:
    """Merge-eligibility state of one change set."""

    change_set_id: str
    status: GateStatus = GateStatus.PENDING
    generation: int = 0
    active_run_id: str | None = None
    lease_expires_at: float | None = None
    last_run_id: str | None = None
    checks: dict[str, CheckRecord] = field(default_factory=dict)
    updated_at: float = field(default_factory=time.time)

    def slot_reclaimable(self, now: float) -> bool:
        if self.active_run_id is None:
            return True
        return self.lease_expires_at is None or self.lease_expires_at < now

    def already_written(self, repository: str, revision: str, state: CheckState) -> bool:
        record = self.checks.get(repository)
        return record is not None and record.revision == revision and record.state == state

    def record_check(self, repository: str, revision: str, state: CheckState) -> None:
        self.checks[repository] = CheckRecord(revision=revision, state=state)

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_set_id": self.change_set_id,
            "status": self.status.value,
            "generation": self.generation,
            "active_run_id": self.active_run_id,
            "lease_expires_at": self.lease_expires_at,
            "last_run_id": self.last_run_id,
            "checks": {
                repo: {"revision": rec.revision, "state": rec.state.value}
                for repo, rec in self.checks.items()
            },
            "updated_at": self.updated_at,
        }


def _checks_from_json(raw: str) -> dict[str, CheckRecord]:
    data = json.loads(raw) if raw else {}
    return {
        repo: CheckRecord(revision=rec["revision"], state=CheckState(rec["state"]))
        for repo, rec in data.items()
    }


class GateStateStore(ABC):
    """Persistence interface for GateState objects."""

    async def init(self) -> None:
        """Prepare the store.  Default: nothing to prepare."""

    async def close(self) -> None:
        """Release resources.  Default: nothing to release."""

    @abstractmethod
    async def get(self, change_set_id: str) -> GateState | None:
        """Return the stored state, or None if the change set was never seen."""

    @abstractmethod
    async def save(self, state: GateState) -> None:
        """Insert *state*, or update the status and checks of an existing row."""

    @abstractmethod
    async def list_states(self) -> list[GateState]:
        """Return every stored state, most recently updated first."""

    @abstractmethod
    async def bump_generation(self, change_set_id: str) -> int:
        """Increment the generation, mark the gate INVALIDATED, return the new value."""

    @abstractmethod
    async def claim_slot(
        self, change_set_id: str, run_id: str, lease_expires_at: float
    ) -> GateState:
        """Take the run slot if it is free or its lease has expired.

        Returns the state after the attempt; the claim succeeded iff its
        ``active_run_id`` equals *run_id*.
        """

    @abstractmethod
    async def renew_lease(
        self, change_set_id: str, run_id: str, lease_expires_at: float
    ) -> bool:
        """Extend the lease of *run_id*.  False if it no longer holds the slot."""

    @abstractmethod
    async def release_slot(self, change_set_id: str, run_id: str) -> bool:
        """Free the slot if *run_id* holds it.  False otherwise."""

    @abstractmethod
    async def release_expired_slot(self, change_set_id: str) -> str | None:
        """Free an expired slot, mark the gate INVALIDATED, return the dead run id."""

    async def load(self, change_set_id: str) -> GateState:
        """Return the stored state or a fresh PENDING one."""
        state = await self.get(change_set_id)
        return state if state is not None else GateState(change_set_id=change_set_id)


class MemoryGateStateStore(GateStateStore):
    """In-process store.  Returned states are copies; call ``save()`` to commit."""

    def __init__(self) -> None:
        self._states: dict[str, GateState] = {}

    def _row(self, change_set_id: str) -> GateState:
        return self._states.setdefault(change_set_id, GateState(change_set_id=change_set_id))

    async def get(self, change_set_id: str) -> GateState | None:
        state = self._states.get(change_set_id)
        return copy.deepcopy(state) if state is not None else None

    async def save(self, state: GateState) -> None:
        state.updated_at = time.time()
        row = self._states.get(state.change_set_id)
        if row is None:
            self._states[state.change_set_id] = copy.deepcopy(state)
            return
        row.status = state.status
        row.checks = copy.deepcopy(state.checks)
        row.updated_at = state.updated_at

    async def list_states(self) -> list[GateState]:
        states = sorted(self._states.values(), key=lambda s: s.updated_at, reverse=True)
        return [copy.deepcopy(s) for s in states]

    async def bump_generation(self, change_set_id: str) -> int:
        row = self._row(change_set_id)
        row.generation += 1
        row.status = GateStatus.INVALIDATED
        row.updated_at = time.time()
        return row.generation

    async def claim_slot(
        self, change_set_id: str, run_id: str, lease_expires_at: float
    ) -> GateState:
        row = self._row(change_set_id)
        now = time.time()
        if row.slot_reclaimable(now):
            row.active_run_id = run_id
            row.lease_expires_at = lease_expires_at
            row.last_run_id = run_id
            row.status = GateStatus.RUNNING
            row.updated_at = now
        return copy.deepcopy(row)

    async def renew_lease(
        self, change_set_id: str, run_id: str, lease_expires_at: float
    ) -> bool:
        row = self._states.get(change_set_id)
        if row is None or row.active_run_id != run_id:
            return False
        row.lease_expires_at = lease_expires_at
        return True

    async def release_slot(self, change_set_id: str, run_id: str) -> bool:
        row = self._states.get(change_set_id)
        if row is None or row.active_run_id != run_id:
            return False
        row.active_run_id = None
        row.lease_expires_at = None
        row.updated_at = time.time()
        return True

    async def release_expired_slot(self, change_set_id: str) -> str | None:
        row = self._states.get(change_set_id)
        if row is None or row.active_run_id is None or not row.slot_reclaimable(time.time()):
            return None
        dead = row.active_run_id
        row.active_run_id = None
        row.lease_expires_at = None
        row.status = GateStatus.INVALIDATED
        row.updated_at = time.time()
        return dead


class SQLiteGateStateStore(GateStateStore):
    """Async SQLite-backed gate state store, safe to share between processes.

    Usage::

        store = SQLiteGateStateStore(Path("~/.changegate/state.db"))
        await store.init()
        generation = await store.bump_generation("feature-x")
    """

    def __init__(self, db_path: Path, busy_timeout: float = 30.0) -> None:
        self._db_path = db_path.expanduser()
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the database and create tables if they do not exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(str(self._db_path), timeout=self._busy_timeout)
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(_SCHEMA_SQL)
            await self._conn.commit()
            log.info("state_store_ready", db=str(self._db_path))
        except Exception as exc:
            raise StateStoreError(f"Failed to initialise state store: {exc}") from exc

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StateStoreError("State store is not initialised; call init() first")
        return self._conn

    async def _ensure_row(self, conn: aiosqlite.Connection, change_set_id: str) -> None:
        await conn.execute(
            "INSERT OR IGNORE INTO gate_states (change_set_id, status, updated_at) VALUES (?,?,?)",
            (change_set_id, GateStatus.PENDING.value, time.time()),
        )

    async def _fetch(self, conn: aiosqlite.Connection, change_set_id: str) -> GateState | None:
        async with conn.execute(
            f"SELECT {_COLUMNS} FROM gate_states WHERE change_set_id=?", (change_set_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._from_row(row) if row is not None else None

    async def _write(self, change_set_id: str, operation: str, sql: str, params: tuple[Any, ...]) -> int:
        """Run one conditional UPDATE in its own transaction and return its rowcount."""
        async with self._lock:
            conn = self._connection()
            try:
                await self._ensure_row(conn, change_set_id)
                cursor = await conn.execute(sql, params)
                await conn.commit()
            except aiosqlite.Error as exc:
                await conn.rollback()
                raise StateStoreError(
                    f"Failed to {operation} for '{change_set_id}': {exc}",
                    context={"change_set_id": change_set_id},
                ) from exc
            return cursor.rowcount or 0

    async def get(self, change_set_id: str) -> GateState | None:
        return await self._fetch(self._connection(), change_set_id)

    async def save(self, state: GateState) -> None:
        state.updated_at = time.time()
        async with self._lock:
            conn = self._connection()
            try:
                await conn.execute(
                    f"""INSERT INTO gate_states ({_COLUMNS})
                        VALUES (?,?,?,?,?,?,?,?)
                        ON CONFLICT(change_set_id) DO UPDATE SET
                            status=excluded.status,
                            checks=excluded.checks,
                            updated_at=excluded.updated_at""",
                    (
                        state.change_set_id,
                        state.status.value,
                        state.generation,
                        state.active_run_id,
                        state.lease_expires_at,
                        state.last_run_id,
                        json.dumps(state.to_dict()["checks"]),
                        state.updated_at,
                    ),
                )
                await conn.commit()
            except aiosqlite.Error as exc:
                raise StateStoreError(
                    f"Failed to save gate state for '{state.change_set_id}': {exc}",
                    context={"change_set_id": state.change_set_id},
                ) from exc

    async def list_states(self) -> list[GateState]:
        conn = self._connection()
        async with conn.execute(
            f"SELECT {_COLUMNS} FROM gate_states ORDER BY updated_at DESC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._from_row(r) for r in rows]

    async def bump_generation(self, change_set_id: str) -> int:
        await self._write(
            change_set_id,
            "bump generation",
            "UPDATE gate_states SET generation = generation + 1, status=?, updated_at=? "
            "WHERE change_set_id=?",
            (GateStatus.INVALIDATED.value, time.time(), change_set_id),
        )
        state = await self.load(change_set_id)
        return state.generation

    async def claim_slot(
        self, change_set_id: str, run_id: str, lease_expires_at: float
    ) -> GateState:
        now = time.time()
        await self._write(
            change_set_id,
            "claim run slot",
            "UPDATE gate_states SET active_run_id=?, lease_expires_at=?, last_run_id=?, "
            f"status=?, updated_at=? WHERE change_set_id=? AND {_SLOT_RECLAIMABLE}",
            (run_id, lease_expires_at, run_id, GateStatus.RUNNING.value, now, change_set_id, now),
        )
        return await self.load(change_set_id)

    async def renew_lease(
        self, change_set_id: str, run_id: str, lease_expires_at: float
    ) -> bool:
        updated = await self._write(
            change_set_id,
            "renew run lease",
            "UPDATE gate_states SET lease_expires_at=? WHERE change_set_id=? AND active_run_id=?",
            (lease_expires_at, change_set_id, run_id),
        )
        return updated == 1

    async def release_slot(self, change_set_id: str, run_id: str) -> bool:
        updated = await self._write(
            change_set_id,
            "release run slot",
            "UPDATE gate_states SET active_run_id=NULL, lease_expires_at=NULL, updated_at=? "
            "WHERE change_set_id=? AND active_run_id=?",
            (time.time(), change_set_id, run_id),
        )
        return updated == 1

    async def release_expired_slot(self, change_set_id: str) -> str | None:
        stale = await self.get(change_set_id)
        if stale is None or stale.active_run_id is None:
            return None
        now = time.time()
        updated = await self._write(
            change_set_id,
            "release expired run slot",
            "UPDATE gate_states SET active_run_id=NULL, lease_expires_at=NULL, status=?, "
            "updated_at=? WHERE change_set_id=? AND active_run_id=? "
            "AND (lease_expires_at IS NULL OR lease_expires_at < ?)",
            (GateStatus.INVALIDATED.value, now, change_set_id, stale.active_run_id, now),
        )
        return stale.active_run_id if updated == 1 else None

    @staticmethod
    def _from_row(row: Any) -> GateState:
        return GateState(
            change_set_id=row[0],
            status=GateStatus(row[1]),
            generation=row[2],
            active_run_id=row[3],
            lease_expires_at=row[4],
            last_run_id=row[5],
            checks=_checks_from_json(row[6]),
            updated_at=row[7],
        )
