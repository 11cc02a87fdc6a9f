"""GitHub implementation of the remote platform contract.

Maps the contract onto the GitHub REST API:

    branch_exists        GET  /repos/{repo}/branches/{branch}
    trigger_job          POST /repos/{repo}/actions/workflows/{job}/dispatches
                         then GET .../workflows/{job}/runs to find the run the
                         dispatch created (the dispatch call returns no id)
    poll_job_status      GET  /repos/{repo}/actions/runs/{handle}
    list_open_revisions  GET  /repos/{repo}/pulls?state=open  (fnmatch on head ref)
    set_status_check     POST /repos/{repo}/statuses/{sha}

429 / 5xx responses and transport errors raise ``TransientPlatformError``;
other non-2xx responses raise ``PlatformError``.
"""

from __future__ import annotations

import asyncio
import fnmatch
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from changegate.config import PlatformConfig
from changegate.exceptions import PlatformError, TransientPlatformError
from changegate.logging import get_logger
from changegate.models import CheckState, Revision
from changegate.platform.base import RemoteJobState, RemotePlatform

log = get_logger(__name__)

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
# Tolerated clock difference between this host and GitHub when matching runs.
_DISPATCH_CLOCK_SKEW = timedelta(seconds=10)
_PENDING_RUN_STATUSES = {"queued", "waiting", "requested", "pending"}


class GitHubPlatform(RemotePlatform):
    """GitHub Actions + commit statuses adapter.

    Args:
        config:    Platform block of the settings (API URL, token, default owner).
        transport: Optional httpx transport, used by tests to stub the API.
    """

    def __init__(
        self,
        config: PlatformConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        # Run ids already handed out, so two dispatches never share a handle.
        self._claimed_runs: set[int] = set()

    def _get_http(self) -> httpx.AsyncClient:
        """Lazily create the async HTTP client."""
        if self._http is None or self._http.is_closed:
            headers = {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
            if self._config.token:
                headers["Authorization"] = f"Bearer {self._config.token}"
            self._http = httpx.AsyncClient(
                base_url=self._config.api_url.rstrip("/"),
                headers=headers,
                timeout=self._config.request_timeout,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    def _repo_path(self, repository: str) -> str:
        if "/" in repository:
            return f"/repos/{repository}"
        if not self._config.owner:
            raise PlatformError(
                f"Repository '{repository}' has no owner and platform.owner is not set",
                repository=repository,
            )
        return f"/repos/{self._config.owner}/{repository}"

    async def _request(
        self,
        method: str,
        path: str,
        repository: str,
        allow_status: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            resp = await self._get_http().request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise TransientPlatformError(
                f"{method} {path} failed: {exc}", repository=repository
            ) from exc

        if resp.status_code in allow_status or resp.is_success:
            return resp
        message = f"{method} {path} returned {resp.status_code}: {resp.text[:200]}"
        if resp.status_code in _RETRYABLE_STATUS_CODES:
            raise TransientPlatformError(message, repository=repository, status_code=resp.status_code)
        raise PlatformError(message, repository=repository, status_code=resp.status_code)

    # ------------------------------------------------------------------
    # RemotePlatform
    # ------------------------------------------------------------------

    async def branch_exists(self, repository: str, branch: str) -> bool:
        resp = await self._request(
            "GET",
            f"{self._repo_path(repository)}/branches/{branch}",
            repository,
            allow_status=(404,),
        )
        return resp.status_code != 404

    async def trigger_job(self, repository: str, job: str, branch: str) -> str:
        repo_path = self._repo_path(repository)
        dispatched_at = datetime.now(timezone.utc) - _DISPATCH_CLOCK_SKEW
        await self._request(
            "POST",
            f"{repo_path}/actions/workflows/{job}/dispatches",
            repository,
            json={"ref": branch},
        )
        log.debug("workflow_dispatched", repository=repository, job=job, branch=branch)

        for attempt in range(1, self._config.dispatch_lookup_attempts + 1):
            resp = await self._request(
                "GET",
                f"{repo_path}/actions/workflows/{job}/runs",
                repository,
                params={"branch": branch, "event": "workflow_dispatch", "per_page": 20},
            )
            run_id = self._select_dispatched_run(resp.json(), dispatched_at)
            if run_id is not None:
                self._claimed_runs.add(run_id)
                return str(run_id)
            log.debug("dispatched_run_not_visible", repository=repository, attempt=attempt)
            await asyncio.sleep(self._config.dispatch_lookup_delay)

        raise PlatformError(
            f"Dispatched run of '{job}' on '{branch}' did not appear after "
            f"{self._config.dispatch_lookup_attempts} lookups",
            repository=repository,
        )

    def _select_dispatched_run(
        self, payload: dict[str, Any], dispatched_at: datetime
    ) -> int | None:
        candidates: list[tuple[datetime, int]] = []
        for run in payload.get("workflow_runs", []):
            created = _parse_timestamp(run.get("created_at"))
            run_id = run.get("id")
            if created is None or run_id is None or run_id in self._claimed_runs:
                continue
            if created >= dispatched_at:
                candidates.append((created, int(run_id)))
        if not candidates:
            return None
        return min(candidates)[1]

    async def poll_job_status(self, repository: str, handle: str) -> RemoteJobState:
        resp = await self._request(
            "GET", f"{self._repo_path(repository)}/actions/runs/{handle}", repository
        )
        data = resp.json()
        status = data.get("status")
        if status == "completed":
            if data.get("conclusion") == "success":
                return RemoteJobState.SUCCEEDED
            return RemoteJobState.FAILED
        if status in _PENDING_RUN_STATUSES:
            return RemoteJobState.PENDING
        return RemoteJobState.RUNNING

    async def list_open_revisions(
        self, repository: str, branch_pattern: str
    ) -> list[Revision]:
        resp = await self._request(
            "GET",
            f"{self._repo_path(repository)}/pulls",
            repository,
            params={"state": "open", "per_page": 100, "sort": "created", "direction": "asc"},
        )
        revisions: list[Revision] = []
        for pull in resp.json():
            head = pull.get("head") or {}
            ref, sha = head.get("ref"), head.get("sha")
            if ref and sha and fnmatch.fnmatchcase(ref, branch_pattern):
                revisions.append(Revision(branch=ref, head=sha))
        return revisions

    async def set_status_check(
        self,
        repository: str,
        revision: str,
        context: str,
        state: CheckState,
        description: str,
    ) -> None:
        await self._request(
            "POST",
            f"{self._repo_path(repository)}/statuses/{revision}",
            repository,
            json={"state": state.value, "context": context, "description": description[:140]},
        )
        log.debug(
            "status_check_written",
            repository=repository,
            revision=revision,
            state=state.value,
        )


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
