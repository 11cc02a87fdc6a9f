"""Orchestration layer — Trigger-and-wait unit.

Runs one BuildNode against one change set branch and always returns a
JobRun in a terminal state:

  1. Branch existence check.  Absent branch → SKIPPED, nothing triggered.
  2. Trigger the remote job.  Any error → FAILED (trigger_error), no retry.
     A trigger call still outstanding at the deadline → FAILED (trigger_error).
  3. Poll the handle returned by the trigger call every ``interval_seconds``
     until the remote job is terminal or the deadline elapses:
       - transient poll errors are retried with exponential backoff, up to
         ``max_poll_retries`` consecutive failures → FAILED (poll_error)
       - any other poll error → FAILED (poll_error)
       - deadline elapsed → TIMED_OUT (poll_timeout)
       - remote success / failure → SUCCEEDED / FAILED (remote_failure)

The deadline starts at the trigger call and covers steps 2 and 3 together;
polling only gets what the trigger call left of it.  The branch check is
bounded by the platform's own request timeout instead.  Both waits run
under ``asyncio.wait_for`` so the deadline cancels them without leaving a
task behind.  Errors never escape ``run()``; only outside cancellation
propagates.
"""

from __future__ import annotations

import asyncio
import time

from changegate.config import PollingConfig
from changegate.exceptions import PlatformError, TransientPlatformError
from changegate.logging import bind_run_context, get_logger
from changegate.models import BuildNode, FailureReason, JobRun, JobStatus
from changegate.platform.base import RemoteJobState, RemotePlatform

log = get_logger(__name__)


class _PollFailed(Exception):
    """Internal: polling gave up before the remote job reached a terminal state."""


class TriggerAndWait:
    """Trigger a remote job for a build node and wait for its terminal state.

    Usage::

        unit = TriggerAndWait(platform, settings.polling)
        job_run = await unit.run(node, branch="feature-x")
    """

    def __init__(self, platform: RemotePlatform, polling: PollingConfig) -> None:
        self._platform = platform
        self._polling = polling

    async def run(
        self,
        node: BuildNode,
        branch: str,
        timeout: float | None = None,
    ) -> JobRun:
        bind_run_context(node=node.name)
        job_run = JobRun(node=node.name, repository=node.repository, branch=branch)
        deadline = timeout if timeout is not None else self._polling.timeout_seconds

        try:
            exists = await self._platform.branch_exists(node.repository, branch)
        except Exception as exc:
            log.error("branch_check_failed", repository=node.repository, error=str(exc))
            return job_run.finish(JobStatus.FAILED, FailureReason.TRIGGER_ERROR, str(exc))

        if not exists:
            log.info("job_skipped_branch_absent", repository=node.repository, branch=branch)
            return job_run.finish(JobStatus.SKIPPED)

        job_run.started_at = time.time()
        try:
            job_run.handle = await asyncio.wait_for(
                self._platform.trigger_job(node.repository, node.job, branch),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            log.error("job_trigger_timed_out", job=node.job, timeout=deadline)
            return job_run.finish(
                JobStatus.FAILED,
                FailureReason.TRIGGER_ERROR,
                f"Trigger call did not return within {deadline}s",
            )
        except Exception as exc:
            log.error("job_trigger_failed", job=node.job, error=str(exc))
            return job_run.finish(JobStatus.FAILED, FailureReason.TRIGGER_ERROR, str(exc))

        log.info("job_triggered", job=node.job, handle=job_run.handle)

        remaining = max(deadline - (time.time() - job_run.started_at), 0.0)
        try:
            final = await asyncio.wait_for(
                self._poll_until_terminal(node, job_run), timeout=remaining
            )
        except asyncio.TimeoutError:
            log.error("job_timed_out", handle=job_run.handle, timeout=deadline)
            return job_run.finish(
                JobStatus.TIMED_OUT,
                FailureReason.POLL_TIMEOUT,
                f"No terminal state after {deadline}s",
            )
        except _PollFailed as exc:
            log.error("job_poll_failed", handle=job_run.handle, error=str(exc))
            return job_run.finish(JobStatus.FAILED, FailureReason.POLL_ERROR, str(exc))
        except asyncio.CancelledError:
            job_run.finished_at = time.time()
            log.warning("job_wait_cancelled", handle=job_run.handle)
            raise

        if final == RemoteJobState.SUCCEEDED:
            log.info("job_succeeded", handle=job_run.handle, polls=job_run.poll_count)
            return job_run.finish(JobStatus.SUCCEEDED)

        log.warning("job_failed", handle=job_run.handle, polls=job_run.poll_count)
        return job_run.finish(
            JobStatus.FAILED, FailureReason.REMOTE_FAILURE, "Remote job reported failure"
        )

    async def _poll_until_terminal(self, node: BuildNode, job_run: JobRun) -> RemoteJobState:
        assert job_run.handle is not None
        consecutive_failures = 0

        while True:
            try:
                state = await self._platform.poll_job_status(node.repository, job_run.handle)
            except TransientPlatformError as exc:
                consecutive_failures += 1
                if consecutive_failures > self._polling.max_poll_retries:
                    raise _PollFailed(
                        f"Gave up after {consecutive_failures} transient poll errors: {exc}"
                    ) from exc
                delay = self._polling.delay_for_attempt(consecutive_failures)
                log.warning(
                    "job_poll_retry",
                    attempt=consecutive_failures,
                    delay=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
                continue
            except PlatformError as exc:
                raise _PollFailed(str(exc)) from exc
            except Exception as exc:
                raise _PollFailed(f"Unexpected poll error: {exc}") from exc

            consecutive_failures = 0
            job_run.poll_count += 1

            if state.is_terminal:
                return state
            if state == RemoteJobState.RUNNING and job_run.status != JobStatus.RUNNING:
                job_run.status = JobStatus.RUNNING
                log.debug("job_running", handle=job_run.handle)

            await asyncio.sleep(self._polling.interval_seconds)
