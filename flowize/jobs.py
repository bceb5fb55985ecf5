"""Polling of asynchronous bridge jobs.

A job is polled on a fixed interval until it reports ``done``. Every poll is
forwarded as a progress event so callers can stream output live. A job that
stops producing output for longer than the stale threshold is cancelled and
reported as a timeout; this protects against commands that wait on an
interactive prompt forever.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from flowize.bridge import BridgeClient, BridgeJob
from flowize.config import BridgeSettings
from flowize.errors import FlowizeError, JobTimeoutError

logger = logging.getLogger(__name__)

NON_STREAMING_HINT = "The command appears non-streaming or waiting for interactive input."


@dataclass
class AgentProgress:
    """One progress event for a running (or just finished) job."""

    logs: str
    done: bool
    success: bool
    job_id: Optional[str] = None


ProgressCallback = Callable[[AgentProgress], None]


def format_duration(value_ms: float) -> str:
    """Format milliseconds as ``M:SS``."""
    total_seconds = max(0, int(value_ms // 1000))
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"


def format_job_logs(endpoint: str, command: str, job: BridgeJob, now_ms: float) -> str:
    """Human-readable log block for a job snapshot."""
    elapsed = format_duration(now_ms - job.started_at) if job.started_at is not None else "unknown"
    idle = format_duration(now_ms - job.updated_at) if job.updated_at is not None else "unknown"

    if job.done:
        run_state = "completed" if job.success else "failed"
    else:
        run_state = "running"

    state_line = f"State: {run_state}"
    if job.pid is not None:
        state_line += f" | PID {job.pid}"
    state_line += f" | Elapsed: {elapsed}"
    if not job.done:
        state_line += f" | Last output: {idle} ago"

    return "\n".join([
        f"Endpoint: {endpoint}",
        f"Command: {command}",
        state_line,
        "",
        f"STDOUT:\n{job.stdout}" if job.stdout else "STDOUT: <empty>",
        "",
        f"STDERR:\n{job.stderr}" if job.stderr else "STDERR: <empty>",
        "",
        f"Exit Code: {job.exit_code if job.exit_code is not None else 'running'}",
    ])


def _now_ms() -> float:
    return time.time() * 1000


class JobPoller:
    """Polls a bridge job until it completes, goes stale, or hits the attempt ceiling.

    Args:
        bridge: Bridge client used for polling and cancellation
        settings: Interval, ceiling and stale threshold
        clock: Returns the current time in epoch milliseconds
        sleep: Coroutine used between polls
    """

    def __init__(
        self,
        bridge: BridgeClient,
        settings: Optional[BridgeSettings] = None,
        clock: Callable[[], float] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.bridge = bridge
        self.settings = settings or bridge.settings
        self.clock = clock
        self.sleep = sleep

    @property
    def stale_ms(self) -> float:
        return self.settings.stale_output_timeout_s * 1000

    async def wait(
        self,
        candidate: str,
        command: str,
        job_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BridgeJob:
        """Poll ``job_id`` until it is done.

        A job that finished with a failure is returned as-is; judging its exit
        code is the caller's concern.

        Raises:
            JobTimeoutError: If the job went stale or never finished; a
                cancellation has been attempted before this is raised
            RejectedError: If the bridge refused a poll
        """
        for _ in range(self.settings.poll_max_attempts):
            job = await self.bridge.poll_job(candidate, job_id)
            now = self.clock()
            idle_ms = job.idle_ms(now)

            if on_progress is not None:
                on_progress(AgentProgress(
                    logs=format_job_logs(candidate, command, job, now),
                    done=job.done,
                    success=job.succeeded,
                    job_id=job_id,
                ))

            if job.done:
                return job

            if idle_ms >= self.stale_ms:
                cancel_note = await self._cancel(job_id)
                prefix = "No new output" if job.saw_output else "No stdout/stderr received"
                raise JobTimeoutError(
                    job_id,
                    f"{prefix} for {format_duration(idle_ms)}. {NON_STREAMING_HINT}",
                    idle_ms=idle_ms,
                    saw_output=job.saw_output,
                    cancel_note=cancel_note,
                )

            await self.sleep(self.settings.poll_interval_s)

        cancel_note = await self._cancel(job_id)
        raise JobTimeoutError(job_id, "Timed out waiting for sub-agent job completion.", cancel_note=cancel_note)

    async def _cancel(self, job_id: str) -> str:
        """Best-effort cancellation; the outcome only annotates the timeout error."""
        try:
            await self.bridge.cancel(job_id)
        except FlowizeError as e:
            logger.warning("Automatic cancellation of job %s failed: %s", job_id, e)
            return f" Automatic cancellation failed: {e}"
        return " Cancellation requested automatically."
