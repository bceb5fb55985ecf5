"""Client for the local automation bridge.

The bridge is a small HTTP service that runs shell commands on the user's
machine. Every call walks the endpoint candidates in order:

- connection errors, timeouts and "route not found" (404/405) move on to the
  next candidate
- any other rejection, or a command that ran and failed, is surfaced
  immediately so real failures are never masked as connectivity problems
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from flowize.config import BridgeSettings, Config
from flowize.endpoints import EndpointResolver
from flowize.errors import CommandFailure, ConnectivityError, RejectedError

logger = logging.getLogger(__name__)

ROUTE_NOT_FOUND = (404, 405)


class CommandResult(BaseModel):
    """Outcome of a command that completed on the bridge."""

    endpoint: str
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    success: bool = True


class BridgeJob(BaseModel):
    """Snapshot of an asynchronous job as reported by ``GET <base>/logs``.

    Each poll yields a new immutable snapshot; once ``done`` is observed the
    exit code and success flag do not change.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    job_id: str = Field(alias="jobId")
    pid: Optional[int] = None
    started_at: Optional[float] = Field(default=None, alias="startedAt")
    updated_at: Optional[float] = Field(default=None, alias="updatedAt")
    stdout: str = ""
    stderr: str = ""
    done: bool = False
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    success: bool = False
    error: str = ""

    @property
    def saw_output(self) -> bool:
        return bool(self.stdout.strip() or self.stderr.strip())

    @property
    def succeeded(self) -> bool:
        return self.done and self.success and (self.exit_code or 0) == 0

    def idle_ms(self, now_ms: float) -> int:
        """Milliseconds since the last output (or since start if none yet)."""
        if self.updated_at is not None:
            return int(now_ms - self.updated_at)
        if self.started_at is not None:
            return int(now_ms - self.started_at)
        return 0


class JobHandle(BaseModel):
    """Result of submitting an async command.

    Either ``job_id`` is set and the job must be polled, or the bridge ran the
    command synchronously and ``result`` already holds the outcome.
    """

    endpoint: str
    command: str
    job_id: Optional[str] = None
    result: Optional[CommandResult] = None

    @property
    def is_complete(self) -> bool:
        return self.job_id is None


class BridgeHealth(BaseModel):
    ok: bool
    endpoint: str
    async_jobs: Optional[bool] = None


def _parse_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a bridge response body; non-JSON text is kept as stdout."""
    raw = response.text
    if not raw:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"stdout": raw}
    return data if isinstance(data, dict) else {"stdout": raw}


def _exit_code(data: dict[str, Any]) -> Optional[int]:
    value = data.get("exitCode")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _is_failure(data: dict[str, Any]) -> bool:
    exit_code = _exit_code(data)
    return data.get("success") is False or (exit_code is not None and exit_code != 0)


class BridgeClient:
    """Executes commands against the local bridge with candidate failover.

    Args:
        resolver: Candidate generator for the configured endpoint
        settings: Timeouts and polling limits
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
    """

    def __init__(
        self,
        resolver: EndpointResolver,
        settings: Optional[BridgeSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.resolver = resolver
        self.settings = settings or BridgeSettings()
        self.transport = transport

    @classmethod
    def from_config(cls, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None) -> "BridgeClient":
        resolver = EndpointResolver(config.agent_endpoint, host_alias=config.host_alias)
        return cls(resolver, settings=config.bridge, transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self.resolver.candidates())

    def candidates(self) -> list[str]:
        return self.resolver.candidates()

    async def _send(
        self,
        method: str,
        url: str,
        timeout: float,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            return await client.request(method, url, json=json, params=params)

    async def _post_to_candidates(
        self,
        payload: dict[str, Any],
        command: str,
        timeout: float,
        candidates: Optional[list[str]] = None,
    ) -> tuple[str, httpx.Response, dict[str, Any]]:
        """POST ``payload`` to each candidate until one answers with a 2xx.

        Raises:
            RejectedError: A reachable candidate refused the request
            CommandFailure: The command ran and failed
            ConnectivityError: No candidate could be reached
        """
        attempted: list[str] = []
        last_error = ""

        for candidate in candidates if candidates is not None else self.candidates():
            attempted.append(candidate)
            try:
                response = await self._send("POST", candidate, timeout, json=payload)
            except httpx.TransportError as e:
                last_error = f"{e.__class__.__name__}: {e}" if str(e) else e.__class__.__name__
                logger.debug("Bridge candidate %s unreachable: %s", candidate, last_error)
                continue

            data = _parse_body(response)

            if response.status_code in ROUTE_NOT_FOUND:
                last_error = (
                    f"Local bridge error ({response.status_code}) on {candidate}: "
                    f"{data.get('error') or 'route not found'}"
                )
                logger.debug("Bridge candidate %s has no run route (%s)", candidate, response.status_code)
                continue

            if not response.is_success:
                # The bridge answers failed commands with an error status and a command result body
                if "exitCode" in data:
                    raise CommandFailure(
                        candidate,
                        command,
                        exit_code=_exit_code(data),
                        stderr=str(data.get("stderr") or ""),
                        message=str(data.get("error") or ""),
                    )
                raise RejectedError(candidate, response.status_code, str(data.get("error") or response.text or ""))

            return candidate, response, data

        raise ConnectivityError(attempted, last_error)

    async def run_sync(
        self,
        command: str,
        context: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
        candidates: Optional[list[str]] = None,
    ) -> CommandResult:
        """Run ``command`` and wait for it to finish.

        Args:
            command: Shell command line
            context: Extra fields merged into the request body (worktreePath, branch, ...)
            timeout: Network timeout in seconds (default: command timeout)
            candidates: Restrict the call to these candidates (default: all)

        Returns:
            The completed command's result

        Raises:
            CommandFailure: If the command ran and failed
        """
        payload = {"command": command, "mode": "shell", **(context or {})}
        candidate, _, data = await self._post_to_candidates(
            payload, command, timeout or self.settings.command_timeout_s, candidates
        )

        if _is_failure(data):
            raise CommandFailure(
                candidate,
                command,
                exit_code=_exit_code(data),
                stderr=str(data.get("stderr") or ""),
                message=str(data.get("error") or ""),
            )

        return CommandResult(
            endpoint=candidate,
            command=command,
            stdout=str(data.get("stdout") or ""),
            stderr=str(data.get("stderr") or ""),
            exit_code=_exit_code(data),
            success=True,
        )

    async def run_async(
        self,
        command: str,
        context: Optional[dict[str, Any]] = None,
        candidates: Optional[list[str]] = None,
    ) -> JobHandle:
        """Submit ``command`` as a background job.

        A bridge that executes the command synchronously anyway (no ``jobId``
        in the response) yields a handle that is already complete.
        """
        payload = {"command": command, "mode": "shell", "async": True, **(context or {})}
        candidate, _, data = await self._post_to_candidates(
            payload, command, self.settings.command_timeout_s, candidates
        )

        job_id = data.get("jobId")
        if job_id:
            logger.info("Bridge job %s started on %s", job_id, candidate)
            return JobHandle(endpoint=candidate, command=command, job_id=str(job_id))

        if _is_failure(data):
            raise CommandFailure(
                candidate,
                command,
                exit_code=_exit_code(data),
                stderr=str(data.get("stderr") or ""),
                message=str(data.get("error") or ""),
            )

        return JobHandle(
            endpoint=candidate,
            command=command,
            result=CommandResult(
                endpoint=candidate,
                command=command,
                stdout=str(data.get("stdout") or ""),
                stderr=str(data.get("stderr") or ""),
                exit_code=_exit_code(data),
                success=True,
            ),
        )

    async def poll_job(self, candidate: str, job_id: str) -> BridgeJob:
        """Fetch the current snapshot of ``job_id`` from the candidate that started it."""
        logs_url = f"{EndpointResolver.base_url(candidate)}/logs"
        try:
            response = await self._send(
                "GET", logs_url, self.settings.poll_timeout_s, params={"jobId": job_id}
            )
        except httpx.TransportError as e:
            raise ConnectivityError([logs_url], str(e) or e.__class__.__name__) from e

        if not response.is_success:
            data = _parse_body(response)
            raise RejectedError(
                logs_url,
                response.status_code,
                str(data.get("error") or f"Unable to poll agent logs for job {job_id}"),
            )

        data = _parse_body(response)
        data.setdefault("jobId", job_id)
        data["stdout"] = data.get("stdout") or ""
        data["stderr"] = data.get("stderr") or ""
        data["error"] = data.get("error") or ""
        data["success"] = data.get("success") is True
        data["done"] = data.get("done") is True
        return BridgeJob.model_validate(data)

    async def cancel(self, job_id: str) -> str:
        """Ask the bridge to cancel ``job_id``.

        Returns:
            The base URL that accepted the cancellation

        Raises:
            ConnectivityError: If no candidate accepted it
        """
        attempted: list[str] = []
        last_error = ""

        for candidate in self.candidates():
            cancel_url = f"{EndpointResolver.base_url(candidate)}/cancel"
            if cancel_url in attempted:
                continue
            attempted.append(cancel_url)
            try:
                response = await self._send("POST", cancel_url, self.settings.poll_timeout_s, json={"jobId": job_id})
            except httpx.TransportError as e:
                last_error = str(e) or e.__class__.__name__
                continue

            if not response.is_success:
                last_error = f"cancel failed with status {response.status_code}"
                continue

            logger.info("Cancelled bridge job %s via %s", job_id, cancel_url)
            return cancel_url

        raise ConnectivityError(attempted, last_error, message=f"Unable to cancel agent job {job_id}. {last_error}".strip())

    async def health(self) -> BridgeHealth:
        """Return the first healthy ``/health`` answer among the candidates."""
        attempted: list[str] = []
        last_error = ""

        for url in self.resolver.health_urls():
            attempted.append(url)
            try:
                response = await self._send("GET", url, self.settings.poll_timeout_s)
            except httpx.TransportError as e:
                last_error = str(e) or e.__class__.__name__
                continue

            data = _parse_body(response)
            if response.is_success and data.get("ok") is True:
                async_jobs = data.get("asyncJobs")
                return BridgeHealth(
                    ok=True,
                    endpoint=url,
                    async_jobs=async_jobs if isinstance(async_jobs, bool) else None,
                )
            last_error = f"health check returned {response.status_code} on {url}"

        raise ConnectivityError(attempted, last_error)

    async def open_window(
        self,
        worktree_path: str,
        title: str,
        startup_command: str = "git status",
        close_after_startup: bool = False,
    ) -> str:
        """Open a terminal window in ``worktree_path`` running ``startup_command``.

        Returns:
            The candidate that opened the window
        """
        payload = {
            "action": "open-windows-cmd",
            "worktreePath": worktree_path,
            "title": title,
            "startupCommand": startup_command,
            "closeAfterStartup": close_after_startup,
        }
        candidate, _, data = await self._post_to_candidates(
            payload, startup_command, self.settings.poll_timeout_s
        )
        if data.get("success") is False:
            raise CommandFailure(candidate, startup_command, message=str(data.get("error") or "unable to open window"))
        return candidate
