"""Tests for flowize.bridge module."""

import json

import httpx
import pytest

from flowize.bridge import BridgeJob
from flowize.errors import CommandFailure, ConnectivityError, RejectedError


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content or b"{}")


class TestRunSync:
    """Tests for synchronous command execution."""

    @pytest.mark.asyncio
    async def test_success(self, make_bridge) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((str(request.url), _body(request)))
            return httpx.Response(200, json={"success": True, "stdout": "ok\n", "stderr": "", "exitCode": 0})

        bridge = make_bridge(handler)
        result = await bridge.run_sync("git status", {"worktreePath": "/repo-wt-1"})

        assert result.stdout == "ok\n"
        assert result.endpoint == "http://127.0.0.1:4141/run"
        assert seen[0][1] == {"command": "git status", "mode": "shell", "worktreePath": "/repo-wt-1"}

    @pytest.mark.asyncio
    async def test_falls_back_on_connection_error(self, make_bridge) -> None:
        """An unreachable candidate moves on to the next one and stops there."""
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            if request.url.host == "127.0.0.1":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"success": True, "stdout": "yes"})

        result = await make_bridge(handler).run_sync("echo yes")
        assert result.endpoint == "http://localhost:4141/run"
        assert requested == ["http://127.0.0.1:4141/run", "http://localhost:4141/run"]

    @pytest.mark.asyncio
    async def test_falls_back_on_route_not_found(self, make_bridge) -> None:
        """A 404 on the /run route tries the bare endpoint, and nothing after it."""
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            if request.url.path == "/run":
                return httpx.Response(404, json={"success": False, "error": "Not found"})
            return httpx.Response(200, json={"success": True, "stdout": "x"})

        result = await make_bridge(handler).run_sync("echo x")
        assert result.endpoint == "http://127.0.0.1:4141"
        # httpx normalises the empty path of the bare endpoint to "/"
        assert requested == [
            "http://127.0.0.1:4141/run",
            "http://localhost:4141/run",
            "http://127.0.0.1:4141/",
        ]

    @pytest.mark.asyncio
    async def test_command_failure_does_not_fall_through(self, make_bridge) -> None:
        """A command that ran and failed is surfaced from the first candidate."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(500, json={
                "success": False,
                "exitCode": 128,
                "stdout": "",
                "stderr": "fatal: 'feat/x' is already checked out at '/x'",
                "error": "Command failed",
            })

        with pytest.raises(CommandFailure) as exc_info:
            await make_bridge(handler).run_sync("git worktree add")

        assert len(calls) == 1
        assert exc_info.value.exit_code == 128
        assert "already checked out at '/x'" in str(exc_info.value)
        assert "exitCode=128" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_success_false_in_2xx_is_failure(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "exitCode": 1, "stderr": "boom"})

        with pytest.raises(CommandFailure, match="boom"):
            await make_bridge(handler).run_sync("false")

    @pytest.mark.asyncio
    async def test_rejection_is_surfaced(self, make_bridge) -> None:
        """Protocol rejections are not masked as connectivity problems."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"success": False, "error": "Missing command"})

        with pytest.raises(RejectedError) as exc_info:
            await make_bridge(handler).run_sync("")
        assert exc_info.value.status == 400
        assert "Missing command" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_all_candidates_unreachable(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(ConnectivityError) as exc_info:
            await make_bridge(handler).run_sync("git status")

        assert exc_info.value.endpoints == [
            "http://127.0.0.1:4141/run",
            "http://localhost:4141/run",
            "http://127.0.0.1:4141",
            "http://localhost:4141",
        ]
        assert "Start your local bridge" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_plain_text_body_is_stdout(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="hello")

        assert (await make_bridge(handler).run_sync("echo hello")).stdout == "hello"


class TestRunAsync:
    """Tests for async job submission."""

    @pytest.mark.asyncio
    async def test_returns_job_id(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert _body(request)["async"] is True
            return httpx.Response(202, json={"success": True, "jobId": "job-1", "done": False})

        handle = await make_bridge(handler).run_async("opencode run")
        assert handle.job_id == "job-1"
        assert handle.is_complete is False

    @pytest.mark.asyncio
    async def test_synchronous_answer_is_complete(self, make_bridge) -> None:
        """A bridge without job support answers with the finished result."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": True, "stdout": "implemented", "exitCode": 0})

        handle = await make_bridge(handler).run_async("opencode run")
        assert handle.is_complete is True
        assert handle.result is not None
        assert handle.result.stdout == "implemented"


class TestPollAndCancel:
    """Tests for job polling and cancellation."""

    @pytest.mark.asyncio
    async def test_poll_job(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/logs"
            assert request.url.params["jobId"] == "job-1"
            return httpx.Response(200, json={
                "success": True, "done": True, "exitCode": 0, "stdout": "out", "stderr": None,
                "pid": 42, "startedAt": 1000, "updatedAt": 2000,
            })

        job = await make_bridge(handler).poll_job("http://127.0.0.1:4141/run", "job-1")
        assert job.done is True
        assert job.succeeded is True
        assert job.stderr == ""
        assert job.pid == 42

    @pytest.mark.asyncio
    async def test_poll_rejected(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"success": False, "error": "Job not found"})

        with pytest.raises(RejectedError, match="Job not found"):
            await make_bridge(handler).poll_job("http://127.0.0.1:4141/run", "nope")

    @pytest.mark.asyncio
    async def test_cancel_tries_each_base_once(self, make_bridge) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            if request.url.host == "127.0.0.1":
                return httpx.Response(404)
            return httpx.Response(200, json={"success": True})

        url = await make_bridge(handler).cancel("job-1")
        assert url == "http://localhost:4141/cancel"
        assert calls == ["http://127.0.0.1:4141/cancel", "http://localhost:4141/cancel"]

    @pytest.mark.asyncio
    async def test_cancel_unreachable(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ConnectivityError, match="Unable to cancel agent job job-1"):
            await make_bridge(handler).cancel("job-1")


class TestHealthAndWindow:
    """Tests for health checks and window launch."""

    @pytest.mark.asyncio
    async def test_health(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ok": True, "asyncJobs": True})

        health = await make_bridge(handler).health()
        assert health.ok is True
        assert health.async_jobs is True
        assert health.endpoint == "http://127.0.0.1:4141/health"

    @pytest.mark.asyncio
    async def test_open_window_failure(self, make_bridge) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert _body(request)["action"] == "open-windows-cmd"
            return httpx.Response(400, json={"success": False, "error": "Unable to open terminal window"})

        with pytest.raises(RejectedError, match="Unable to open terminal window"):
            await make_bridge(handler).open_window("/repo-wt-1", "Flowize WT-1")


class TestBridgeJob:
    """Tests for job snapshots."""

    def test_idle_uses_updated_then_started(self) -> None:
        assert BridgeJob(jobId="j", startedAt=1000, updatedAt=4000).idle_ms(10_000) == 6000
        assert BridgeJob(jobId="j", startedAt=1000).idle_ms(10_000) == 9000
        assert BridgeJob(jobId="j").idle_ms(10_000) == 0

    def test_failed_job_not_succeeded(self) -> None:
        job = BridgeJob(jobId="j", done=True, success=False, exitCode=130)
        assert job.succeeded is False

    def test_snapshot_is_frozen(self) -> None:
        job = BridgeJob(jobId="j", done=True, success=True, exitCode=0)
        with pytest.raises(Exception):
            job.exit_code = 1  # type: ignore[misc]
