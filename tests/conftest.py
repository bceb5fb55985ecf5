"""Pytest configuration and fixtures for flowize tests.

Bridge and GitHub HTTP traffic is served by ``httpx.MockTransport`` handlers;
no test talks to a real bridge or to GitHub.
"""

from typing import Callable, Optional

import httpx
import pytest
from click.testing import CliRunner

from flowize.bridge import BridgeClient
from flowize.config import BridgeSettings, Config
from flowize.endpoints import EndpointResolver
from flowize.state import MemoryStateStore, WorkflowState
from flowize.tasks import Task, TaskStatus


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep a developer's real token and endpoint out of the tests."""
    for name in ("GITHUB_TOKEN", "FLOWIZE_GITHUB_TOKEN", "FLOWIZE_BRIDGE_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()


@pytest.fixture
def config() -> Config:
    return Config(
        repo_owner="acme",
        repo_name="shop",
        worktree_root="/repo",
        max_worktrees=3,
        github_token="ghp_test",
        agent_endpoint="http://127.0.0.1:4141/run",
        agent_command='cd "{worktreePath}" && opencode run "Implement #{issueNumber} on {branch}"',
    )


@pytest.fixture
def make_bridge() -> Callable[..., BridgeClient]:
    """Build a BridgeClient whose HTTP traffic goes to ``handler``."""

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        endpoint: str = "http://127.0.0.1:4141/run",
        host_alias: Optional[str] = None,
        settings: Optional[BridgeSettings] = None,
    ) -> BridgeClient:
        return BridgeClient(
            EndpointResolver(endpoint, host_alias=host_alias),
            settings=settings or BridgeSettings(),
            transport=httpx.MockTransport(handler),
        )

    return _make


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Build a task with sensible defaults for its status."""

    def _make(task_id: str = "t1", status: TaskStatus = TaskStatus.ISSUE_CREATED, **kwargs) -> Task:
        defaults = {
            "title": "Add login",
            "description": "Users can log in",
            "group": "Auth",
            "issue_number": 12 if status != TaskStatus.FORMATTED else None,
        }
        defaults.update(kwargs)
        return Task(id=task_id, status=status, **defaults)

    return _make


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore(WorkflowState())
