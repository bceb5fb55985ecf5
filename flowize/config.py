"""Configuration management for Flowize."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

CONFIG_FILENAME = ".flowize.yaml"

MIN_WORKTREES = 1
MAX_WORKTREES = 10

DEFAULT_AGENT_COMMAND = (
    'cd "{worktreePath}" && opencode run {agentFlag} "Implement issue #{issueNumber} on branch {branch}. '
    'Use {issueDescriptionFile} as requirements and follow {skillFile}. '
    'Return code/output for this task." --print-logs'
)
DEFAULT_AGENT_SUBDIR = ".agent-workspace"
DEFAULT_SKILL_FILE = ".opencode/skills/specflow-worktree-automation/SKILL.md"


class BridgeSettings(BaseModel):
    """Timeouts and polling limits for the local automation bridge."""

    command_timeout_s: float = 20.0
    setup_timeout_s: float = 60.0
    poll_timeout_s: float = 10.0
    poll_interval_s: float = 0.8
    poll_max_attempts: int = 900
    stale_output_timeout_s: float = 5 * 60.0


class Config(BaseModel):
    """Flowize configuration."""

    repo_owner: str = ""
    repo_name: str = ""
    default_branch: str = "main"
    worktree_root: str = Field(default_factory=lambda: str(Path.cwd()))
    max_worktrees: int = 3
    github_token: Optional[str] = None

    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_name: str = ""
    agent_endpoint: str = "http://127.0.0.1:4141/run"
    agent_subdir: str = DEFAULT_AGENT_SUBDIR
    agent_skill_file: str = DEFAULT_SKILL_FILE
    host_alias: Optional[str] = None

    state_dir: str = "_flowize"
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)

    @field_validator("max_worktrees", mode="before")
    @classmethod
    def _clamp_max_worktrees(cls, v: object) -> int:
        """Clamp the slot count into the supported range; fall back to 3 on junk."""
        try:
            count = int(v)  # type: ignore[call-overload]
        except (TypeError, ValueError):
            return 3
        return max(MIN_WORKTREES, min(MAX_WORKTREES, count))

    @property
    def has_github_token(self) -> bool:
        return bool(self.github_token and self.github_token.strip())

    @property
    def repo_slug(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    def get_state_path(self, base: Optional[Path] = None) -> Path:
        """Get path to the persisted workflow state file.

        Args:
            base: Directory the state dir is relative to (default: cwd)

        Returns:
            Path to state.yaml
        """
        root = base if base is not None else Path.cwd()
        return root / self.state_dir / "state.yaml"


def find_config_file(start_path: Path) -> Optional[Path]:
    """Find .flowize.yaml file by walking up directory tree.

    Args:
        start_path: Directory to start searching from

    Returns:
        Path to config file, or None if not found
    """
    current = start_path.resolve()

    while True:
        config_file = current / CONFIG_FILENAME
        if config_file.exists():
            return config_file

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def _apply_env_overrides(data: dict) -> dict:
    token = os.environ.get("FLOWIZE_GITHUB_TOKEN") or os.environ.get("GITHUB_TOKEN")
    if token and not data.get("github_token"):
        data["github_token"] = token

    if endpoint := os.environ.get("FLOWIZE_BRIDGE_ENDPOINT"):
        data["agent_endpoint"] = endpoint

    return data


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from .flowize.yaml file.

    Args:
        path: Path to directory containing config file (default: current directory)

    Returns:
        Loaded configuration (or default if file not found)
    """
    if path is None:
        path = Path.cwd()

    config_file = find_config_file(path)

    data: dict = {}
    if config_file is not None:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}

    return Config(**_apply_env_overrides(data))


def save_config(config: Config, path: Path) -> Path:
    """Write configuration to ``path`` (a directory or a file).

    The GitHub token is never written to disk.
    """
    target = path / CONFIG_FILENAME if path.is_dir() else path
    data = config.model_dump(mode="json", exclude={"github_token"})
    with open(target, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return target
