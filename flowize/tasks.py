"""Task model for the Flowize delivery workflow."""

import re
import time
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    RAW = "RAW"
    FORMATTED = "FORMATTED"
    ISSUE_CREATED = "ISSUE_CREATED"
    WORKTREE_QUEUED = "WORKTREE_QUEUED"
    WORKTREE_INITIALIZING = "WORKTREE_INITIALIZING"
    WORKTREE_ACTIVE = "WORKTREE_ACTIVE"
    IMPLEMENTED = "IMPLEMENTED"
    PUSHED = "PUSHED"
    PR_CREATED = "PR_CREATED"
    PR_MERGED = "PR_MERGED"


# Statuses in which a task is being worked on in a local worktree.
# Remote snapshots never overwrite these.
LOCAL_WORKTREE_STATUSES = frozenset({
    TaskStatus.WORKTREE_INITIALIZING,
    TaskStatus.WORKTREE_ACTIVE,
    TaskStatus.IMPLEMENTED,
})


class Priority(str, Enum):
    """Task priority levels."""

    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class AgentRunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckState(str, Enum):
    """Last observed CI state for a task's branch."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Task(BaseModel):
    """A unit of work moving through the delivery workflow."""

    id: str
    raw_text: str = ""
    title: str = ""
    description: str = ""
    group: str = "General"
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.FORMATTED

    issue_number: Optional[int] = None
    issue_url: Optional[str] = None
    pr_number: Optional[int] = None
    branch_name: Optional[str] = None

    merge_conflict: bool = False
    review_feedback: Optional[str] = None

    implementation_details: Optional[str] = None
    agent_logs: Optional[str] = None
    agent_last_command: Optional[str] = None
    agent_run_state: AgentRunState = AgentRunState.IDLE

    ci_status: Optional[CheckState] = None
    created_at: float = Field(default_factory=lambda: time.time() * 1000)

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, v: Any) -> Any:
        """Accept any casing for priority ("high", "HIGH", "High")."""
        if isinstance(v, str):
            return v.strip().capitalize()
        return v

    def clear_agent_artifacts(self) -> None:
        """Forget everything a previous agent run produced."""
        self.implementation_details = None
        self.agent_logs = None
        self.agent_last_command = None
        self.agent_run_state = AgentRunState.IDLE


def new_task_id() -> str:
    """Generate a short random task id."""
    return uuid.uuid4().hex[:7]


def slugify(value: str) -> str:
    """Lowercase ``value`` and collapse whitespace runs into dashes."""
    return re.sub(r"\s+", "-", value.strip().lower())


def build_branch_name(task: Task) -> str:
    """Branch name for a task: ``feat/<group-slug>-<issue number or task id>``."""
    branch_id = task.issue_number if task.issue_number is not None else task.id
    return f"feat/{slugify(task.group)}-{branch_id}"


def build_issue_body(task: Task) -> str:
    return (
        f"{task.description}\n\n"
        f"**Group:** {task.group}\n"
        f"**Priority:** {task.priority.value}\n\n"
        "*Generated by Flowize*"
    )


def build_issue_labels(task: Task) -> list[str]:
    return [task.group, f"Priority: {task.priority.value}"]


def build_issue_brief(task: Task) -> str:
    """Markdown brief handed to the agent inside the worktree."""
    lines = [
        f"# Issue #{task.issue_number if task.issue_number is not None else 'unknown'}: {task.title}",
        "",
        "## Description",
        task.description or task.raw_text or "No description provided.",
        "",
        "## Context",
        f"- Branch: {task.branch_name or 'unknown'}",
        f"- Priority: {task.priority.value}",
        f"- Group: {task.group}",
        "",
    ]
    if task.review_feedback:
        lines[-1:-1] = ["", "## Review Feedback", task.review_feedback]
    return "\n".join(lines)


def priority_from_labels(label_names: list[str]) -> Priority:
    """Map issue labels like ``Priority: High`` or ``low`` onto a Priority."""
    for name in label_names:
        lowered = name.lower()
        if "priority" in lowered or lowered in ("high", "medium", "low"):
            if "high" in lowered:
                return Priority.HIGH
            if "low" in lowered:
                return Priority.LOW
            return Priority.MEDIUM
    return Priority.MEDIUM


def group_from_labels(label_names: list[str], default: str = "GitHub Import") -> str:
    """First label that is not a priority label, else ``default``."""
    for name in label_names:
        lowered = name.lower()
        if "priority" in lowered or lowered in ("high", "medium", "low"):
            continue
        return name
    return default
