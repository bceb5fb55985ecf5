"""Flowize: drive tasks from draft to merged pull request across git worktrees."""

__version__ = "0.1.0"
