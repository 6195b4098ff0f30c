"""
Swarm - Parallel coding-agent orchestration.

This package decomposes a task into a dependency graph, runs coding agents
in isolated git worktrees, validates their changes through a staged pipeline,
and merges them into a session branch behind rollback checkpoints.
"""

__version__ = "0.1.0"
