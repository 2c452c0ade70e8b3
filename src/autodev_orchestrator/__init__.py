"""
autodev-orchestrator

Package root for the autonomous task execution orchestrator: a dependency-ordered
scheduler over a fixed pool of git-worktree slots, with bounded failure escalation,
checkpoint/resume, token-budget handoff, and topological branch integration.

Importing the package has no side effects (no config loading, no logging setup).
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
